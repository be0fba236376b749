"""Point ledger schema: ORM models, enums and the Alembic migration."""

from __future__ import annotations

from backend.db.base import Base, metadata
from backend.db import models
from backend.db.enums import CastGrade, CastPayoutStatus, CastPayoutType, GuestGrade, PointTransactionType

__all__ = [
    "Base",
    "CastGrade",
    "CastPayoutStatus",
    "CastPayoutType",
    "GuestGrade",
    "PointTransactionType",
    "metadata",
    "models",
]
