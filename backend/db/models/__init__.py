"""Model module imports for SQLAlchemy metadata registration."""

from __future__ import annotations

import logging

from backend.db.models.ledger import PointTransaction
from backend.db.models.member import Cast, Guest
from backend.db.models.operations import OperatorEscalation, SettlementEvent
from backend.db.models.payout import CastPayout
from backend.db.models.reservation import Reservation

logger = logging.getLogger(__name__)

__all__ = [
    "Cast",
    "CastPayout",
    "Guest",
    "OperatorEscalation",
    "PointTransaction",
    "Reservation",
    "SettlementEvent",
]
