"""Operator escalation queue and domain event outbox models."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base

logger = logging.getLogger(__name__)


class OperatorEscalation(Base):
    """Settlement condition that needs a human decision."""

    __tablename__ = "operator_escalations"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_operator_escalations"),
        UniqueConstraint("kind", "point_transaction_id", name="uq_operator_escalations_kind_transaction"),
        CheckConstraint("length(btrim(kind)) > 0", name="ck_operator_escalations_kind_not_blank"),
        Index(
            "idx_operator_escalations_open",
            "created_at",
            postgresql_where=text("resolved_at IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), primary_key=True)
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    point_transaction_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey(
            "point_transactions.id",
            name="fk_operator_escalations_point_transaction",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
    )
    reservation_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey(
            "reservations.id",
            name="fk_operator_escalations_reservation",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
    )
    cast_payout_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey(
            "cast_payouts.id",
            name="fk_operator_escalations_cast_payout",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
    )
    detail: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        server_default=text("'{}'::jsonb"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class SettlementEvent(Base):
    """Append-only outbox of domain events for external notification delivery."""

    __tablename__ = "settlement_events"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_settlement_events"),
        CheckConstraint(
            "length(btrim(event_type)) > 0",
            name="ck_settlement_events_event_type_not_blank",
        ),
        Index("idx_settlement_events_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), primary_key=True)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    aggregate_type: Mapped[str] = mapped_column(Text, nullable=False)
    aggregate_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        server_default=text("'{}'::jsonb"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
