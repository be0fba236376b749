"""Point ledger model."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    PrimaryKeyConstraint,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import point_transaction_type_enum

logger = logging.getLogger(__name__)


class PointTransaction(Base):
    """Immutable point movement; only the payout tag may change after insert."""

    __tablename__ = "point_transactions"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_point_transactions"),
        CheckConstraint("amount > 0", name="ck_point_transactions_amount_pos"),
        CheckConstraint(
            "guest_id IS NOT NULL OR cast_id IS NOT NULL",
            name="ck_point_transactions_owner_present",
        ),
        CheckConstraint(
            "cast_payout_id IS NULL OR cast_id IS NOT NULL",
            name="ck_point_transactions_payout_tag_cast_only",
        ),
        Index("idx_point_transactions_reservation_type", "reservation_id", "type"),
        Index("idx_point_transactions_type_created", "type", "created_at"),
        Index("idx_point_transactions_guest", "guest_id"),
        Index(
            "idx_point_transactions_cast_unaggregated",
            "cast_id",
            "created_at",
            postgresql_where=text("cast_payout_id IS NULL"),
        ),
        Index("idx_point_transactions_cast_payout", "cast_payout_id"),
        Index(
            "uqix_point_transactions_source_type",
            "source_transaction_id",
            "type",
            unique=True,
            postgresql_where=text("source_transaction_id IS NOT NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), primary_key=True)
    guest_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey(
            "guests.id",
            name="fk_point_transactions_guest",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
    )
    cast_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey(
            "casts.id",
            name="fk_point_transactions_cast",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
    )
    type: Mapped[str] = mapped_column(point_transaction_type_enum, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reservation_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey(
            "reservations.id",
            name="fk_point_transactions_reservation",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
    )
    payment_id: Mapped[str | None] = mapped_column(Text)
    cast_payout_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey(
            "cast_payouts.id",
            name="fk_point_transactions_cast_payout",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
    )
    source_transaction_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey(
            "point_transactions.id",
            name="fk_point_transactions_source",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
    )
    description: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
