"""Cast payout batch model."""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    Integer,
    Numeric,
    PrimaryKeyConstraint,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import cast_payout_status_enum, cast_payout_type_enum

logger = logging.getLogger(__name__)


class CastPayout(Base):
    """Closed batch of a cast's earnings moving through the payout state machine."""

    __tablename__ = "cast_payouts"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_cast_payouts"),
        CheckConstraint(
            "closing_month ~ '^[0-9]{4}-[0-9]{2}$'",
            name="ck_cast_payouts_closing_month_format",
        ),
        CheckConstraint("period_end >= period_start", name="ck_cast_payouts_period_order"),
        CheckConstraint("total_points > 0", name="ck_cast_payouts_total_points_pos"),
        CheckConstraint("conversion_rate > 0", name="ck_cast_payouts_conversion_rate_pos"),
        CheckConstraint("fee_rate >= 0 AND fee_rate < 1", name="ck_cast_payouts_fee_rate_range"),
        CheckConstraint(
            "gross_amount_yen >= 0 AND fee_amount_yen >= 0 AND net_amount_yen >= 0",
            name="ck_cast_payouts_amounts_non_negative",
        ),
        CheckConstraint(
            "net_amount_yen = gross_amount_yen - fee_amount_yen",
            name="ck_cast_payouts_net_identity",
        ),
        CheckConstraint("transaction_count > 0", name="ck_cast_payouts_transaction_count_pos"),
        CheckConstraint(
            "status <> 'paid' OR paid_at IS NOT NULL",
            name="ck_cast_payouts_paid_at_required",
        ),
        CheckConstraint("version >= 0", name="ck_cast_payouts_version_non_negative"),
        Index(
            "uqix_cast_payouts_one_scheduled_per_month",
            "cast_id",
            "closing_month",
            unique=True,
            postgresql_where=text("type = 'scheduled' AND status <> 'cancelled'"),
        ),
        Index("idx_cast_payouts_status_scheduled_date", "status", "scheduled_payout_date"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), primary_key=True)
    cast_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "casts.id",
            name="fk_cast_payouts_cast",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(cast_payout_type_enum, nullable=False)
    closing_month: Mapped[str] = mapped_column(Text, nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_points: Mapped[int] = mapped_column(BigInteger, nullable=False)
    conversion_rate: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
    gross_amount_yen: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee_rate: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    fee_amount_yen: Mapped[int] = mapped_column(BigInteger, nullable=False)
    net_amount_yen: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(cast_payout_status_enum, nullable=False)
    scheduled_payout_date: Mapped[date] = mapped_column(Date, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    provider_reference: Mapped[str | None] = mapped_column(Text)
    # "metadata" is reserved on declarative classes.
    payout_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        server_default=text("'{}'::jsonb"),
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
