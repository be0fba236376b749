"""Guest and cast account models carrying cached point balances."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Identity,
    PrimaryKeyConstraint,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import cast_grade_enum, guest_grade_enum

logger = logging.getLogger(__name__)


class Guest(Base):
    """Guest with a standing point balance projected from the ledger."""

    __tablename__ = "guests"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_guests"),
        CheckConstraint("points >= 0", name="ck_guests_points_non_negative"),
        CheckConstraint("grade_points >= 0", name="ck_guests_grade_points_non_negative"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), primary_key=True)
    nickname: Mapped[str] = mapped_column(Text, nullable=False)
    points: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default=text("0"))
    grade_points: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default=text("0"))
    grade: Mapped[str] = mapped_column(guest_grade_enum, nullable=False, server_default=text("'green'"))
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


class Cast(Base):
    """Cast with earnings balance and external payout account."""

    __tablename__ = "casts"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_casts"),
        CheckConstraint("points >= 0", name="ck_casts_points_non_negative"),
        CheckConstraint("grade_points >= 0", name="ck_casts_grade_points_non_negative"),
        CheckConstraint(
            "payout_account_id IS NULL OR length(btrim(payout_account_id)) > 0",
            name="ck_casts_payout_account_not_blank",
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), primary_key=True)
    nickname: Mapped[str] = mapped_column(Text, nullable=False)
    points: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default=text("0"))
    grade_points: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default=text("0"))
    grade: Mapped[str] = mapped_column(cast_grade_enum, nullable=False, server_default=text("'beginner'"))
    payout_account_id: Mapped[str | None] = mapped_column(Text)
    payouts_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("FALSE"),
    )
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
