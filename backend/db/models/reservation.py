"""Reservation timing fields read and closed by the settlement engine."""

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
    Integer,
    PrimaryKeyConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base

logger = logging.getLogger(__name__)


class Reservation(Base):
    """Guest/cast session; owned by the reservation subsystem."""

    __tablename__ = "reservations"
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_reservations"),
        CheckConstraint("duration_hours > 0", name="ck_reservations_duration_pos"),
        CheckConstraint(
            "points_earned IS NULL OR points_earned >= 0",
            name="ck_reservations_points_earned_non_negative",
        ),
        CheckConstraint(
            "ended_at IS NULL OR started_at IS NULL OR ended_at >= started_at",
            name="ck_reservations_ended_after_started",
        ),
        CheckConstraint("version >= 0", name="ck_reservations_version_non_negative"),
        Index(
            "idx_reservations_open_started",
            "started_at",
            postgresql_where=text("ended_at IS NULL AND started_at IS NOT NULL"),
        ),
        Index("idx_reservations_guest", "guest_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), primary_key=True)
    guest_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey(
            "guests.id",
            name="fk_reservations_guest",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        nullable=False,
    )
    cast_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey(
            "casts.id",
            name="fk_reservations_cast",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
    )
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    duration_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    points_earned: Mapped[int | None] = mapped_column(BigInteger)
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
