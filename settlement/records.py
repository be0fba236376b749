"""Row snapshots exchanged between the repository and settlement engines."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from backend.db.enums import CastPayoutStatus, CastPayoutType, PointTransactionType


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _as_optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


@dataclass(frozen=True)
class GuestRecord:
    guest_id: int
    points: int
    grade_points: int
    grade: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "GuestRecord":
        return cls(
            guest_id=int(row["id"]),
            points=int(row["points"]),
            grade_points=int(row["grade_points"]),
            grade=str(row["grade"]),
        )


@dataclass(frozen=True)
class CastRecord:
    cast_id: int
    points: int
    grade_points: int
    grade: str
    payout_account_id: Optional[str]
    payouts_enabled: bool

    @property
    def can_receive_payouts(self) -> bool:
        return bool(self.payout_account_id) and self.payouts_enabled

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CastRecord":
        return cls(
            cast_id=int(row["id"]),
            points=int(row["points"]),
            grade_points=int(row["grade_points"]),
            grade=str(row["grade"]),
            payout_account_id=row.get("payout_account_id"),
            payouts_enabled=bool(row.get("payouts_enabled", False)),
        )


@dataclass(frozen=True)
class ReservationRecord:
    reservation_id: int
    guest_id: int
    cast_id: Optional[int]
    scheduled_at: Optional[datetime]
    duration_hours: int
    started_at: Optional[datetime]
    ended_at: Optional[datetime]
    points_earned: Optional[int]
    version: int

    @property
    def is_open(self) -> bool:
        return self.started_at is not None and self.ended_at is None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ReservationRecord":
        return cls(
            reservation_id=int(row["id"]),
            guest_id=int(row["guest_id"]),
            cast_id=_as_optional_int(row.get("cast_id")),
            scheduled_at=_as_datetime(row.get("scheduled_at")),
            duration_hours=int(row["duration_hours"]),
            started_at=_as_datetime(row.get("started_at")),
            ended_at=_as_datetime(row.get("ended_at")),
            points_earned=_as_optional_int(row.get("points_earned")),
            version=int(row["version"]),
        )


@dataclass(frozen=True)
class NewPointTransaction:
    """Ledger entry before it has been assigned an id."""

    type: PointTransactionType
    amount: int
    guest_id: Optional[int] = None
    cast_id: Optional[int] = None
    reservation_id: Optional[int] = None
    payment_id: Optional[str] = None
    source_transaction_id: Optional[int] = None
    description: str = ""


@dataclass(frozen=True)
class PointTransactionRecord:
    transaction_id: int
    type: PointTransactionType
    amount: int
    guest_id: Optional[int]
    cast_id: Optional[int]
    reservation_id: Optional[int]
    payment_id: Optional[str]
    cast_payout_id: Optional[int]
    source_transaction_id: Optional[int]
    description: str
    created_at: datetime
    source_type: Optional[PointTransactionType] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PointTransactionRecord":
        created_at = _as_datetime(row["created_at"])
        assert created_at is not None
        source_type = row.get("source_type")
        return cls(
            transaction_id=int(row["id"]),
            type=PointTransactionType(str(row["type"])),
            amount=int(row["amount"]),
            guest_id=_as_optional_int(row.get("guest_id")),
            cast_id=_as_optional_int(row.get("cast_id")),
            reservation_id=_as_optional_int(row.get("reservation_id")),
            payment_id=row.get("payment_id"),
            cast_payout_id=_as_optional_int(row.get("cast_payout_id")),
            source_transaction_id=_as_optional_int(row.get("source_transaction_id")),
            description=str(row.get("description") or ""),
            created_at=created_at,
            source_type=None if source_type is None else PointTransactionType(str(source_type)),
        )


@dataclass(frozen=True)
class NewCastPayout:
    cast_id: int
    type: CastPayoutType
    closing_month: str
    period_start: datetime
    period_end: datetime
    total_points: int
    conversion_rate: Decimal
    gross_amount_yen: int
    fee_rate: Decimal
    fee_amount_yen: int
    net_amount_yen: int
    transaction_count: int
    status: CastPayoutStatus
    scheduled_payout_date: date
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CastPayoutRecord:
    payout_id: int
    cast_id: int
    type: CastPayoutType
    closing_month: str
    period_start: datetime
    period_end: datetime
    total_points: int
    conversion_rate: Decimal
    gross_amount_yen: int
    fee_rate: Decimal
    fee_amount_yen: int
    net_amount_yen: int
    transaction_count: int
    status: CastPayoutStatus
    scheduled_payout_date: date
    paid_at: Optional[datetime]
    provider_reference: Optional[str]
    metadata: dict[str, Any]
    version: int

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CastPayoutRecord":
        period_start = _as_datetime(row["period_start"])
        period_end = _as_datetime(row["period_end"])
        assert period_start is not None and period_end is not None
        return cls(
            payout_id=int(row["id"]),
            cast_id=int(row["cast_id"]),
            type=CastPayoutType(str(row["type"])),
            closing_month=str(row["closing_month"]),
            period_start=period_start,
            period_end=period_end,
            total_points=int(row["total_points"]),
            conversion_rate=_as_decimal(row["conversion_rate"]),
            gross_amount_yen=int(row["gross_amount_yen"]),
            fee_rate=_as_decimal(row["fee_rate"]),
            fee_amount_yen=int(row["fee_amount_yen"]),
            net_amount_yen=int(row["net_amount_yen"]),
            transaction_count=int(row["transaction_count"]),
            status=CastPayoutStatus(str(row["status"])),
            scheduled_payout_date=_as_date(row["scheduled_payout_date"]),
            paid_at=_as_datetime(row.get("paid_at")),
            provider_reference=row.get("provider_reference"),
            metadata=dict(row.get("metadata") or {}),
            version=int(row["version"]),
        )
