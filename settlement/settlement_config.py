"""Environment-backed configuration for settlement jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
import os
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from backend.db.enums import PointTransactionType


@dataclass(frozen=True)
class SettlementConfig:
    """Canonical configuration surface for ledger sweeps and payouts."""

    timezone_name: str = "Asia/Tokyo"
    yen_per_point: Decimal = Decimal("1.2")
    scheduled_fee_rate: Decimal = Decimal("0")
    grade_fee_rates: dict[str, Decimal] = field(default_factory=dict)
    instant_fee_rate: Decimal = Decimal("0")
    pending_wait_days: int = 2
    payout_offset_months: int = 1
    business_day_adjustment: bool = False
    earnable_types: tuple[PointTransactionType, ...] = (PointTransactionType.TRANSFER,)
    instant_min_yen: int = 5000
    instant_min_points: int = 1000
    instant_max_ratio: Decimal = Decimal("0.5")

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone_name)

    def fee_rate_for_grade(self, grade: str | None) -> Decimal:
        """Scheduled fee rate, overridden per cast grade when configured."""
        if grade is not None and grade in self.grade_fee_rates:
            return self.grade_fee_rates[grade]
        return self.scheduled_fee_rate


def _read_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip()
    if value == "":
        raise RuntimeError(f"Empty value for environment variable: {name}")
    return value


def _read_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise RuntimeError(f"Invalid boolean value for {name}: {raw}")


def _read_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer value for {name}: {raw}") from exc
    return value


def _parse_decimal(name: str, raw: str) -> Decimal:
    try:
        return Decimal(raw.strip())
    except InvalidOperation as exc:
        raise RuntimeError(f"Invalid decimal value for {name}: {raw}") from exc


def _read_decimal(name: str, default: Decimal) -> Decimal:
    raw = os.getenv(name)
    if raw is None:
        return default
    return _parse_decimal(name, raw)


def _read_rate(name: str, default: Decimal) -> Decimal:
    value = _read_decimal(name, default)
    if value < 0 or value >= 1:
        raise RuntimeError(f"{name} must be in [0, 1): {value}")
    return value


def _read_grade_fee_rates(name: str) -> dict[str, Decimal]:
    raw = os.getenv(name, "").strip()
    if raw == "":
        return {}
    rates: dict[str, Decimal] = {}
    for chunk in raw.split(","):
        grade, sep, rate = chunk.partition("=")
        if not sep or not grade.strip():
            raise RuntimeError(f"Invalid grade fee entry for {name}: {chunk}")
        value = _parse_decimal(name, rate)
        if value < 0 or value >= 1:
            raise RuntimeError(f"{name} rate for {grade.strip()} must be in [0, 1): {value}")
        rates[grade.strip().lower()] = value
    return rates


def _read_earnable_types(name: str) -> tuple[PointTransactionType, ...]:
    raw = os.getenv(name)
    if raw is None:
        return (PointTransactionType.TRANSFER,)
    types: list[PointTransactionType] = []
    for token in raw.split(","):
        token = token.strip().lower()
        if not token:
            continue
        try:
            tx_type = PointTransactionType(token)
        except ValueError as exc:
            raise RuntimeError(f"Unknown transaction type in {name}: {token}") from exc
        if tx_type not in (PointTransactionType.TRANSFER, PointTransactionType.GIFT):
            raise RuntimeError(f"{name} only accepts transfer and gift, got: {token}")
        if tx_type not in types:
            types.append(tx_type)
    if not types:
        raise RuntimeError(f"{name} must name at least one transaction type")
    return tuple(types)


def load_settlement_config() -> SettlementConfig:
    """Load and validate settlement configuration from environment."""
    timezone_name = _read_str("SETTLEMENT_TIMEZONE", "Asia/Tokyo")
    try:
        ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise RuntimeError(f"Unknown SETTLEMENT_TIMEZONE: {timezone_name}") from exc

    yen_per_point = _read_decimal("SETTLEMENT_YEN_PER_POINT", Decimal("1.2"))
    if yen_per_point <= 0:
        raise RuntimeError("SETTLEMENT_YEN_PER_POINT must be positive")

    pending_wait_days = _read_int("SETTLEMENT_PENDING_WAIT_DAYS", 2)
    if pending_wait_days < 0:
        raise RuntimeError("SETTLEMENT_PENDING_WAIT_DAYS must be >= 0")

    payout_offset_months = _read_int("SETTLEMENT_PAYOUT_OFFSET_MONTHS", 1)
    if payout_offset_months < 0:
        raise RuntimeError("SETTLEMENT_PAYOUT_OFFSET_MONTHS must be >= 0")

    instant_max_ratio = _read_decimal("SETTLEMENT_INSTANT_MAX_RATIO", Decimal("0.5"))
    if instant_max_ratio <= 0 or instant_max_ratio > 1:
        raise RuntimeError("SETTLEMENT_INSTANT_MAX_RATIO must be in (0, 1]")

    return SettlementConfig(
        timezone_name=timezone_name,
        yen_per_point=yen_per_point,
        scheduled_fee_rate=_read_rate("SETTLEMENT_SCHEDULED_FEE_RATE", Decimal("0")),
        grade_fee_rates=_read_grade_fee_rates("SETTLEMENT_GRADE_FEE_RATES"),
        instant_fee_rate=_read_rate("SETTLEMENT_INSTANT_FEE_RATE", Decimal("0")),
        pending_wait_days=pending_wait_days,
        payout_offset_months=payout_offset_months,
        business_day_adjustment=_read_bool("SETTLEMENT_BUSINESS_DAY_ADJUSTMENT", False),
        earnable_types=_read_earnable_types("SETTLEMENT_EARNABLE_TYPES"),
        instant_min_yen=_read_int("SETTLEMENT_INSTANT_MIN_YEN", 5000),
        instant_min_points=_read_int("SETTLEMENT_INSTANT_MIN_POINTS", 1000),
        instant_max_ratio=instant_max_ratio,
    )
