"""Shared helpers for settlement modules: DB protocol, clock, money math, hashing."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_EVEN, ROUND_HALF_UP, Decimal
from hashlib import sha256
import calendar
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence

RATE_SCALE = Decimal("0.0001")


class SettlementDatabase(Protocol):
    """Minimal transactional DB protocol used by the SQL repository."""

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        """Fetch one row."""

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        """Fetch rows."""

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        """Execute mutation statement."""

    def commit(self) -> None:
        """Commit the current transaction."""

    def rollback(self) -> None:
        """Roll back the current transaction."""


@dataclass(frozen=True)
class SettlementClock:
    """Injectable UTC clock for deterministic testing."""

    def now_utc(self) -> datetime:
        """Return current UTC timestamp."""
        return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class FixedClock:
    """Clock pinned to one instant."""

    instant: datetime

    def now_utc(self) -> datetime:
        return self.instant.astimezone(timezone.utc)


def normalize_rate(value: Decimal) -> Decimal:
    """Quantize rates to the stored NUMERIC scale."""
    return value.quantize(RATE_SCALE, rounding=ROUND_HALF_EVEN)


def to_yen(value: Decimal) -> int:
    """Round a decimal amount to whole yen, half away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_timestamp(value: datetime) -> str:
    """Normalize timestamps to UTC RFC3339."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def normalize_token(value: Any) -> str:
    """Serialize primitive values deterministically for hashing."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    if isinstance(value, datetime):
        return normalize_timestamp(value)
    return str(value)


def stable_hash(tokens: Iterable[Any]) -> str:
    """Compute a stable SHA256 hash over canonical token serialization."""
    preimage = "|".join(normalize_token(token) for token in tokens)
    return sha256(preimage.encode("utf-8")).hexdigest()


def month_bounds(year: int, month: int, tz: Any) -> tuple[datetime, datetime]:
    """Return [first instant, last microsecond] of a calendar month in ``tz``."""
    start = datetime(year, month, 1, tzinfo=tz)
    last_day = calendar.monthrange(year, month)[1]
    end = datetime(year, month, last_day, 23, 59, 59, 999999, tzinfo=tz)
    return start, end


def shift_month(year: int, month: int, offset: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + offset
    return index // 12, index % 12 + 1


def end_of_month(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def previous_business_day(day: date) -> date:
    """Move Saturday/Sunday back to the preceding Friday."""
    while day.weekday() >= 5:
        day -= timedelta(days=1)
    return day


def parse_closing_month(value: str) -> tuple[int, int]:
    """Parse ``YYYY-MM`` into (year, month)."""
    year_text, sep, month_text = value.strip().partition("-")
    if not sep or len(year_text) != 4 or len(month_text) != 2:
        raise ValueError(f"closing month must be YYYY-MM: {value!r}")
    year, month = int(year_text), int(month_text)
    if not 1 <= month <= 12:
        raise ValueError(f"closing month must be YYYY-MM: {value!r}")
    return year, month
