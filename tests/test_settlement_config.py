from __future__ import annotations

from decimal import Decimal

import pytest

from backend.db.enums import PointTransactionType
from settlement.settlement_config import SettlementConfig, load_settlement_config


_ALL_ENV = (
    "SETTLEMENT_TIMEZONE",
    "SETTLEMENT_YEN_PER_POINT",
    "SETTLEMENT_SCHEDULED_FEE_RATE",
    "SETTLEMENT_GRADE_FEE_RATES",
    "SETTLEMENT_INSTANT_FEE_RATE",
    "SETTLEMENT_PENDING_WAIT_DAYS",
    "SETTLEMENT_PAYOUT_OFFSET_MONTHS",
    "SETTLEMENT_BUSINESS_DAY_ADJUSTMENT",
    "SETTLEMENT_EARNABLE_TYPES",
    "SETTLEMENT_INSTANT_MIN_YEN",
    "SETTLEMENT_INSTANT_MIN_POINTS",
    "SETTLEMENT_INSTANT_MAX_RATIO",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ALL_ENV:
        monkeypatch.delenv(key, raising=False)


def test_defaults_match_dataclass_defaults() -> None:
    cfg = load_settlement_config()
    assert cfg == SettlementConfig()
    assert cfg.timezone_name == "Asia/Tokyo"
    assert cfg.yen_per_point == Decimal("1.2")
    assert cfg.pending_wait_days == 2
    assert cfg.payout_offset_months == 1
    assert cfg.business_day_adjustment is False
    assert cfg.earnable_types == (PointTransactionType.TRANSFER,)
    assert cfg.tz.key == "Asia/Tokyo"


def test_overrides_are_parsed(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SETTLEMENT_TIMEZONE", "UTC")
    monkeypatch.setenv("SETTLEMENT_YEN_PER_POINT", "1.5")
    monkeypatch.setenv("SETTLEMENT_SCHEDULED_FEE_RATE", "0.05")
    monkeypatch.setenv("SETTLEMENT_GRADE_FEE_RATES", "Gold=0.03, platinum=0.02")
    monkeypatch.setenv("SETTLEMENT_PENDING_WAIT_DAYS", "3")
    monkeypatch.setenv("SETTLEMENT_BUSINESS_DAY_ADJUSTMENT", "yes")
    monkeypatch.setenv("SETTLEMENT_EARNABLE_TYPES", "transfer,gift,transfer")

    cfg = load_settlement_config()
    assert cfg.timezone_name == "UTC"
    assert cfg.yen_per_point == Decimal("1.5")
    assert cfg.fee_rate_for_grade("gold") == Decimal("0.03")
    assert cfg.fee_rate_for_grade("platinum") == Decimal("0.02")
    assert cfg.fee_rate_for_grade("beginner") == Decimal("0.05")
    assert cfg.fee_rate_for_grade(None) == Decimal("0.05")
    assert cfg.pending_wait_days == 3
    assert cfg.business_day_adjustment is True
    assert cfg.earnable_types == (PointTransactionType.TRANSFER, PointTransactionType.GIFT)


@pytest.mark.parametrize(
    ("key", "value", "match"),
    [
        ("SETTLEMENT_TIMEZONE", "Mars/Olympus", "Unknown SETTLEMENT_TIMEZONE"),
        ("SETTLEMENT_TIMEZONE", "  ", "Empty value"),
        ("SETTLEMENT_YEN_PER_POINT", "abc", "Invalid decimal"),
        ("SETTLEMENT_YEN_PER_POINT", "0", "must be positive"),
        ("SETTLEMENT_SCHEDULED_FEE_RATE", "1", r"must be in \[0, 1\)"),
        ("SETTLEMENT_GRADE_FEE_RATES", "gold", "Invalid grade fee entry"),
        ("SETTLEMENT_PENDING_WAIT_DAYS", "two", "Invalid integer"),
        ("SETTLEMENT_PENDING_WAIT_DAYS", "-1", ">= 0"),
        ("SETTLEMENT_BUSINESS_DAY_ADJUSTMENT", "maybe", "Invalid boolean"),
        ("SETTLEMENT_EARNABLE_TYPES", "buy", "only accepts transfer and gift"),
        ("SETTLEMENT_EARNABLE_TYPES", "bogus", "Unknown transaction type"),
        ("SETTLEMENT_EARNABLE_TYPES", " , ", "at least one"),
        ("SETTLEMENT_INSTANT_MAX_RATIO", "1.5", r"must be in \(0, 1\]"),
    ],
)
def test_invalid_values_raise(monkeypatch: pytest.MonkeyPatch, key: str, value: str, match: str) -> None:
    monkeypatch.setenv(key, value)
    with pytest.raises(RuntimeError, match=match):
        load_settlement_config()
