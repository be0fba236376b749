"""Unit tests for quarterly reset and grade recomputation."""

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from backend.db.enums import CastGrade, GuestGrade
from backend.db.enums import PointTransactionType as T
from settlement.common import FixedClock
from settlement.errors import PreconditionFailed
from settlement.grade_engine import (
    GradeEngine,
    cast_grade_for,
    guest_grade_for,
    is_quarter_start,
    quarter_label,
)
from settlement.ledger import PointLedger
from settlement.records import NewPointTransaction
from settlement.repository import OWNER_CAST
from tests.utils.memory_repository import MemorySettlementRepository

NOW = datetime(2026, 3, 31, 15, 0, tzinfo=timezone.utc)


def _populate(repo: MemorySettlementRepository) -> tuple[int, int, int]:
    ledger = PointLedger(repo, FixedClock(NOW))
    guest = repo.add_guest()
    rich_cast = repo.add_cast()
    empty_cast = repo.add_cast()
    ledger.append(NewPointTransaction(type=T.BUY, amount=200_000, guest_id=guest))
    ledger.append(NewPointTransaction(type=T.PENDING, amount=150_000, guest_id=guest))
    ledger.append(NewPointTransaction(type=T.TRANSFER, amount=600_000, cast_id=rich_cast))
    repo.commit()
    return guest, rich_cast, empty_cast


def test_thresholds_and_quarter_helpers() -> None:
    assert guest_grade_for(0) is GuestGrade.GREEN
    assert guest_grade_for(100_000) is GuestGrade.ORANGE
    assert guest_grade_for(999_999) is GuestGrade.SILVER
    assert guest_grade_for(30_000_000) is GuestGrade.CENTURION
    assert cast_grade_for(499_999) is CastGrade.BEGINNER
    assert cast_grade_for(500_000) is CastGrade.GREEN
    assert cast_grade_for(30_000_000) is CastGrade.PLATINUM

    assert is_quarter_start(date(2026, 7, 1))
    assert not is_quarter_start(date(2026, 7, 2))
    assert not is_quarter_start(date(2026, 2, 1))
    assert quarter_label(date(2026, 4, 1)) == "2026-Q1"
    assert quarter_label(date(2026, 1, 1)) == "2025-Q4"
    assert quarter_label(date(2026, 10, 1)) == "2026-Q3"


def test_reset_on_the_wrong_date_writes_nothing(repo: MemorySettlementRepository) -> None:
    _populate(repo)
    writes, commits = repo.writes, repo.commits

    with pytest.raises(PreconditionFailed, match="2026-04-02"):
        GradeEngine(repo, clock=FixedClock(NOW)).reset_quarterly(date(2026, 4, 2))

    assert (repo.writes, repo.commits) == (writes, commits)


def test_dry_run_reports_the_real_totals_and_writes_nothing(repo: MemorySettlementRepository) -> None:
    guest, rich_cast, _ = _populate(repo)
    engine = GradeEngine(repo, clock=FixedClock(NOW))
    transactions = dict(repo.transactions)

    dry = engine.reset_quarterly(date(2026, 4, 1), dry_run=True)

    assert repo.transactions == transactions
    assert repo.get_cast(rich_cast).points == 600_000
    assert repo.get_guest(guest).grade_points == 150_000

    real = engine.reset_quarterly(date(2026, 4, 1))

    assert dry.dry_run is True and real.dry_run is False
    assert {key: value for key, value in dry.as_dict().items() if key != "dry_run"} == {
        key: value for key, value in real.as_dict().items() if key != "dry_run"
    }
    assert real.as_dict() == {
        "quarter": "2026-Q1",
        "dry_run": False,
        "cast_count": 2,
        "cast_points_total": 600_000,
        "guest_count": 1,
        "guest_grade_points_total": 150_000,
    }


def test_reset_zeroes_casts_through_the_ledger(repo: MemorySettlementRepository) -> None:
    guest, rich_cast, empty_cast = _populate(repo)
    ledger = PointLedger(repo)

    GradeEngine(repo, clock=FixedClock(NOW)).reset_quarterly(date(2026, 4, 1))

    assert repo.get_cast(rich_cast).points == 0
    assert repo.get_cast(empty_cast).points == 0
    assert repo.get_guest(guest).grade_points == 0
    assert repo.get_guest(guest).points == 50_000
    converts = [row for row in repo.list_owner_transactions(OWNER_CAST, rich_cast) if row.type is T.CONVERT]
    assert [(row.amount, row.description) for row in converts] == [(600_000, "Quarterly reset 2026-Q1")]
    assert repo.list_owner_transactions(OWNER_CAST, empty_cast) == []
    assert ledger.standing_points_for(OWNER_CAST, rich_cast) == 0


def test_recompute_grades(repo: MemorySettlementRepository) -> None:
    guest, rich_cast, empty_cast = _populate(repo)
    engine = GradeEngine(repo, clock=FixedClock(NOW))

    report = engine.recompute_grades()

    assert report.job == "grades:recompute"
    assert (report.processed, report.succeeded, report.skipped) == (3, 2, 1)
    assert repo.get_guest(guest).grade == GuestGrade.ORANGE.value
    assert repo.get_cast(rich_cast).grade == CastGrade.GREEN.value
    assert repo.get_cast(rich_cast).grade_points == 600_000
    assert repo.get_cast(empty_cast).grade == CastGrade.BEGINNER.value

    again = engine.recompute_grades()
    assert (again.succeeded, again.skipped) == (0, 3)
