"""Quarterly reset of grade-tracking points and tier recomputation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
import logging
from typing import Any, Sequence

from backend.db.enums import CastGrade, GuestGrade, PointTransactionType
from settlement.batch_runner import BatchReport, BatchRunner, UnitOutcome, unit_of_work
from settlement.common import SettlementClock
from settlement.errors import PreconditionFailed
from settlement.ledger import PointLedger
from settlement.records import CastRecord, GuestRecord, NewPointTransaction
from settlement.repository import SettlementRepository

logger = logging.getLogger(__name__)

QUARTER_START_MONTHS = (1, 4, 7, 10)

GUEST_GRADE_THRESHOLDS: tuple[tuple[GuestGrade, int], ...] = (
    (GuestGrade.CENTURION, 30_000_000),
    (GuestGrade.PLATINUM, 6_000_000),
    (GuestGrade.GOLD, 1_000_000),
    (GuestGrade.SILVER, 500_000),
    (GuestGrade.BRONZE, 300_000),
    (GuestGrade.ORANGE, 100_000),
    (GuestGrade.GREEN, 0),
)

CAST_GRADE_THRESHOLDS: tuple[tuple[CastGrade, int], ...] = (
    (CastGrade.PLATINUM, 30_000_000),
    (CastGrade.GOLD, 10_000_000),
    (CastGrade.SILVER, 5_000_000),
    (CastGrade.BRONZE, 2_000_000),
    (CastGrade.ORANGE, 1_000_000),
    (CastGrade.GREEN, 500_000),
    (CastGrade.BEGINNER, 0),
)


def guest_grade_for(usage_points: int) -> GuestGrade:
    for grade, threshold in GUEST_GRADE_THRESHOLDS:
        if usage_points >= threshold:
            return grade
    return GuestGrade.GREEN


def cast_grade_for(earned_points: int) -> CastGrade:
    for grade, threshold in CAST_GRADE_THRESHOLDS:
        if earned_points >= threshold:
            return grade
    return CastGrade.BEGINNER


def is_quarter_start(day: date) -> bool:
    return day.day == 1 and day.month in QUARTER_START_MONTHS


def quarter_label(day: date) -> str:
    """Label of the quarter that just ended, e.g. 2026-04-01 -> 2026-Q1."""
    index = (day.month - 1) // 3
    if index == 0:
        return f"{day.year - 1}-Q4"
    return f"{day.year}-Q{index}"


@dataclass(frozen=True)
class QuarterResetReport:
    quarter: str
    dry_run: bool
    cast_count: int
    cast_points_total: int
    guest_count: int
    guest_grade_points_total: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "quarter": self.quarter,
            "dry_run": self.dry_run,
            "cast_count": self.cast_count,
            "cast_points_total": self.cast_points_total,
            "guest_count": self.guest_count,
            "guest_grade_points_total": self.guest_grade_points_total,
        }


class GradeEngine:
    def __init__(
        self,
        repository: SettlementRepository,
        ledger: PointLedger | None = None,
        clock: SettlementClock | None = None,
    ) -> None:
        self.repository = repository
        self.clock = clock or SettlementClock()
        self.ledger = ledger or PointLedger(repository, self.clock)

    def reset_quarterly(self, today: date, *, dry_run: bool = False) -> QuarterResetReport:
        """Zero cast balances and guest grade points on the first day of a quarter.

        Cast balances go to zero through ``convert`` ledger rows so the cached
        balance keeps matching the ledger. Dry runs compute the same report and
        write nothing.
        """
        if not is_quarter_start(today):
            raise PreconditionFailed(
                f"quarterly reset only runs on 1 Jan/Apr/Jul/Oct, not {today.isoformat()}"
            )

        casts = list(self.repository.list_casts())
        guests = list(self.repository.list_guests())
        report = _summarize(quarter_label(today), dry_run, casts, guests)
        if dry_run:
            self.repository.rollback()
            logger.info("Quarter reset dry run: %s", report.as_dict())
            return report

        now = self.clock.now_utc()
        with unit_of_work(self.repository):
            for cast in casts:
                current = self.repository.get_cast(cast.cast_id, for_update=True)
                if current is None or current.points <= 0:
                    continue
                self.ledger.append(
                    NewPointTransaction(
                        type=PointTransactionType.CONVERT,
                        amount=current.points,
                        cast_id=current.cast_id,
                        description=f"Quarterly reset {report.quarter}",
                    ),
                    at=now,
                )
            self.repository.zero_guest_grade_points(now)
        logger.info("Quarter reset committed: %s", report.as_dict())
        return report

    def recompute_grades(self) -> BatchReport:
        guests = [guest.guest_id for guest in self.repository.list_guests()]
        casts = [cast.cast_id for cast in self.repository.list_casts()]
        guest_report = BatchRunner(self.repository, "grades:recompute guests").run(
            guests, self._recompute_guest, lambda guest_id: f"guest:{guest_id}"
        )
        cast_report = BatchRunner(self.repository, "grades:recompute casts").run(
            casts, self._recompute_cast, lambda cast_id: f"cast:{cast_id}"
        )
        merged = BatchReport(job="grades:recompute")
        for part in (guest_report, cast_report):
            merged.processed += part.processed
            merged.succeeded += part.succeeded
            merged.skipped += part.skipped
            merged.escalated += part.escalated
            merged.failed += part.failed
            merged.failures.extend(part.failures)
        return merged

    def _recompute_guest(self, guest_id: int) -> UnitOutcome:
        guest = self.repository.get_guest(guest_id, for_update=True)
        if guest is None:
            return UnitOutcome.SKIPPED
        grade = guest_grade_for(self.ledger.lifetime_usage(guest_id))
        if grade.value == guest.grade:
            return UnitOutcome.SKIPPED
        self.repository.update_guest_grade(guest_id, grade.value, self.clock.now_utc())
        return UnitOutcome.APPLIED

    def _recompute_cast(self, cast_id: int) -> UnitOutcome:
        cast = self.repository.get_cast(cast_id, for_update=True)
        if cast is None:
            return UnitOutcome.SKIPPED
        earned = self.ledger.lifetime_earnings(cast_id)
        grade = cast_grade_for(earned)
        if grade.value == cast.grade and earned == cast.grade_points:
            return UnitOutcome.SKIPPED
        self.repository.update_cast_grade(cast_id, grade.value, earned, self.clock.now_utc())
        return UnitOutcome.APPLIED


def _summarize(
    quarter: str,
    dry_run: bool,
    casts: Sequence[CastRecord],
    guests: Sequence[GuestRecord],
) -> QuarterResetReport:
    return QuarterResetReport(
        quarter=quarter,
        dry_run=dry_run,
        cast_count=len(casts),
        cast_points_total=sum(cast.points for cast in casts),
        guest_count=len(guests),
        guest_grade_points_total=sum(guest.grade_points for guest in guests),
    )
