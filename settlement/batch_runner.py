"""Per-candidate transactional batch execution with an aggregate report."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import enum
import logging
from typing import Any, Callable, Iterable, Iterator, Protocol, TypeVar

from settlement.errors import SettlementError, TransientSweepError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransactionScope(Protocol):
    def commit(self) -> None:
        """Commit the current unit of work."""

    def rollback(self) -> None:
        """Discard the current unit of work."""


class UnitOutcome(str, enum.Enum):
    """What a unit of work did with its candidate."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    ESCALATED = "escalated"


@dataclass(frozen=True)
class BatchFailure:
    candidate_id: Any
    reason: str
    message: str


@dataclass
class BatchReport:
    job: str
    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    escalated: int = 0
    failed: int = 0
    failures: list[BatchFailure] = field(default_factory=list)

    @property
    def strict_failure(self) -> bool:
        """Nothing succeeded and at least one candidate failed."""
        return self.succeeded == 0 and self.failed > 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "escalated": self.escalated,
            "failed": self.failed,
            "failures": [
                {"candidate_id": failure.candidate_id, "reason": failure.reason, "message": failure.message}
                for failure in self.failures
            ],
        }


class BatchRunner:
    """Run one isolated transaction per candidate.

    APPLIED and ESCALATED outcomes commit. SKIPPED and any exception roll the
    candidate back; exceptions are recorded on the report and the run moves on
    to the next candidate.
    """

    def __init__(self, scope: TransactionScope, job: str) -> None:
        self.scope = scope
        self.job = job

    def run(
        self,
        candidates: Iterable[T],
        unit: Callable[[T], UnitOutcome],
        candidate_id: Callable[[T], Any],
    ) -> BatchReport:
        report = BatchReport(job=self.job)
        for candidate in candidates:
            key = candidate_id(candidate)
            report.processed += 1
            try:
                outcome = unit(candidate)
            except SettlementError as exc:
                self.scope.rollback()
                logger.warning("%s: candidate %s rolled back (%s): %s", self.job, key, exc.reason, exc)
                report.failed += 1
                report.failures.append(BatchFailure(candidate_id=key, reason=exc.reason, message=str(exc)))
                continue
            except Exception as exc:
                self.scope.rollback()
                error = TransientSweepError(key, exc)
                logger.exception("%s: candidate %s failed", self.job, key)
                report.failed += 1
                report.failures.append(BatchFailure(candidate_id=key, reason=error.reason, message=str(error)))
                continue

            if outcome is UnitOutcome.SKIPPED:
                self.scope.rollback()
                report.skipped += 1
                continue

            self.scope.commit()
            if outcome is UnitOutcome.ESCALATED:
                report.escalated += 1
            else:
                report.succeeded += 1

        logger.info(
            "%s finished: processed=%s succeeded=%s skipped=%s escalated=%s failed=%s",
            self.job,
            report.processed,
            report.succeeded,
            report.skipped,
            report.escalated,
            report.failed,
        )
        return report


@contextmanager
def unit_of_work(scope: TransactionScope) -> Iterator[None]:
    """Commit on success, roll back and re-raise on any exception."""
    try:
        yield
    except Exception:
        scope.rollback()
        raise
    scope.commit()
