"""Force-close sessions whose accrued cost has outrun the guest's funds."""

from __future__ import annotations

from dataclasses import dataclass
import logging

from settlement.accrual import accrued_cost
from settlement.batch_runner import BatchReport, BatchRunner, UnitOutcome
from settlement.common import SettlementClock
from settlement.errors import PreconditionFailed
from settlement.ledger import PointLedger
from settlement.records import ReservationRecord
from settlement.repository import SettlementRepository
from settlement.session_settlement import SessionSettlement, publish_reservation_updated

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FundsCheck:
    accrued: int
    reserved_pending: int
    guest_points: int

    @property
    def available(self) -> int:
        return self.reserved_pending + self.guest_points

    @property
    def exhausted(self) -> bool:
        return self.accrued >= self.available


class AutoExitSweeper:
    def __init__(
        self,
        repository: SettlementRepository,
        ledger: PointLedger | None = None,
        clock: SettlementClock | None = None,
    ) -> None:
        self.repository = repository
        self.clock = clock or SettlementClock()
        self.ledger = ledger or PointLedger(repository, self.clock)
        self.settlement = SessionSettlement(repository, self.ledger, self.clock)

    def run(self) -> BatchReport:
        candidates = list(self.repository.list_open_reservations())
        runner = BatchRunner(self.repository, "reservations:auto-exit")
        return runner.run(candidates, self._process, lambda snapshot: snapshot.reservation_id)

    def _process(self, snapshot: ReservationRecord) -> UnitOutcome:
        reservation = self.repository.get_reservation(snapshot.reservation_id, for_update=True)
        if reservation is None or not reservation.is_open:
            return UnitOutcome.SKIPPED
        if reservation.version != snapshot.version:
            logger.info("Reservation %s changed since the scan; leaving it", reservation.reservation_id)
            return UnitOutcome.SKIPPED

        guest = self.repository.get_guest(reservation.guest_id, for_update=True)
        if guest is None:
            logger.warning("Reservation %s references missing guest %s", reservation.reservation_id, reservation.guest_id)
            return UnitOutcome.SKIPPED

        now = self.clock.now_utc()
        check = FundsCheck(
            accrued=accrued_cost(reservation.scheduled_at, reservation.started_at, now, reservation.duration_hours),
            reserved_pending=sum(row.amount for row in self.ledger.find_pending_by_reservation(reservation.reservation_id)),
            guest_points=guest.points,
        )
        if not check.exhausted:
            return UnitOutcome.SKIPPED

        closed = self.repository.close_reservation(reservation.reservation_id, reservation.version, now)
        if closed is None:
            raise PreconditionFailed(f"reservation {reservation.reservation_id} changed concurrently")

        outcome = self.settlement.settle(closed)
        if not outcome.success:
            raise PreconditionFailed(
                f"settlement of reservation {reservation.reservation_id} failed: {outcome.reason}"
            )

        publish_reservation_updated(self.repository, reservation.reservation_id, outcome, "auto_exit", now)
        logger.info(
            "Auto-exited reservation %s: accrued=%s available=%s",
            reservation.reservation_id,
            check.accrued,
            check.available,
        )
        return UnitOutcome.APPLIED
