"""Maturation of pending and exceeded_pending holds into transfers."""

from __future__ import annotations

from datetime import timedelta
import logging

from backend.db.enums import PointTransactionType
from settlement.batch_runner import BatchReport, BatchRunner, UnitOutcome
from settlement.common import SettlementClock
from settlement.ledger import PointLedger
from settlement.records import NewPointTransaction, PointTransactionRecord
from settlement.repository import SettlementRepository
from settlement.session_settlement import SessionSettlement, publish_reservation_updated
from settlement.settlement_config import SettlementConfig

logger = logging.getLogger(__name__)

UNCOVERED_EXCEEDED_PENDING = "uncovered_exceeded_pending"
PENDING_WITHOUT_CAST = "pending_without_cast"


class PendingResolutionProcessor:
    def __init__(
        self,
        repository: SettlementRepository,
        config: SettlementConfig | None = None,
        ledger: PointLedger | None = None,
        clock: SettlementClock | None = None,
    ) -> None:
        self.repository = repository
        self.config = config or SettlementConfig()
        self.clock = clock or SettlementClock()
        self.ledger = ledger or PointLedger(repository, self.clock)

    @property
    def wait_window(self) -> timedelta:
        return timedelta(days=self.config.pending_wait_days)

    def process_exceeded_pending(self) -> BatchReport:
        cutoff = self.clock.now_utc() - self.wait_window
        holds = list(
            self.repository.list_unresolved_holds(
                PointTransactionType.EXCEEDED_PENDING,
                cutoff,
                completed_reservations_only=False,
            )
        )
        runner = BatchRunner(self.repository, "points:process-exceeded-pending")
        return runner.run(holds, self._mature_exceeded, lambda hold: hold.transaction_id)

    def process_pending(self) -> BatchReport:
        cutoff = self.clock.now_utc() - self.wait_window
        holds = list(
            self.repository.list_unresolved_holds(
                PointTransactionType.PENDING,
                cutoff,
                completed_reservations_only=True,
            )
        )
        runner = BatchRunner(self.repository, "points:process-pending")
        return runner.run(holds, self._mature_pending, lambda hold: hold.transaction_id)

    def _mature_exceeded(self, hold: PointTransactionRecord) -> UnitOutcome:
        current = self.repository.get_transaction(hold.transaction_id, for_update=True)
        if current is None or self.ledger.is_resolved(hold.transaction_id):
            return UnitOutcome.SKIPPED
        if current.guest_id is None or current.cast_id is None:
            return self._escalate(current, UNCOVERED_EXCEEDED_PENDING, {"problem": "missing_owner"})

        guest = self.repository.get_guest(current.guest_id, for_update=True)
        if guest is None or guest.points < current.amount:
            return self._escalate(
                current,
                UNCOVERED_EXCEEDED_PENDING,
                {"amount": current.amount, "guest_points": None if guest is None else guest.points},
            )

        self._transfer(current, "Exceeded usage settled")
        return UnitOutcome.APPLIED

    def _mature_pending(self, hold: PointTransactionRecord) -> UnitOutcome:
        current = self.repository.get_transaction(hold.transaction_id, for_update=True)
        if current is None or self.ledger.is_resolved(hold.transaction_id):
            return UnitOutcome.SKIPPED
        if current.reservation_id is None:
            return UnitOutcome.SKIPPED

        reservation = self.repository.get_reservation(current.reservation_id, for_update=True)
        if reservation is None or reservation.ended_at is None:
            return UnitOutcome.SKIPPED
        if reservation.cast_id is None:
            return self._escalate(current, PENDING_WITHOUT_CAST, {"amount": current.amount})

        if reservation.points_earned is None:
            # an unsettled session is split by its accrued cost, never by the whole hold
            outcome = SessionSettlement(self.repository, self.ledger, self.clock).settle(reservation)
            if not outcome.success:
                logger.warning(
                    "Reservation %s could not be settled for pending maturation: %s",
                    reservation.reservation_id,
                    outcome.reason,
                )
                return UnitOutcome.SKIPPED
            publish_reservation_updated(
                self.repository, reservation.reservation_id, outcome, "pending_matured", self.clock.now_utc()
            )
            return UnitOutcome.APPLIED

        self._transfer(current, "Pending points matured", cast_id=reservation.cast_id)
        return UnitOutcome.APPLIED

    def _transfer(self, hold: PointTransactionRecord, description: str, cast_id: int | None = None) -> int:
        return self.ledger.append(
            NewPointTransaction(
                type=PointTransactionType.TRANSFER,
                amount=hold.amount,
                guest_id=hold.guest_id,
                cast_id=cast_id if cast_id is not None else hold.cast_id,
                reservation_id=hold.reservation_id,
                source_transaction_id=hold.transaction_id,
                description=description,
            ),
            at=self.clock.now_utc(),
        )

    def _escalate(self, hold: PointTransactionRecord, kind: str, detail: dict) -> UnitOutcome:
        queued = self.repository.insert_escalation(
            kind,
            detail=detail,
            created_at=self.clock.now_utc(),
            transaction_id=hold.transaction_id,
            reservation_id=hold.reservation_id,
        )
        if not queued:
            return UnitOutcome.SKIPPED
        logger.warning("Escalated %s for transaction %s: %s", kind, hold.transaction_id, detail)
        return UnitOutcome.ESCALATED
