"""Settlement of a finished session into transfer, refund and exceeded_pending rows."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Optional

from backend.db.enums import PointTransactionType
from settlement.accrual import accrued_cost
from settlement.common import SettlementClock
from settlement.errors import PreconditionFailed
from settlement.ledger import PointLedger
from settlement.records import NewPointTransaction, ReservationRecord
from settlement.repository import SettlementRepository

logger = logging.getLogger(__name__)

RESERVATION_UPDATED = "reservation.updated"


@dataclass(frozen=True)
class SettlementOutcome:
    success: bool
    total: int = 0
    transferred: int = 0
    refunded: int = 0
    exceeded: int = 0
    already_settled: bool = False
    reason: Optional[str] = None


class SessionSettlement:
    """Turn a closed reservation's holds into final ledger rows.

    Runs inside the caller's transaction. The caller rolls back when the
    outcome is not successful.
    """

    def __init__(
        self,
        repository: SettlementRepository,
        ledger: PointLedger,
        clock: SettlementClock | None = None,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.clock = clock or SettlementClock()

    def settle(self, reservation: ReservationRecord) -> SettlementOutcome:
        if reservation.ended_at is None:
            raise PreconditionFailed(f"reservation {reservation.reservation_id} has not ended")
        if reservation.points_earned is not None:
            return SettlementOutcome(success=True, total=reservation.points_earned, already_settled=True)
        if reservation.started_at is None and reservation.scheduled_at is None:
            return SettlementOutcome(success=False, reason="missing_timing")

        now = self.clock.now_utc()
        total = accrued_cost(
            reservation.scheduled_at,
            reservation.started_at,
            reservation.ended_at,
            reservation.duration_hours,
        )
        holds = sorted(self.ledger.unresolved_pending(reservation.reservation_id), key=lambda row: row.transaction_id)

        if reservation.cast_id is None:
            refunded = 0
            for hold in holds:
                self._resolve(hold.transaction_id, reservation, PointTransactionType.REFUND, hold.amount, now)
                refunded += hold.amount
            if not self.repository.record_points_earned(reservation.reservation_id, reservation.version, 0, now):
                return SettlementOutcome(success=False, reason="version_conflict")
            logger.info("Reservation %s had no cast; refunded %s", reservation.reservation_id, refunded)
            return SettlementOutcome(success=True, total=0, refunded=refunded)

        remaining = total
        transferred = 0
        refunded = 0
        for hold in holds:
            used = min(hold.amount, remaining)
            remaining -= used
            if used > 0:
                self._resolve(hold.transaction_id, reservation, PointTransactionType.TRANSFER, used, now)
                transferred += used
            if hold.amount - used > 0:
                self._resolve(hold.transaction_id, reservation, PointTransactionType.REFUND, hold.amount - used, now)
                refunded += hold.amount - used

        exceeded = remaining
        if exceeded > 0:
            self.ledger.append(
                NewPointTransaction(
                    type=PointTransactionType.EXCEEDED_PENDING,
                    amount=exceeded,
                    guest_id=reservation.guest_id,
                    cast_id=reservation.cast_id,
                    reservation_id=reservation.reservation_id,
                    description="Usage beyond reserved points",
                ),
                at=now,
            )

        if not self.repository.record_points_earned(reservation.reservation_id, reservation.version, total, now):
            return SettlementOutcome(success=False, reason="version_conflict")

        return SettlementOutcome(
            success=True,
            total=total,
            transferred=transferred,
            refunded=refunded,
            exceeded=exceeded,
        )

    def _resolve(
        self,
        hold_id: int,
        reservation: ReservationRecord,
        tx_type: PointTransactionType,
        amount: int,
        at: datetime,
    ) -> None:
        description = "Reserved points earned" if tx_type is PointTransactionType.TRANSFER else "Unused reserved points"
        self.ledger.append(
            NewPointTransaction(
                type=tx_type,
                amount=amount,
                guest_id=reservation.guest_id,
                cast_id=reservation.cast_id if tx_type is PointTransactionType.TRANSFER else None,
                reservation_id=reservation.reservation_id,
                source_transaction_id=hold_id,
                description=description,
            ),
            at=at,
        )

    def close_and_settle(self, reservation_id: int, ended_at: Optional[datetime] = None) -> SettlementOutcome:
        """Normal-path close of one reservation; raises on any failure."""
        reservation = self.repository.get_reservation(reservation_id, for_update=True)
        if reservation is None:
            raise PreconditionFailed(f"reservation {reservation_id} does not exist")
        if reservation.ended_at is None:
            if reservation.started_at is None:
                raise PreconditionFailed(f"reservation {reservation_id} has not started")
            closed = self.repository.close_reservation(
                reservation_id,
                reservation.version,
                ended_at or self.clock.now_utc(),
            )
            if closed is None:
                raise PreconditionFailed(f"reservation {reservation_id} changed concurrently")
            reservation = closed

        outcome = self.settle(reservation)
        if not outcome.success:
            raise PreconditionFailed(f"reservation {reservation_id} settlement failed: {outcome.reason}")
        if not outcome.already_settled:
            publish_reservation_updated(self.repository, reservation_id, outcome, "session_closed", self.clock.now_utc())
        return outcome


def publish_reservation_updated(
    repository: SettlementRepository,
    reservation_id: int,
    outcome: SettlementOutcome,
    cause: str,
    at: datetime,
) -> int:
    return repository.insert_event(
        RESERVATION_UPDATED,
        "reservation",
        reservation_id,
        {
            "cause": cause,
            "points_earned": outcome.total,
            "transferred": outcome.transferred,
            "refunded": outcome.refunded,
            "exceeded": outcome.exceeded,
        },
        at,
    )
