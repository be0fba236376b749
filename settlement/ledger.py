"""Append-only point ledger with a same-transaction balance projection."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Optional, Sequence

from backend.db.enums import PointTransactionType
from settlement.common import SettlementClock
from settlement.errors import ValidationError
from settlement.records import NewPointTransaction, PointTransactionRecord
from settlement.repository import OWNER_CAST, OWNER_GUEST, SettlementRepository

logger = logging.getLogger(__name__)

HOLD_TYPES = (PointTransactionType.PENDING, PointTransactionType.EXCEEDED_PENDING)
RESOLVING_TYPES = (PointTransactionType.TRANSFER, PointTransactionType.REFUND)

_GUEST_REQUIRED = frozenset(
    {
        PointTransactionType.BUY,
        PointTransactionType.PENDING,
        PointTransactionType.EXCEEDED_PENDING,
        PointTransactionType.REFUND,
    }
)
_CAST_REQUIRED = frozenset({PointTransactionType.TRANSFER, PointTransactionType.GIFT})


@dataclass(frozen=True)
class BalanceEffect:
    guest_points: int = 0
    guest_grade_points: int = 0
    cast_points: int = 0


def balance_effect(
    tx_type: PointTransactionType,
    amount: int,
    *,
    has_guest: bool,
    has_cast: bool,
    source_type: Optional[PointTransactionType] = None,
) -> BalanceEffect:
    """Signed effect of one ledger row on the cached balances.

    ``exceeded_pending`` is a provisional claim and moves nothing until a
    transfer resolves it; that transfer is what debits the guest. Refunding
    one likewise moves nothing.
    """
    if tx_type is PointTransactionType.BUY:
        return BalanceEffect(guest_points=amount)
    if tx_type is PointTransactionType.PENDING:
        return BalanceEffect(guest_points=-amount, guest_grade_points=amount)
    if tx_type is PointTransactionType.EXCEEDED_PENDING:
        return BalanceEffect()
    if tx_type is PointTransactionType.REFUND:
        if source_type is PointTransactionType.EXCEEDED_PENDING:
            return BalanceEffect()
        return BalanceEffect(guest_points=amount, guest_grade_points=-amount)
    if tx_type is PointTransactionType.TRANSFER:
        if source_type is PointTransactionType.EXCEEDED_PENDING and has_guest:
            return BalanceEffect(guest_points=-amount, guest_grade_points=amount, cast_points=amount)
        return BalanceEffect(cast_points=amount)
    if tx_type is PointTransactionType.GIFT:
        return BalanceEffect(
            guest_points=-amount if has_guest else 0,
            guest_grade_points=amount if has_guest else 0,
            cast_points=amount if has_cast else 0,
        )
    if tx_type is PointTransactionType.CONVERT:
        return BalanceEffect(
            guest_points=amount if has_guest else 0,
            cast_points=-amount if has_cast else 0,
        )
    raise ValidationError(f"Unsupported transaction type: {tx_type}")


class PointLedger:
    """Single write path for point movements.

    Every append validates the entry, inserts the row and shifts the cached
    ``points`` columns inside the caller's transaction, so the cached values
    always equal what :meth:`standing_points_for` derives from the rows.
    """

    def __init__(self, repository: SettlementRepository, clock: SettlementClock | None = None) -> None:
        self.repository = repository
        self.clock = clock or SettlementClock()

    def append(self, entry: NewPointTransaction, *, at: Optional[datetime] = None) -> int:
        created_at = at or self.clock.now_utc()
        tx_type = PointTransactionType(entry.type)

        if isinstance(entry.amount, bool) or not isinstance(entry.amount, int):
            raise ValidationError(f"amount must be an integer, got {entry.amount!r}")
        if entry.amount <= 0:
            raise ValidationError(f"amount must be positive, got {entry.amount}")
        if entry.guest_id is None and entry.cast_id is None:
            raise ValidationError("transaction needs a guest_id or a cast_id")
        if tx_type in _GUEST_REQUIRED and entry.guest_id is None:
            raise ValidationError(f"{tx_type.value} transaction needs a guest_id")
        if tx_type in _CAST_REQUIRED and entry.cast_id is None:
            raise ValidationError(f"{tx_type.value} transaction needs a cast_id")

        source_type = self._validate_source(entry, tx_type)

        guest = None
        if entry.guest_id is not None:
            guest = self.repository.get_guest(entry.guest_id, for_update=True)
            if guest is None:
                raise ValidationError(f"unknown guest_id {entry.guest_id}")
        cast = None
        if entry.cast_id is not None:
            cast = self.repository.get_cast(entry.cast_id, for_update=True)
            if cast is None:
                raise ValidationError(f"unknown cast_id {entry.cast_id}")

        effect = balance_effect(
            tx_type,
            entry.amount,
            has_guest=guest is not None,
            has_cast=cast is not None,
            source_type=source_type,
        )
        if guest is not None and guest.points + effect.guest_points < 0:
            raise ValidationError(
                f"guest {guest.guest_id} balance {guest.points} cannot cover {tx_type.value} of {entry.amount}"
            )
        if cast is not None and cast.points + effect.cast_points < 0:
            raise ValidationError(
                f"cast {cast.cast_id} balance {cast.points} cannot cover {tx_type.value} of {entry.amount}"
            )

        transaction_id = self.repository.insert_transaction(entry, created_at)

        if guest is not None and (effect.guest_points or effect.guest_grade_points):
            # grade points are a spend counter and never go below zero
            grade_delta = max(effect.guest_grade_points, -guest.grade_points)
            self.repository.apply_guest_delta(guest.guest_id, effect.guest_points, grade_delta, created_at)
        if cast is not None and effect.cast_points:
            self.repository.apply_cast_delta(cast.cast_id, effect.cast_points, created_at)

        logger.debug("Appended %s transaction %s amount=%s", tx_type.value, transaction_id, entry.amount)
        return transaction_id

    def _validate_source(
        self,
        entry: NewPointTransaction,
        tx_type: PointTransactionType,
    ) -> Optional[PointTransactionType]:
        if entry.source_transaction_id is None:
            return None
        if tx_type not in RESOLVING_TYPES:
            raise ValidationError(f"{tx_type.value} transactions cannot resolve a hold")

        source = self.repository.get_transaction(entry.source_transaction_id, for_update=True)
        if source is None:
            raise ValidationError(f"unknown source transaction {entry.source_transaction_id}")
        if source.type not in HOLD_TYPES:
            raise ValidationError(f"source transaction {source.transaction_id} is not a hold")
        if source.guest_id != entry.guest_id:
            raise ValidationError(f"source transaction {source.transaction_id} belongs to another guest")

        if source.reservation_id is not None and entry.reservation_id != source.reservation_id:
            raise ValidationError(f"source transaction {source.transaction_id} belongs to another reservation")

        resolved = self.repository.resolved_amount(source.transaction_id)
        if resolved + entry.amount > source.amount:
            raise ValidationError(
                f"resolving {entry.amount} would exceed hold {source.transaction_id} of {source.amount}"
            )
        return source.type

    def sum_by_type_and_owner(
        self,
        owner_id: int,
        owner_kind: str,
        types: Sequence[PointTransactionType],
        time_range: Optional[tuple[datetime, datetime]] = None,
    ) -> int:
        if owner_kind not in (OWNER_GUEST, OWNER_CAST):
            raise ValidationError(f"owner_kind must be guest or cast, got {owner_kind!r}")
        start, end = time_range if time_range is not None else (None, None)
        return self.repository.sum_transactions(owner_kind, owner_id, list(types), start, end)

    def find_pending_by_reservation(self, reservation_id: int) -> list[PointTransactionRecord]:
        return list(self.repository.list_reservation_transactions(reservation_id, (PointTransactionType.PENDING,)))

    def find_transactions_by_reservation(
        self,
        reservation_id: int,
        types: Sequence[PointTransactionType] = tuple(PointTransactionType),
    ) -> list[PointTransactionRecord]:
        return list(self.repository.list_reservation_transactions(reservation_id, list(types)))

    def is_resolved(self, hold_id: int) -> bool:
        return self.repository.has_resolution(hold_id)

    def unresolved_pending(self, reservation_id: int) -> list[PointTransactionRecord]:
        """Pending holds of a reservation that no transfer/refund references."""
        rows = self.repository.list_reservation_transactions(
            reservation_id,
            (PointTransactionType.PENDING, *RESOLVING_TYPES),
        )
        referenced = {row.source_transaction_id for row in rows if row.source_transaction_id is not None}
        return [
            row
            for row in rows
            if row.type is PointTransactionType.PENDING and row.transaction_id not in referenced
        ]

    def standing_points_for(self, owner_kind: str, owner_id: int) -> int:
        """Balance recomputed from the ledger rows alone."""
        total = 0
        for row in self.repository.list_owner_transactions(owner_kind, owner_id):
            effect = balance_effect(
                row.type,
                row.amount,
                has_guest=row.guest_id is not None,
                has_cast=row.cast_id is not None,
                source_type=row.source_type,
            )
            if owner_kind == OWNER_GUEST and row.guest_id == owner_id:
                total += effect.guest_points
            elif owner_kind == OWNER_CAST and row.cast_id == owner_id:
                total += effect.cast_points
        return total

    def lifetime_usage(self, guest_id: int) -> int:
        """Points a guest has committed to sessions and gifts, net of refunds."""
        usage = 0
        for row in self.repository.list_owner_transactions(OWNER_GUEST, guest_id):
            if row.guest_id != guest_id:
                continue
            effect = balance_effect(
                row.type,
                row.amount,
                has_guest=True,
                has_cast=row.cast_id is not None,
                source_type=row.source_type,
            )
            usage += effect.guest_grade_points
        return max(usage, 0)

    def lifetime_earnings(self, cast_id: int) -> int:
        return self.sum_by_type_and_owner(
            cast_id,
            OWNER_CAST,
            (PointTransactionType.TRANSFER, PointTransactionType.GIFT),
        )
