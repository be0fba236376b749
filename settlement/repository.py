"""Persistence protocol shared by the ledger and every settlement engine."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Mapping, Optional, Protocol, Sequence

from backend.db.enums import CastPayoutStatus, PointTransactionType
from settlement.records import (
    CastPayoutRecord,
    CastRecord,
    GuestRecord,
    NewCastPayout,
    NewPointTransaction,
    PointTransactionRecord,
    ReservationRecord,
)

OWNER_GUEST = "guest"
OWNER_CAST = "cast"


class SettlementRepository(Protocol):
    """Row-level reads and writes; callers own transaction boundaries."""

    def commit(self) -> None:
        """Commit the current unit of work."""

    def rollback(self) -> None:
        """Discard the current unit of work."""

    # guests / casts

    def get_guest(self, guest_id: int, *, for_update: bool = False) -> Optional[GuestRecord]:
        """Fetch a guest, optionally locking the row."""

    def get_cast(self, cast_id: int, *, for_update: bool = False) -> Optional[CastRecord]:
        """Fetch a cast, optionally locking the row."""

    def list_guests(self) -> Sequence[GuestRecord]:
        """All guests in id order."""

    def list_casts(self) -> Sequence[CastRecord]:
        """All casts in id order."""

    def apply_guest_delta(self, guest_id: int, points_delta: int, grade_points_delta: int, at: datetime) -> None:
        """Shift cached guest balances."""

    def apply_cast_delta(self, cast_id: int, points_delta: int, at: datetime) -> None:
        """Shift cached cast balance."""

    def zero_guest_grade_points(self, at: datetime) -> int:
        """Reset every guest's quarterly grade points; returns rows touched."""

    def update_guest_grade(self, guest_id: int, grade: str, at: datetime) -> None:
        """Persist a recomputed guest tier."""

    def update_cast_grade(self, cast_id: int, grade: str, grade_points: int, at: datetime) -> None:
        """Persist a recomputed cast tier and lifetime earnings."""

    # ledger

    def insert_transaction(self, entry: NewPointTransaction, created_at: datetime) -> int:
        """Insert one ledger row and return its id."""

    def get_transaction(self, transaction_id: int, *, for_update: bool = False) -> Optional[PointTransactionRecord]:
        """Fetch one ledger row."""

    def sum_transactions(
        self,
        owner_kind: str,
        owner_id: int,
        types: Sequence[PointTransactionType],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> int:
        """Sum amounts for one owner, optionally within [start, end]."""

    def list_reservation_transactions(
        self,
        reservation_id: int,
        types: Sequence[PointTransactionType],
    ) -> Sequence[PointTransactionRecord]:
        """Ledger rows attached to a reservation, id order."""

    def list_owner_transactions(self, owner_kind: str, owner_id: int) -> Sequence[PointTransactionRecord]:
        """Every ledger row naming the owner, id order, with source types resolved."""

    def has_resolution(self, source_transaction_id: int) -> bool:
        """True when any later row references the hold."""

    def resolved_amount(self, source_transaction_id: int) -> int:
        """Sum of the transfer and refund rows already drawn against the hold."""

    def list_unresolved_holds(
        self,
        hold_type: PointTransactionType,
        older_than: datetime,
        *,
        completed_reservations_only: bool,
    ) -> Sequence[PointTransactionRecord]:
        """Unreferenced holds past the cutoff.

        Exceeded holds are aged by their own timestamp; pending holds by the
        end of their (completed) reservation.
        """

    def list_earnable_cast_ids(self, types: Sequence[PointTransactionType], until: datetime) -> Sequence[int]:
        """Casts with untagged earnable rows created at or before ``until``."""

    def list_unaggregated_transactions(
        self,
        cast_id: int,
        types: Sequence[PointTransactionType],
        until: datetime,
    ) -> Sequence[PointTransactionRecord]:
        """Untagged earnable rows for one cast, id order."""

    def tag_transactions(self, transaction_ids: Sequence[int], payout_id: int) -> int:
        """Tag untagged rows with a payout id; returns rows tagged."""

    def release_transactions(self, payout_id: int) -> int:
        """Clear the tag for every row of a payout; returns rows released."""

    def list_payout_transactions(self, payout_id: int) -> Sequence[PointTransactionRecord]:
        """Rows tagged with the payout id."""

    # reservations

    def list_open_reservations(self) -> Sequence[ReservationRecord]:
        """Started, not ended reservations in id order."""

    def get_reservation(self, reservation_id: int, *, for_update: bool = False) -> Optional[ReservationRecord]:
        """Fetch a reservation, optionally locking the row."""

    def close_reservation(
        self,
        reservation_id: int,
        expected_version: int,
        ended_at: datetime,
    ) -> Optional[ReservationRecord]:
        """Set ended_at if the version still matches; returns the new row."""

    def record_points_earned(
        self,
        reservation_id: int,
        expected_version: int,
        points_earned: int,
        at: datetime,
    ) -> bool:
        """Set points_earned if the version still matches."""

    # payouts

    def insert_payout(self, payout: NewCastPayout, created_at: datetime) -> int:
        """Insert a payout row and return its id."""

    def get_payout(self, payout_id: int, *, for_update: bool = False) -> Optional[CastPayoutRecord]:
        """Fetch a payout, optionally locking the row."""

    def find_active_scheduled_payout(self, cast_id: int, closing_month: str) -> Optional[CastPayoutRecord]:
        """Non-cancelled scheduled payout for the cast and month."""

    def list_due_payouts(self, on_date: date) -> Sequence[CastPayoutRecord]:
        """Scheduled payouts due on or before the date, id order."""

    def list_payouts(self, statuses: Sequence[CastPayoutStatus]) -> Sequence[CastPayoutRecord]:
        """Payouts in the given statuses, id order."""

    def update_payout(
        self,
        payout_id: int,
        expected_version: int,
        *,
        status: CastPayoutStatus,
        metadata: Mapping[str, Any],
        at: datetime,
        paid_at: Optional[datetime] = None,
        provider_reference: Optional[str] = None,
    ) -> bool:
        """Write a status change if the version still matches."""

    # operator queue / outbox

    def insert_escalation(
        self,
        kind: str,
        *,
        detail: Mapping[str, Any],
        created_at: datetime,
        transaction_id: Optional[int] = None,
        reservation_id: Optional[int] = None,
        payout_id: Optional[int] = None,
    ) -> bool:
        """Queue an escalation; False when the same one is already queued."""

    def insert_event(
        self,
        event_type: str,
        aggregate_type: str,
        aggregate_id: int,
        payload: Mapping[str, Any],
        created_at: datetime,
    ) -> int:
        """Append a domain event to the outbox."""
