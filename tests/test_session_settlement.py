"""Unit tests for finished-session settlement."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from backend.db.enums import PointTransactionType as T
from settlement.common import FixedClock
from settlement.errors import PreconditionFailed
from settlement.ledger import PointLedger
from settlement.records import NewPointTransaction
from settlement.repository import OWNER_CAST, OWNER_GUEST
from settlement.session_settlement import RESERVATION_UPDATED, SessionSettlement
from tests.utils.memory_repository import MemorySettlementRepository

T0 = datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc)
NOW = T0 + timedelta(hours=3)


def _setup(
    repo: MemorySettlementRepository,
    *,
    bought: int,
    reserved: int,
    ended_after: timedelta | None,
    with_cast: bool = True,
) -> tuple[SessionSettlement, PointLedger, int, int | None, int]:
    ledger = PointLedger(repo, FixedClock(NOW))
    guest = repo.add_guest()
    cast = repo.add_cast() if with_cast else None
    reservation = repo.add_reservation(
        guest,
        cast,
        duration_hours=1,
        scheduled_at=T0,
        started_at=T0,
        ended_at=None if ended_after is None else T0 + ended_after,
    )
    ledger.append(NewPointTransaction(type=T.BUY, amount=bought, guest_id=guest), at=T0 - timedelta(days=1))
    ledger.append(
        NewPointTransaction(type=T.PENDING, amount=reserved, guest_id=guest, reservation_id=reservation),
        at=T0 - timedelta(hours=1),
    )
    repo.commit()
    return SessionSettlement(repo, ledger, FixedClock(NOW)), ledger, guest, cast, reservation


def test_consumes_holds_and_refunds_the_remainder(repo: MemorySettlementRepository) -> None:
    settlement, ledger, guest, cast, reservation = _setup(
        repo, bought=3000, reserved=2000, ended_after=timedelta(minutes=70)
    )
    outcome = settlement.settle(repo.get_reservation(reservation))

    assert outcome.success is True
    assert (outcome.total, outcome.transferred, outcome.refunded, outcome.exceeded) == (1200, 1200, 800, 0)
    assert repo.get_reservation(reservation).points_earned == 1200
    assert repo.get_guest(guest).points == 1000 + 800
    assert repo.get_cast(cast).points == 1200
    assert ledger.unresolved_pending(reservation) == []
    assert ledger.standing_points_for(OWNER_GUEST, guest) == repo.get_guest(guest).points
    assert ledger.standing_points_for(OWNER_CAST, cast) == repo.get_cast(cast).points


def test_overage_becomes_a_provisional_exceeded_pending(repo: MemorySettlementRepository) -> None:
    settlement, ledger, guest, cast, reservation = _setup(
        repo, bought=1500, reserved=1000, ended_after=timedelta(minutes=90)
    )
    outcome = settlement.settle(repo.get_reservation(reservation))

    assert (outcome.total, outcome.transferred, outcome.exceeded) == (1600, 1000, 600)
    exceeded = ledger.find_transactions_by_reservation(reservation, [T.EXCEEDED_PENDING])
    assert [(row.amount, row.cast_id) for row in exceeded] == [(600, cast)]
    assert repo.get_guest(guest).points == 500
    assert repo.get_cast(cast).points == 1000


def test_reservation_without_cast_refunds_every_hold(repo: MemorySettlementRepository) -> None:
    settlement, _, guest, _, reservation = _setup(
        repo, bought=1000, reserved=1000, ended_after=timedelta(minutes=30), with_cast=False
    )
    outcome = settlement.settle(repo.get_reservation(reservation))

    assert (outcome.success, outcome.total, outcome.refunded) == (True, 0, 1000)
    assert repo.get_guest(guest).points == 1000
    assert repo.get_reservation(reservation).points_earned == 0


def test_already_settled_is_a_no_op(repo: MemorySettlementRepository) -> None:
    settlement, _, _, _, reservation = _setup(repo, bought=3000, reserved=2000, ended_after=timedelta(minutes=60))
    settlement.settle(repo.get_reservation(reservation))
    rows = len(repo.transactions)

    again = settlement.settle(repo.get_reservation(reservation))
    assert again.already_settled is True
    assert again.total == 1000
    assert len(repo.transactions) == rows


def test_stale_version_reports_a_conflict(repo: MemorySettlementRepository) -> None:
    settlement, _, _, _, reservation = _setup(repo, bought=3000, reserved=2000, ended_after=timedelta(minutes=60))
    stale = repo.get_reservation(reservation)
    repo.reservations[reservation]["version"] += 1

    outcome = settlement.settle(stale)
    assert outcome.success is False
    assert outcome.reason == "version_conflict"


def test_open_reservation_cannot_be_settled(repo: MemorySettlementRepository) -> None:
    settlement, _, _, _, reservation = _setup(repo, bought=3000, reserved=2000, ended_after=None)
    with pytest.raises(PreconditionFailed, match="has not ended"):
        settlement.settle(repo.get_reservation(reservation))


def test_close_and_settle_publishes_an_event(repo: MemorySettlementRepository) -> None:
    settlement, _, _, _, reservation = _setup(repo, bought=3000, reserved=2000, ended_after=None)
    outcome = settlement.close_and_settle(reservation, ended_at=T0 + timedelta(minutes=61))

    assert outcome.total == 1020
    assert repo.get_reservation(reservation).ended_at == T0 + timedelta(minutes=61)
    assert [(event["event_type"], event["aggregate_id"]) for event in repo.events] == [
        (RESERVATION_UPDATED, reservation)
    ]
    assert repo.events[0]["payload"]["cause"] == "session_closed"

    with pytest.raises(PreconditionFailed, match="does not exist"):
        settlement.close_and_settle(999)
