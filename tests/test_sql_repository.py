"""SQL shape and row-mapping tests for the PostgreSQL repository."""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
import json

import pytest

from backend.db.enums import CastPayoutStatus, CastPayoutType, PointTransactionType
from settlement.errors import ValidationError
from settlement.records import NewCastPayout, NewPointTransaction
from settlement.repository import OWNER_CAST, OWNER_GUEST
from settlement.sql_repository import SqlSettlementRepository
from tests.utils.fake_db import FakeDB

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

_TX_ROW = {
    "id": 11,
    "guest_id": 1,
    "cast_id": 2,
    "type": "transfer",
    "amount": 500,
    "reservation_id": 3,
    "payment_id": None,
    "cast_payout_id": None,
    "source_transaction_id": 10,
    "description": "Reserved points earned",
    "created_at": NOW,
    "source_type": "exceeded_pending",
}

_PAYOUT_ROW = {
    "id": 7,
    "cast_id": 2,
    "type": "scheduled",
    "closing_month": "2026-02",
    "period_start": datetime(2026, 1, 31, 15, 0, tzinfo=timezone.utc),
    "period_end": datetime(2026, 2, 28, 14, 59, 59, 999999, tzinfo=timezone.utc),
    "total_points": 10000,
    "conversion_rate": Decimal("1.2000"),
    "gross_amount_yen": 12000,
    "fee_rate": Decimal("0.0500"),
    "fee_amount_yen": 600,
    "net_amount_yen": 11400,
    "transaction_count": 2,
    "status": "pending_approval",
    "scheduled_payout_date": date(2026, 3, 31),
    "paid_at": None,
    "provider_reference": None,
    "metadata": {"source": "auto-close"},
    "version": 0,
}


def _last_query(db: FakeDB) -> tuple[str, dict]:
    return db.queries[-1]


def test_members_are_read_and_locked() -> None:
    db = FakeDB()
    db.set_one("FROM guests", {"id": 1, "points": 300, "grade_points": 50, "grade": "green"})
    db.set_one(
        "FROM casts",
        {"id": 2, "points": 0, "grade_points": 0, "grade": "beginner", "payout_account_id": "acct", "payouts_enabled": True},
    )
    repo = SqlSettlementRepository(db)

    guest = repo.get_guest(1, for_update=True)
    sql, params = _last_query(db)
    assert guest is not None and (guest.guest_id, guest.points, guest.grade_points) == (1, 300, 50)
    assert "FOR UPDATE" in sql
    assert params == {"guest_id": 1}

    cast = repo.get_cast(2)
    sql, _ = _last_query(db)
    assert cast is not None and cast.can_receive_payouts is True
    assert "FOR UPDATE" not in sql


def test_missing_rows_map_to_none() -> None:
    repo = SqlSettlementRepository(FakeDB())
    assert repo.get_guest(1) is None
    assert repo.get_transaction(1) is None
    assert repo.get_reservation(1) is None
    assert repo.get_payout(1) is None
    assert repo.find_active_scheduled_payout(1, "2026-02") is None


def test_balance_deltas_use_relative_updates() -> None:
    db = FakeDB()
    repo = SqlSettlementRepository(db)

    repo.apply_guest_delta(1, -200, 200, NOW)
    repo.apply_cast_delta(2, 200, NOW)

    guest_sql, guest_params = db.executed[0]
    assert "points = points + :points_delta" in guest_sql
    assert guest_params == {"guest_id": 1, "points_delta": -200, "grade_points_delta": 200, "at": NOW}
    assert db.executed[1][1] == {"cast_id": 2, "points_delta": 200, "at": NOW}


def test_transaction_rows_carry_their_source_type() -> None:
    db = FakeDB()
    db.set_one("FROM point_transactions t", _TX_ROW)
    repo = SqlSettlementRepository(db)

    row = repo.get_transaction(11, for_update=True)

    sql, _ = _last_query(db)
    assert "LEFT JOIN point_transactions s" in sql
    assert "FOR UPDATE OF t" in sql
    assert row is not None
    assert row.type is PointTransactionType.TRANSFER
    assert row.source_type is PointTransactionType.EXCEEDED_PENDING
    assert row.source_transaction_id == 10


def test_insert_transaction_casts_the_enum_and_returns_the_id() -> None:
    db = FakeDB()
    db.set_one("INSERT INTO point_transactions", {"id": 44})
    repo = SqlSettlementRepository(db)

    transaction_id = repo.insert_transaction(
        NewPointTransaction(type=PointTransactionType.PENDING, amount=300, guest_id=1, reservation_id=3), NOW
    )

    sql, params = _last_query(db)
    assert transaction_id == 44
    assert "CAST(:type AS point_transaction_type_enum)" in sql
    assert params["type"] == "pending"
    assert params["created_at"] == NOW

    db.set_one("INSERT INTO point_transactions", None)
    with pytest.raises(RuntimeError, match="returned no id"):
        repo.insert_transaction(NewPointTransaction(type=PointTransactionType.BUY, amount=1, guest_id=1), NOW)


def test_sums_filter_by_owner_column_and_types() -> None:
    db = FakeDB()
    db.set_one("COALESCE(SUM(amount), 0)", {"total": 1500})
    repo = SqlSettlementRepository(db)

    total = repo.sum_transactions(OWNER_CAST, 2, [PointTransactionType.TRANSFER, PointTransactionType.GIFT], None, NOW)

    sql, params = _last_query(db)
    assert total == 1500
    assert "WHERE cast_id = :owner_id" in sql
    assert params["types"] == ["transfer", "gift"]
    assert params["start_ts"] is None and params["end_ts"] == NOW

    with pytest.raises(ValidationError, match="owner_kind"):
        repo.sum_transactions("admin", 1, [PointTransactionType.BUY])
    with pytest.raises(ValidationError, match="owner_kind"):
        repo.list_owner_transactions("admin", 1)
    repo.list_owner_transactions(OWNER_GUEST, 1)
    assert "WHERE t.guest_id = :owner_id" in _last_query(db)[0]


def test_unresolved_holds_age_by_reservation_end_or_creation() -> None:
    db = FakeDB()
    repo = SqlSettlementRepository(db)

    repo.list_unresolved_holds(PointTransactionType.PENDING, NOW, completed_reservations_only=True)
    pending_sql, pending_params = _last_query(db)
    repo.list_unresolved_holds(PointTransactionType.EXCEEDED_PENDING, NOW, completed_reservations_only=False)
    exceeded_sql, exceeded_params = _last_query(db)

    assert "r.ended_at <= :older_than" in pending_sql
    assert "t.created_at <= :older_than" not in pending_sql
    assert "t.created_at <= :older_than" in exceeded_sql
    assert "NOT EXISTS" in exceeded_sql
    assert pending_params == {"hold_type": "pending", "older_than": NOW}
    assert exceeded_params["hold_type"] == "exceeded_pending"


def test_resolved_amount_sums_rows_drawn_against_the_hold() -> None:
    db = FakeDB()
    repo = SqlSettlementRepository(db)

    assert repo.resolved_amount(10) == 0
    db.set_one("AS resolved", {"resolved": 700})

    assert repo.resolved_amount(10) == 700
    sql, params = _last_query(db)
    assert "WHERE source_transaction_id = :source_transaction_id" in sql
    assert "reservation_id" not in sql
    assert params == {"source_transaction_id": 10}


def test_tagging_only_claims_untagged_rows() -> None:
    db = FakeDB()
    db.set_one("WITH tagged AS", {"tagged": 2})
    db.set_one("WITH released AS", {"released": 3})
    repo = SqlSettlementRepository(db)

    assert repo.tag_transactions([], 7) == 0
    assert db.queries == []
    assert repo.tag_transactions((1, 2), 7) == 2
    sql, params = _last_query(db)
    assert "AND cast_payout_id IS NULL" in sql
    assert params == {"payout_id": 7, "transaction_ids": [1, 2]}
    assert repo.release_transactions(7) == 3


def test_reservation_writes_are_version_checked() -> None:
    db = FakeDB()
    repo = SqlSettlementRepository(db)

    assert repo.close_reservation(3, 4, NOW) is None
    close_sql, close_params = _last_query(db)
    assert "AND version = :expected_version" in close_sql
    assert "version = version + 1" in close_sql
    assert close_params == {"reservation_id": 3, "expected_version": 4, "ended_at": NOW}

    assert repo.record_points_earned(3, 5, 1200, NOW) is False
    db.set_one("SET points_earned", {"id": 3})
    assert repo.record_points_earned(3, 5, 1200, NOW) is True
    assert "AND points_earned IS NULL" in _last_query(db)[0]


def test_payout_insert_and_update_serialize_metadata() -> None:
    db = FakeDB()
    db.set_one("INSERT INTO cast_payouts", {"id": 7})
    db.set_one("UPDATE cast_payouts", {"id": 7})
    repo = SqlSettlementRepository(db)

    payout_id = repo.insert_payout(
        NewCastPayout(
            cast_id=2,
            type=CastPayoutType.SCHEDULED,
            closing_month="2026-02",
            period_start=_PAYOUT_ROW["period_start"],
            period_end=_PAYOUT_ROW["period_end"],
            total_points=10000,
            conversion_rate=Decimal("1.2000"),
            gross_amount_yen=12000,
            fee_rate=Decimal("0.0500"),
            fee_amount_yen=600,
            net_amount_yen=11400,
            transaction_count=2,
            status=CastPayoutStatus.PENDING_APPROVAL,
            scheduled_payout_date=date(2026, 3, 31),
            metadata={"source": "auto-close"},
        ),
        NOW,
    )
    _, insert_params = _last_query(db)
    assert payout_id == 7
    assert insert_params["status"] == "pending_approval"
    assert json.loads(insert_params["metadata"]) == {"source": "auto-close"}

    written = repo.update_payout(
        7,
        0,
        status=CastPayoutStatus.PAID,
        metadata={"paid_note": "ok"},
        at=NOW,
        paid_at=NOW,
        provider_reference="po_1",
    )
    update_sql, update_params = _last_query(db)
    assert written is True
    assert "AND version = :expected_version" in update_sql
    assert update_params["status"] == "paid"
    assert update_params["provider_reference"] == "po_1"
    assert json.loads(update_params["metadata"]) == {"paid_note": "ok"}


def test_payout_rows_map_to_records() -> None:
    db = FakeDB()
    db.set_all("FROM cast_payouts", [_PAYOUT_ROW])
    repo = SqlSettlementRepository(db)

    due = repo.list_due_payouts(date(2026, 3, 31))
    sql, params = _last_query(db)
    assert "status = 'scheduled'" in sql
    assert params == {"on_date": date(2026, 3, 31)}
    assert len(due) == 1
    payout = due[0]
    assert payout.status is CastPayoutStatus.PENDING_APPROVAL
    assert payout.type is CastPayoutType.SCHEDULED
    assert payout.fee_rate == Decimal("0.0500")
    assert payout.metadata == {"source": "auto-close"}

    repo.list_payouts([CastPayoutStatus.FAILED, CastPayoutStatus.SCHEDULED])
    assert _last_query(db)[1] == {"statuses": ["failed", "scheduled"]}


def test_escalations_are_deduplicated_by_the_store() -> None:
    db = FakeDB()
    repo = SqlSettlementRepository(db)

    assert repo.insert_escalation("uncovered_exceeded_pending", detail={"amount": 5}, created_at=NOW, transaction_id=9) is False
    sql, params = _last_query(db)
    assert "ON CONFLICT ON CONSTRAINT uq_operator_escalations_kind_transaction DO NOTHING" in sql
    assert json.loads(params["detail"]) == {"amount": 5}

    db.set_one("INSERT INTO operator_escalations", {"id": 1})
    assert repo.insert_escalation("pending_without_cast", detail={}, created_at=NOW, transaction_id=9) is True


def test_events_go_to_the_outbox() -> None:
    db = FakeDB()
    db.set_one("INSERT INTO settlement_events", {"id": 3})
    repo = SqlSettlementRepository(db)

    assert repo.insert_event("reservation.updated", "reservation", 5, {"cause": "auto_exit"}, NOW) == 3
    _, params = _last_query(db)
    assert params["event_type"] == "reservation.updated"
    assert json.loads(params["payload"]) == {"cause": "auto_exit"}


def test_commit_and_rollback_delegate() -> None:
    db = FakeDB()
    repo = SqlSettlementRepository(db)
    repo.commit()
    repo.rollback()
    assert (db.commits, db.rollbacks) == (1, 1)
