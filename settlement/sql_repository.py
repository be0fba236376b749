"""PostgreSQL-backed settlement repository."""

from __future__ import annotations

from datetime import date, datetime
import json
import logging
from typing import Any, Mapping, Optional, Sequence

from backend.db.enums import CastPayoutStatus, PointTransactionType
from settlement.common import SettlementDatabase
from settlement.errors import ValidationError
from settlement.records import (
    CastPayoutRecord,
    CastRecord,
    GuestRecord,
    NewCastPayout,
    NewPointTransaction,
    PointTransactionRecord,
    ReservationRecord,
)
from settlement.repository import OWNER_CAST, OWNER_GUEST

logger = logging.getLogger(__name__)

_OWNER_COLUMNS = {OWNER_GUEST: "guest_id", OWNER_CAST: "cast_id"}

_TX_SELECT = """
    SELECT
        t.id,
        t.guest_id,
        t.cast_id,
        t.type::text AS type,
        t.amount,
        t.reservation_id,
        t.payment_id,
        t.cast_payout_id,
        t.source_transaction_id,
        t.description,
        t.created_at,
        s.type::text AS source_type
    FROM point_transactions t
    LEFT JOIN point_transactions s
      ON s.id = t.source_transaction_id
"""

_RESERVATION_COLUMNS = """
    id, guest_id, cast_id, scheduled_at, duration_hours, started_at, ended_at, points_earned, version
"""

_PAYOUT_SELECT = """
    SELECT
        id,
        cast_id,
        type::text AS type,
        closing_month,
        period_start,
        period_end,
        total_points,
        conversion_rate,
        gross_amount_yen,
        fee_rate,
        fee_amount_yen,
        net_amount_yen,
        transaction_count,
        status::text AS status,
        scheduled_payout_date,
        paid_at,
        provider_reference,
        metadata,
        version
    FROM cast_payouts
"""


def _type_values(types: Sequence[PointTransactionType]) -> list[str]:
    return [PointTransactionType(item).value for item in types]


def _lock(for_update: bool, clause: str = "FOR UPDATE") -> str:
    return clause if for_update else ""


class SqlSettlementRepository:
    """SettlementRepository over the fetch_one/fetch_all/execute DB protocol."""

    def __init__(self, db: SettlementDatabase) -> None:
        self.db = db

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    # guests / casts

    def get_guest(self, guest_id: int, *, for_update: bool = False) -> Optional[GuestRecord]:
        row = self.db.fetch_one(
            f"""
            SELECT id, points, grade_points, grade::text AS grade
            FROM guests
            WHERE id = :guest_id
            {_lock(for_update)}
            """,
            {"guest_id": guest_id},
        )
        return None if row is None else GuestRecord.from_row(row)

    def get_cast(self, cast_id: int, *, for_update: bool = False) -> Optional[CastRecord]:
        row = self.db.fetch_one(
            f"""
            SELECT id, points, grade_points, grade::text AS grade, payout_account_id, payouts_enabled
            FROM casts
            WHERE id = :cast_id
            {_lock(for_update)}
            """,
            {"cast_id": cast_id},
        )
        return None if row is None else CastRecord.from_row(row)

    def list_guests(self) -> Sequence[GuestRecord]:
        rows = self.db.fetch_all(
            """
            SELECT id, points, grade_points, grade::text AS grade
            FROM guests
            ORDER BY id ASC
            """,
            {},
        )
        return [GuestRecord.from_row(row) for row in rows]

    def list_casts(self) -> Sequence[CastRecord]:
        rows = self.db.fetch_all(
            """
            SELECT id, points, grade_points, grade::text AS grade, payout_account_id, payouts_enabled
            FROM casts
            ORDER BY id ASC
            """,
            {},
        )
        return [CastRecord.from_row(row) for row in rows]

    def apply_guest_delta(self, guest_id: int, points_delta: int, grade_points_delta: int, at: datetime) -> None:
        self.db.execute(
            """
            UPDATE guests
            SET points = points + :points_delta,
                grade_points = grade_points + :grade_points_delta,
                updated_at = :at
            WHERE id = :guest_id
            """,
            {
                "guest_id": guest_id,
                "points_delta": points_delta,
                "grade_points_delta": grade_points_delta,
                "at": at,
            },
        )

    def apply_cast_delta(self, cast_id: int, points_delta: int, at: datetime) -> None:
        self.db.execute(
            """
            UPDATE casts
            SET points = points + :points_delta,
                updated_at = :at
            WHERE id = :cast_id
            """,
            {"cast_id": cast_id, "points_delta": points_delta, "at": at},
        )

    def zero_guest_grade_points(self, at: datetime) -> int:
        row = self.db.fetch_one(
            """
            WITH touched AS (
                UPDATE guests
                SET grade_points = 0,
                    updated_at = :at
                WHERE grade_points <> 0
                RETURNING 1
            )
            SELECT count(*) AS touched FROM touched
            """,
            {"at": at},
        )
        return 0 if row is None else int(row["touched"])

    def update_guest_grade(self, guest_id: int, grade: str, at: datetime) -> None:
        self.db.execute(
            """
            UPDATE guests
            SET grade = CAST(:grade AS guest_grade_enum),
                updated_at = :at
            WHERE id = :guest_id
            """,
            {"guest_id": guest_id, "grade": grade, "at": at},
        )

    def update_cast_grade(self, cast_id: int, grade: str, grade_points: int, at: datetime) -> None:
        self.db.execute(
            """
            UPDATE casts
            SET grade = CAST(:grade AS cast_grade_enum),
                grade_points = :grade_points,
                updated_at = :at
            WHERE id = :cast_id
            """,
            {"cast_id": cast_id, "grade": grade, "grade_points": grade_points, "at": at},
        )

    # ledger

    def insert_transaction(self, entry: NewPointTransaction, created_at: datetime) -> int:
        row = self.db.fetch_one(
            """
            INSERT INTO point_transactions (
                guest_id, cast_id, type, amount, reservation_id, payment_id,
                source_transaction_id, description, created_at
            )
            VALUES (
                :guest_id, :cast_id, CAST(:type AS point_transaction_type_enum), :amount, :reservation_id,
                :payment_id, :source_transaction_id, :description, :created_at
            )
            RETURNING id
            """,
            {
                "guest_id": entry.guest_id,
                "cast_id": entry.cast_id,
                "type": PointTransactionType(entry.type).value,
                "amount": entry.amount,
                "reservation_id": entry.reservation_id,
                "payment_id": entry.payment_id,
                "source_transaction_id": entry.source_transaction_id,
                "description": entry.description,
                "created_at": created_at,
            },
        )
        if row is None:
            raise RuntimeError("point_transactions insert returned no id")
        return int(row["id"])

    def get_transaction(self, transaction_id: int, *, for_update: bool = False) -> Optional[PointTransactionRecord]:
        row = self.db.fetch_one(
            f"""
            {_TX_SELECT}
            WHERE t.id = :transaction_id
            {_lock(for_update, "FOR UPDATE OF t")}
            """,
            {"transaction_id": transaction_id},
        )
        return None if row is None else PointTransactionRecord.from_row(row)

    def sum_transactions(
        self,
        owner_kind: str,
        owner_id: int,
        types: Sequence[PointTransactionType],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> int:
        column = _OWNER_COLUMNS.get(owner_kind)
        if column is None:
            raise ValidationError(f"owner_kind must be guest or cast, got {owner_kind!r}")
        row = self.db.fetch_one(
            f"""
            SELECT COALESCE(SUM(amount), 0) AS total
            FROM point_transactions
            WHERE {column} = :owner_id
              AND type::text = ANY(:types)
              AND (CAST(:start_ts AS timestamptz) IS NULL OR created_at >= :start_ts)
              AND (CAST(:end_ts AS timestamptz) IS NULL OR created_at <= :end_ts)
            """,
            {"owner_id": owner_id, "types": _type_values(types), "start_ts": start, "end_ts": end},
        )
        return 0 if row is None else int(row["total"])

    def list_reservation_transactions(
        self,
        reservation_id: int,
        types: Sequence[PointTransactionType],
    ) -> Sequence[PointTransactionRecord]:
        rows = self.db.fetch_all(
            f"""
            {_TX_SELECT}
            WHERE t.reservation_id = :reservation_id
              AND t.type::text = ANY(:types)
            ORDER BY t.id ASC
            """,
            {"reservation_id": reservation_id, "types": _type_values(types)},
        )
        return [PointTransactionRecord.from_row(row) for row in rows]

    def list_owner_transactions(self, owner_kind: str, owner_id: int) -> Sequence[PointTransactionRecord]:
        column = _OWNER_COLUMNS.get(owner_kind)
        if column is None:
            raise ValidationError(f"owner_kind must be guest or cast, got {owner_kind!r}")
        rows = self.db.fetch_all(
            f"""
            {_TX_SELECT}
            WHERE t.{column} = :owner_id
            ORDER BY t.id ASC
            """,
            {"owner_id": owner_id},
        )
        return [PointTransactionRecord.from_row(row) for row in rows]

    def has_resolution(self, source_transaction_id: int) -> bool:
        row = self.db.fetch_one(
            """
            SELECT EXISTS (
                SELECT 1
                FROM point_transactions
                WHERE source_transaction_id = :source_transaction_id
            ) AS resolved
            """,
            {"source_transaction_id": source_transaction_id},
        )
        return bool(row and row["resolved"])

    def resolved_amount(self, source_transaction_id: int) -> int:
        row = self.db.fetch_one(
            """
            SELECT COALESCE(SUM(amount), 0) AS resolved
            FROM point_transactions
            WHERE source_transaction_id = :source_transaction_id
              AND type IN ('transfer', 'refund')
            """,
            {"source_transaction_id": source_transaction_id},
        )
        return int(row["resolved"]) if row else 0

    def list_unresolved_holds(
        self,
        hold_type: PointTransactionType,
        older_than: datetime,
        *,
        completed_reservations_only: bool,
    ) -> Sequence[PointTransactionRecord]:
        if completed_reservations_only:
            age_filter = """
              AND EXISTS (
                  SELECT 1
                  FROM reservations r
                  WHERE r.id = t.reservation_id
                    AND r.ended_at IS NOT NULL
                    AND r.ended_at <= :older_than
              )
            """
        else:
            age_filter = "AND t.created_at <= :older_than"
        rows = self.db.fetch_all(
            f"""
            {_TX_SELECT}
            WHERE t.type = CAST(:hold_type AS point_transaction_type_enum)
              {age_filter}
              AND NOT EXISTS (
                  SELECT 1
                  FROM point_transactions x
                  WHERE x.source_transaction_id = t.id
              )
            ORDER BY t.id ASC
            """,
            {"hold_type": PointTransactionType(hold_type).value, "older_than": older_than},
        )
        return [PointTransactionRecord.from_row(row) for row in rows]

    def list_earnable_cast_ids(self, types: Sequence[PointTransactionType], until: datetime) -> Sequence[int]:
        rows = self.db.fetch_all(
            """
            SELECT DISTINCT cast_id
            FROM point_transactions
            WHERE cast_id IS NOT NULL
              AND cast_payout_id IS NULL
              AND type::text = ANY(:types)
              AND created_at <= :until
            ORDER BY cast_id ASC
            """,
            {"types": _type_values(types), "until": until},
        )
        return [int(row["cast_id"]) for row in rows]

    def list_unaggregated_transactions(
        self,
        cast_id: int,
        types: Sequence[PointTransactionType],
        until: datetime,
    ) -> Sequence[PointTransactionRecord]:
        rows = self.db.fetch_all(
            f"""
            {_TX_SELECT}
            WHERE t.cast_id = :cast_id
              AND t.cast_payout_id IS NULL
              AND t.type::text = ANY(:types)
              AND t.created_at <= :until
            ORDER BY t.id ASC
            FOR UPDATE OF t
            """,
            {"cast_id": cast_id, "types": _type_values(types), "until": until},
        )
        return [PointTransactionRecord.from_row(row) for row in rows]

    def tag_transactions(self, transaction_ids: Sequence[int], payout_id: int) -> int:
        if not transaction_ids:
            return 0
        row = self.db.fetch_one(
            """
            WITH tagged AS (
                UPDATE point_transactions
                SET cast_payout_id = :payout_id
                WHERE id = ANY(:transaction_ids)
                  AND cast_payout_id IS NULL
                RETURNING 1
            )
            SELECT count(*) AS tagged FROM tagged
            """,
            {"payout_id": payout_id, "transaction_ids": list(transaction_ids)},
        )
        return 0 if row is None else int(row["tagged"])

    def release_transactions(self, payout_id: int) -> int:
        row = self.db.fetch_one(
            """
            WITH released AS (
                UPDATE point_transactions
                SET cast_payout_id = NULL
                WHERE cast_payout_id = :payout_id
                RETURNING 1
            )
            SELECT count(*) AS released FROM released
            """,
            {"payout_id": payout_id},
        )
        return 0 if row is None else int(row["released"])

    def list_payout_transactions(self, payout_id: int) -> Sequence[PointTransactionRecord]:
        rows = self.db.fetch_all(
            f"""
            {_TX_SELECT}
            WHERE t.cast_payout_id = :payout_id
            ORDER BY t.id ASC
            """,
            {"payout_id": payout_id},
        )
        return [PointTransactionRecord.from_row(row) for row in rows]

    # reservations

    def list_open_reservations(self) -> Sequence[ReservationRecord]:
        rows = self.db.fetch_all(
            f"""
            SELECT {_RESERVATION_COLUMNS}
            FROM reservations
            WHERE started_at IS NOT NULL
              AND ended_at IS NULL
            ORDER BY id ASC
            """,
            {},
        )
        return [ReservationRecord.from_row(row) for row in rows]

    def get_reservation(self, reservation_id: int, *, for_update: bool = False) -> Optional[ReservationRecord]:
        row = self.db.fetch_one(
            f"""
            SELECT {_RESERVATION_COLUMNS}
            FROM reservations
            WHERE id = :reservation_id
            {_lock(for_update)}
            """,
            {"reservation_id": reservation_id},
        )
        return None if row is None else ReservationRecord.from_row(row)

    def close_reservation(
        self,
        reservation_id: int,
        expected_version: int,
        ended_at: datetime,
    ) -> Optional[ReservationRecord]:
        row = self.db.fetch_one(
            f"""
            UPDATE reservations
            SET ended_at = :ended_at,
                version = version + 1,
                updated_at = :ended_at
            WHERE id = :reservation_id
              AND version = :expected_version
              AND ended_at IS NULL
            RETURNING {_RESERVATION_COLUMNS}
            """,
            {"reservation_id": reservation_id, "expected_version": expected_version, "ended_at": ended_at},
        )
        return None if row is None else ReservationRecord.from_row(row)

    def record_points_earned(
        self,
        reservation_id: int,
        expected_version: int,
        points_earned: int,
        at: datetime,
    ) -> bool:
        row = self.db.fetch_one(
            """
            UPDATE reservations
            SET points_earned = :points_earned,
                version = version + 1,
                updated_at = :at
            WHERE id = :reservation_id
              AND version = :expected_version
              AND points_earned IS NULL
            RETURNING id
            """,
            {
                "reservation_id": reservation_id,
                "expected_version": expected_version,
                "points_earned": points_earned,
                "at": at,
            },
        )
        return row is not None

    # payouts

    def insert_payout(self, payout: NewCastPayout, created_at: datetime) -> int:
        row = self.db.fetch_one(
            """
            INSERT INTO cast_payouts (
                cast_id, type, closing_month, period_start, period_end, total_points,
                conversion_rate, gross_amount_yen, fee_rate, fee_amount_yen, net_amount_yen,
                transaction_count, status, scheduled_payout_date, metadata, created_at, updated_at
            )
            VALUES (
                :cast_id, CAST(:type AS cast_payout_type_enum), :closing_month, :period_start, :period_end,
                :total_points, :conversion_rate, :gross_amount_yen, :fee_rate, :fee_amount_yen,
                :net_amount_yen, :transaction_count, CAST(:status AS cast_payout_status_enum),
                :scheduled_payout_date, CAST(:metadata AS jsonb), :created_at, :created_at
            )
            RETURNING id
            """,
            {
                "cast_id": payout.cast_id,
                "type": payout.type.value,
                "closing_month": payout.closing_month,
                "period_start": payout.period_start,
                "period_end": payout.period_end,
                "total_points": payout.total_points,
                "conversion_rate": payout.conversion_rate,
                "gross_amount_yen": payout.gross_amount_yen,
                "fee_rate": payout.fee_rate,
                "fee_amount_yen": payout.fee_amount_yen,
                "net_amount_yen": payout.net_amount_yen,
                "transaction_count": payout.transaction_count,
                "status": payout.status.value,
                "scheduled_payout_date": payout.scheduled_payout_date,
                "metadata": json.dumps(payout.metadata, sort_keys=True),
                "created_at": created_at,
            },
        )
        if row is None:
            raise RuntimeError("cast_payouts insert returned no id")
        return int(row["id"])

    def get_payout(self, payout_id: int, *, for_update: bool = False) -> Optional[CastPayoutRecord]:
        row = self.db.fetch_one(
            f"""
            {_PAYOUT_SELECT}
            WHERE id = :payout_id
            {_lock(for_update)}
            """,
            {"payout_id": payout_id},
        )
        return None if row is None else CastPayoutRecord.from_row(row)

    def find_active_scheduled_payout(self, cast_id: int, closing_month: str) -> Optional[CastPayoutRecord]:
        row = self.db.fetch_one(
            f"""
            {_PAYOUT_SELECT}
            WHERE cast_id = :cast_id
              AND closing_month = :closing_month
              AND type = 'scheduled'
              AND status <> 'cancelled'
            ORDER BY id ASC
            LIMIT 1
            """,
            {"cast_id": cast_id, "closing_month": closing_month},
        )
        return None if row is None else CastPayoutRecord.from_row(row)

    def list_due_payouts(self, on_date: date) -> Sequence[CastPayoutRecord]:
        rows = self.db.fetch_all(
            f"""
            {_PAYOUT_SELECT}
            WHERE status = 'scheduled'
              AND scheduled_payout_date <= :on_date
            ORDER BY id ASC
            """,
            {"on_date": on_date},
        )
        return [CastPayoutRecord.from_row(row) for row in rows]

    def list_payouts(self, statuses: Sequence[CastPayoutStatus]) -> Sequence[CastPayoutRecord]:
        rows = self.db.fetch_all(
            f"""
            {_PAYOUT_SELECT}
            WHERE status::text = ANY(:statuses)
            ORDER BY id ASC
            """,
            {"statuses": [CastPayoutStatus(status).value for status in statuses]},
        )
        return [CastPayoutRecord.from_row(row) for row in rows]

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
        row = self.db.fetch_one(
            """
            UPDATE cast_payouts
            SET status = CAST(:status AS cast_payout_status_enum),
                metadata = CAST(:metadata AS jsonb),
                paid_at = COALESCE(CAST(:paid_at AS timestamptz), paid_at),
                provider_reference = COALESCE(CAST(:provider_reference AS text), provider_reference),
                version = version + 1,
                updated_at = :at
            WHERE id = :payout_id
              AND version = :expected_version
            RETURNING id
            """,
            {
                "payout_id": payout_id,
                "expected_version": expected_version,
                "status": CastPayoutStatus(status).value,
                "metadata": json.dumps(dict(metadata), sort_keys=True, default=str),
                "paid_at": paid_at,
                "provider_reference": provider_reference,
                "at": at,
            },
        )
        return row is not None

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
        row = self.db.fetch_one(
            """
            INSERT INTO operator_escalations (
                kind, point_transaction_id, reservation_id, cast_payout_id, detail, created_at
            )
            VALUES (
                :kind, :transaction_id, :reservation_id, :payout_id, CAST(:detail AS jsonb), :created_at
            )
            ON CONFLICT ON CONSTRAINT uq_operator_escalations_kind_transaction DO NOTHING
            RETURNING id
            """,
            {
                "kind": kind,
                "transaction_id": transaction_id,
                "reservation_id": reservation_id,
                "payout_id": payout_id,
                "detail": json.dumps(dict(detail), sort_keys=True, default=str),
                "created_at": created_at,
            },
        )
        return row is not None

    def insert_event(
        self,
        event_type: str,
        aggregate_type: str,
        aggregate_id: int,
        payload: Mapping[str, Any],
        created_at: datetime,
    ) -> int:
        row = self.db.fetch_one(
            """
            INSERT INTO settlement_events (event_type, aggregate_type, aggregate_id, payload, created_at)
            VALUES (:event_type, :aggregate_type, :aggregate_id, CAST(:payload AS jsonb), :created_at)
            RETURNING id
            """,
            {
                "event_type": event_type,
                "aggregate_type": aggregate_type,
                "aggregate_id": aggregate_id,
                "payload": json.dumps(dict(payload), sort_keys=True, default=str),
                "created_at": created_at,
            },
        )
        if row is None:
            raise RuntimeError("settlement_events insert returned no id")
        return int(row["id"])
