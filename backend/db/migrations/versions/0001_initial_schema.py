"""Initial schema for the point ledger and cast payout settlement."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from alembic import op

logger = logging.getLogger(__name__)

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


ENUM_DDL: tuple[str, ...] = (
    "CREATE TYPE point_transaction_type_enum AS ENUM "
    "('buy', 'transfer', 'convert', 'gift', 'pending', 'exceeded_pending', 'refund');",
    "CREATE TYPE cast_payout_status_enum AS ENUM "
    "('pending', 'pending_approval', 'scheduled', 'processing', 'paid', 'failed', 'cancelled');",
    "CREATE TYPE cast_payout_type_enum AS ENUM ('scheduled', 'instant');",
    "CREATE TYPE guest_grade_enum AS ENUM "
    "('green', 'orange', 'bronze', 'silver', 'gold', 'platinum', 'centurion');",
    "CREATE TYPE cast_grade_enum AS ENUM "
    "('beginner', 'green', 'orange', 'bronze', 'silver', 'gold', 'platinum');",
)

TABLE_DDL: tuple[str, ...] = (
    """
    CREATE TABLE guests (
        id BIGINT GENERATED ALWAYS AS IDENTITY,
        nickname TEXT NOT NULL,
        points BIGINT NOT NULL DEFAULT 0,
        grade_points BIGINT NOT NULL DEFAULT 0,
        grade guest_grade_enum NOT NULL DEFAULT 'green',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_guests PRIMARY KEY (id),
        CONSTRAINT ck_guests_points_non_negative CHECK (points >= 0),
        CONSTRAINT ck_guests_grade_points_non_negative CHECK (grade_points >= 0)
    );
    """,
    """
    CREATE TABLE casts (
        id BIGINT GENERATED ALWAYS AS IDENTITY,
        nickname TEXT NOT NULL,
        points BIGINT NOT NULL DEFAULT 0,
        grade_points BIGINT NOT NULL DEFAULT 0,
        grade cast_grade_enum NOT NULL DEFAULT 'beginner',
        payout_account_id TEXT,
        payouts_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_casts PRIMARY KEY (id),
        CONSTRAINT ck_casts_points_non_negative CHECK (points >= 0),
        CONSTRAINT ck_casts_grade_points_non_negative CHECK (grade_points >= 0),
        CONSTRAINT ck_casts_payout_account_not_blank CHECK (
            payout_account_id IS NULL OR length(btrim(payout_account_id)) > 0
        )
    );
    """,
    """
    CREATE TABLE reservations (
        id BIGINT GENERATED ALWAYS AS IDENTITY,
        guest_id BIGINT NOT NULL,
        cast_id BIGINT,
        scheduled_at TIMESTAMPTZ,
        duration_hours INTEGER NOT NULL,
        started_at TIMESTAMPTZ,
        ended_at TIMESTAMPTZ,
        points_earned BIGINT,
        version INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_reservations PRIMARY KEY (id),
        CONSTRAINT fk_reservations_guest FOREIGN KEY (guest_id)
            REFERENCES guests (id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT fk_reservations_cast FOREIGN KEY (cast_id)
            REFERENCES casts (id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_reservations_duration_pos CHECK (duration_hours > 0),
        CONSTRAINT ck_reservations_points_earned_non_negative CHECK (points_earned IS NULL OR points_earned >= 0),
        CONSTRAINT ck_reservations_ended_after_started CHECK (
            ended_at IS NULL OR started_at IS NULL OR ended_at >= started_at
        ),
        CONSTRAINT ck_reservations_version_non_negative CHECK (version >= 0)
    );
    """,
    """
    CREATE TABLE cast_payouts (
        id BIGINT GENERATED ALWAYS AS IDENTITY,
        cast_id BIGINT NOT NULL,
        type cast_payout_type_enum NOT NULL,
        closing_month TEXT NOT NULL,
        period_start TIMESTAMPTZ NOT NULL,
        period_end TIMESTAMPTZ NOT NULL,
        total_points BIGINT NOT NULL,
        conversion_rate NUMERIC(10,4) NOT NULL,
        gross_amount_yen BIGINT NOT NULL,
        fee_rate NUMERIC(6,4) NOT NULL,
        fee_amount_yen BIGINT NOT NULL,
        net_amount_yen BIGINT NOT NULL,
        transaction_count INTEGER NOT NULL,
        status cast_payout_status_enum NOT NULL,
        scheduled_payout_date DATE NOT NULL,
        paid_at TIMESTAMPTZ,
        provider_reference TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        version INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_cast_payouts PRIMARY KEY (id),
        CONSTRAINT fk_cast_payouts_cast FOREIGN KEY (cast_id)
            REFERENCES casts (id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_cast_payouts_closing_month_format CHECK (closing_month ~ '^[0-9]{4}-[0-9]{2}$'),
        CONSTRAINT ck_cast_payouts_period_order CHECK (period_end >= period_start),
        CONSTRAINT ck_cast_payouts_total_points_pos CHECK (total_points > 0),
        CONSTRAINT ck_cast_payouts_conversion_rate_pos CHECK (conversion_rate > 0),
        CONSTRAINT ck_cast_payouts_fee_rate_range CHECK (fee_rate >= 0 AND fee_rate < 1),
        CONSTRAINT ck_cast_payouts_amounts_non_negative CHECK (
            gross_amount_yen >= 0 AND fee_amount_yen >= 0 AND net_amount_yen >= 0
        ),
        CONSTRAINT ck_cast_payouts_net_identity CHECK (net_amount_yen = gross_amount_yen - fee_amount_yen),
        CONSTRAINT ck_cast_payouts_transaction_count_pos CHECK (transaction_count > 0),
        CONSTRAINT ck_cast_payouts_paid_at_required CHECK (status <> 'paid' OR paid_at IS NOT NULL),
        CONSTRAINT ck_cast_payouts_version_non_negative CHECK (version >= 0)
    );
    """,
    """
    CREATE TABLE point_transactions (
        id BIGINT GENERATED ALWAYS AS IDENTITY,
        guest_id BIGINT,
        cast_id BIGINT,
        type point_transaction_type_enum NOT NULL,
        amount BIGINT NOT NULL,
        reservation_id BIGINT,
        payment_id TEXT,
        cast_payout_id BIGINT,
        source_transaction_id BIGINT,
        description TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_point_transactions PRIMARY KEY (id),
        CONSTRAINT fk_point_transactions_guest FOREIGN KEY (guest_id)
            REFERENCES guests (id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT fk_point_transactions_cast FOREIGN KEY (cast_id)
            REFERENCES casts (id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT fk_point_transactions_reservation FOREIGN KEY (reservation_id)
            REFERENCES reservations (id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT fk_point_transactions_cast_payout FOREIGN KEY (cast_payout_id)
            REFERENCES cast_payouts (id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT fk_point_transactions_source FOREIGN KEY (source_transaction_id)
            REFERENCES point_transactions (id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_point_transactions_amount_pos CHECK (amount > 0),
        CONSTRAINT ck_point_transactions_owner_present CHECK (guest_id IS NOT NULL OR cast_id IS NOT NULL),
        CONSTRAINT ck_point_transactions_payout_tag_cast_only CHECK (cast_payout_id IS NULL OR cast_id IS NOT NULL)
    );
    """,
    """
    CREATE TABLE operator_escalations (
        id BIGINT GENERATED ALWAYS AS IDENTITY,
        kind TEXT NOT NULL,
        point_transaction_id BIGINT,
        reservation_id BIGINT,
        cast_payout_id BIGINT,
        detail JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        resolved_at TIMESTAMPTZ,
        CONSTRAINT pk_operator_escalations PRIMARY KEY (id),
        CONSTRAINT fk_operator_escalations_point_transaction FOREIGN KEY (point_transaction_id)
            REFERENCES point_transactions (id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT fk_operator_escalations_reservation FOREIGN KEY (reservation_id)
            REFERENCES reservations (id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT fk_operator_escalations_cast_payout FOREIGN KEY (cast_payout_id)
            REFERENCES cast_payouts (id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT uq_operator_escalations_kind_transaction UNIQUE (kind, point_transaction_id),
        CONSTRAINT ck_operator_escalations_kind_not_blank CHECK (length(btrim(kind)) > 0)
    );
    """,
    """
    CREATE TABLE settlement_events (
        id BIGINT GENERATED ALWAYS AS IDENTITY,
        event_type TEXT NOT NULL,
        aggregate_type TEXT NOT NULL,
        aggregate_id BIGINT NOT NULL,
        payload JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_settlement_events PRIMARY KEY (id),
        CONSTRAINT ck_settlement_events_event_type_not_blank CHECK (length(btrim(event_type)) > 0)
    );
    """,
)

INDEX_DDL: tuple[str, ...] = (
    "CREATE INDEX idx_reservations_open_started ON reservations USING btree (started_at) "
    "WHERE ended_at IS NULL AND started_at IS NOT NULL;",
    "CREATE INDEX idx_reservations_guest ON reservations USING btree (guest_id);",
    "CREATE INDEX idx_point_transactions_reservation_type ON point_transactions USING btree (reservation_id, type);",
    "CREATE INDEX idx_point_transactions_type_created ON point_transactions USING btree (type, created_at);",
    "CREATE INDEX idx_point_transactions_guest ON point_transactions USING btree (guest_id);",
    "CREATE INDEX idx_point_transactions_cast_unaggregated ON point_transactions USING btree (cast_id, created_at) "
    "WHERE cast_payout_id IS NULL;",
    "CREATE INDEX idx_point_transactions_cast_payout ON point_transactions USING btree (cast_payout_id);",
    "CREATE UNIQUE INDEX uqix_point_transactions_source_type ON point_transactions USING btree "
    "(source_transaction_id, type) WHERE source_transaction_id IS NOT NULL;",
    "CREATE UNIQUE INDEX uqix_cast_payouts_one_scheduled_per_month ON cast_payouts USING btree "
    "(cast_id, closing_month) WHERE type = 'scheduled' AND status <> 'cancelled';",
    "CREATE INDEX idx_cast_payouts_status_scheduled_date ON cast_payouts USING btree (status, scheduled_payout_date);",
    "CREATE INDEX idx_operator_escalations_open ON operator_escalations USING btree (created_at) "
    "WHERE resolved_at IS NULL;",
    "CREATE INDEX idx_settlement_events_created ON settlement_events USING btree (created_at);",
)

LEDGER_GUARD_DDL: tuple[str, ...] = (
    """
    CREATE OR REPLACE FUNCTION fn_enforce_append_only()
    RETURNS TRIGGER
    LANGUAGE plpgsql
    AS $$
    BEGIN
        RAISE EXCEPTION 'append-only violation on table %, operation % is not allowed', TG_TABLE_NAME, TG_OP;
    END;
    $$;
    """,
    """
    CREATE OR REPLACE FUNCTION fn_point_transactions_guard()
    RETURNS TRIGGER
    LANGUAGE plpgsql
    AS $$
    BEGIN
        IF TG_OP = 'DELETE' THEN
            RAISE EXCEPTION 'append-only violation on table %, operation % is not allowed', TG_TABLE_NAME, TG_OP;
        END IF;
        IF (NEW.id, NEW.guest_id, NEW.cast_id, NEW.type, NEW.amount, NEW.reservation_id,
            NEW.payment_id, NEW.source_transaction_id, NEW.description, NEW.created_at)
           IS DISTINCT FROM
           (OLD.id, OLD.guest_id, OLD.cast_id, OLD.type, OLD.amount, OLD.reservation_id,
            OLD.payment_id, OLD.source_transaction_id, OLD.description, OLD.created_at) THEN
            RAISE EXCEPTION 'point transaction % is immutable except for cast_payout_id', OLD.id;
        END IF;
        IF OLD.cast_payout_id IS NOT NULL
           AND NEW.cast_payout_id IS NOT NULL
           AND NEW.cast_payout_id <> OLD.cast_payout_id THEN
            RAISE EXCEPTION 'point transaction % is already aggregated into payout %', OLD.id, OLD.cast_payout_id;
        END IF;
        RETURN NEW;
    END;
    $$;
    """,
    """
    CREATE TRIGGER trg_point_transactions_guard
    BEFORE UPDATE OR DELETE ON point_transactions
    FOR EACH ROW EXECUTE FUNCTION fn_point_transactions_guard();
    """,
    """
    CREATE TRIGGER trg_settlement_events_append_only
    BEFORE UPDATE OR DELETE ON settlement_events
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """,
)


def _execute_all(statements: Sequence[str]) -> None:
    """Execute an ordered sequence of SQL statements."""

    for statement in statements:
        try:
            op.execute(statement)
        except Exception:
            logger.exception("Migration statement failed.")
            raise


def upgrade() -> None:
    """Apply the initial schema migration."""

    logger.info("Starting initial schema migration upgrade.")
    _execute_all(ENUM_DDL)
    _execute_all(TABLE_DDL)
    _execute_all(INDEX_DDL)
    _execute_all(LEDGER_GUARD_DDL)
    logger.info("Completed initial schema migration upgrade.")


def downgrade() -> None:
    """Revert the initial schema migration."""

    logger.info("Starting initial schema migration downgrade.")
    _execute_all(
        (
            "DROP TRIGGER IF EXISTS trg_settlement_events_append_only ON settlement_events;",
            "DROP TRIGGER IF EXISTS trg_point_transactions_guard ON point_transactions;",
            "DROP FUNCTION IF EXISTS fn_point_transactions_guard();",
            "DROP FUNCTION IF EXISTS fn_enforce_append_only();",
            "DROP TABLE IF EXISTS settlement_events;",
            "DROP TABLE IF EXISTS operator_escalations;",
            "DROP TABLE IF EXISTS point_transactions;",
            "DROP TABLE IF EXISTS cast_payouts;",
            "DROP TABLE IF EXISTS reservations;",
            "DROP TABLE IF EXISTS casts;",
            "DROP TABLE IF EXISTS guests;",
            "DROP TYPE IF EXISTS cast_grade_enum;",
            "DROP TYPE IF EXISTS guest_grade_enum;",
            "DROP TYPE IF EXISTS cast_payout_type_enum;",
            "DROP TYPE IF EXISTS cast_payout_status_enum;",
            "DROP TYPE IF EXISTS point_transaction_type_enum;",
        )
    )
    logger.info("Completed initial schema migration downgrade.")
