"""Unit tests for the point ledger schema migration."""

from __future__ import annotations

import importlib.util
from pathlib import Path
import re
from types import SimpleNamespace
from typing import Any

import pytest

from backend.db.enums import CastGrade, CastPayoutStatus, CastPayoutType, GuestGrade, PointTransactionType

MIGRATION_PATH = Path(__file__).resolve().parents[1] / "backend" / "db" / "migrations" / "versions" / "0001_initial_schema.py"


@pytest.fixture
def migration() -> Any:
    spec = importlib.util.spec_from_file_location("migration_0001_initial_schema", MIGRATION_PATH)
    assert spec is not None and spec.loader is not None
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def executed(migration: Any, monkeypatch: pytest.MonkeyPatch) -> list[str]:
    """Record statements sent to alembic's op; statements containing FAIL raise."""
    statements: list[str] = []

    def _execute(statement: str) -> None:
        statements.append(statement)
        if "FAIL" in statement:
            raise RuntimeError("forced migration failure")

    monkeypatch.setattr(migration, "op", SimpleNamespace(execute=_execute))
    return statements


def test_revision_identifiers(migration: Any) -> None:
    assert (migration.revision, migration.down_revision) == ("0001_initial_schema", None)
    assert migration.branch_labels is None and migration.depends_on is None


def test_execute_all_runs_statements_in_order(migration: Any, executed: list[str]) -> None:
    migration._execute_all(("CREATE TYPE a;", "CREATE TYPE b;"))
    migration._execute_all(())

    assert executed == ["CREATE TYPE a;", "CREATE TYPE b;"]


def test_execute_all_stops_at_the_first_failure(
    migration: Any, executed: list[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    logged: list[str] = []
    monkeypatch.setattr(migration.logger, "exception", logged.append)

    with pytest.raises(RuntimeError, match="forced migration failure"):
        migration._execute_all(("SELECT 1;", "SELECT FAIL;", "SELECT 3;"))

    assert executed == ["SELECT 1;", "SELECT FAIL;"]
    assert logged == ["Migration statement failed."]


def test_upgrade_orchestration_order(migration: Any, executed: list[str], monkeypatch: pytest.MonkeyPatch) -> None:

    groups: list[tuple[str, ...]] = []
    monkeypatch.setattr(migration, "_execute_all", lambda statements: groups.append(tuple(statements)))
    migration.upgrade()

    assert executed == []
    assert groups == [
        migration.ENUM_DDL,
        migration.TABLE_DDL,
        migration.INDEX_DDL,
        migration.LEDGER_GUARD_DDL,
    ]


def test_enum_ddl_matches_python_enums(migration: Any) -> None:
    pattern = re.compile(r"CREATE TYPE (\w+) AS ENUM \((.*?)\);", re.S)
    declared = {
        name: [label.strip().strip("'") for label in body.split(",")]
        for name, body in (pattern.match(statement).groups() for statement in migration.ENUM_DDL)
    }

    assert declared == {
        "point_transaction_type_enum": [member.value for member in PointTransactionType],
        "cast_payout_status_enum": [member.value for member in CastPayoutStatus],
        "cast_payout_type_enum": [member.value for member in CastPayoutType],
        "guest_grade_enum": [member.value for member in GuestGrade],
        "cast_grade_enum": [member.value for member in CastGrade],
    }


def test_ledger_uniqueness_indexes_are_declared(migration: Any) -> None:
    indexes = " ".join(migration.INDEX_DDL)

    assert "uqix_point_transactions_source_type" in indexes
    assert "(source_transaction_id, type) WHERE source_transaction_id IS NOT NULL" in indexes
    assert "WHERE type = 'scheduled' AND status <> 'cancelled'" in indexes


def test_downgrade_orchestration_drop_bundle(migration: Any, monkeypatch: pytest.MonkeyPatch) -> None:

    statements_seen: list[tuple[str, ...]] = []
    monkeypatch.setattr(migration, "_execute_all", lambda statements: statements_seen.append(tuple(statements)))
    migration.downgrade()

    assert len(statements_seen) == 1
    drops = statements_seen[0]
    assert drops[0].startswith("DROP TRIGGER IF EXISTS trg_settlement_events_append_only")
    assert "DROP TABLE IF EXISTS point_transactions;" in drops
    assert drops.index("DROP TABLE IF EXISTS point_transactions;") < drops.index("DROP TABLE IF EXISTS cast_payouts;")
    assert drops[-1] == "DROP TYPE IF EXISTS point_transaction_type_enum;"
