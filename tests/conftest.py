"""Pytest fixtures shared across unit and integration tests."""

from __future__ import annotations

from datetime import datetime, timezone
import os
from typing import Any

import psycopg
import pytest

from settlement.common import FixedClock
from tests.utils.memory_repository import MemorySettlementRepository
from tests.utils.pg_settlement import PsycopgSettlementDB


@pytest.fixture
def repo() -> MemorySettlementRepository:
    """Fresh in-memory repository per test."""
    return MemorySettlementRepository()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture(scope="session")
def pg_conn() -> Any:
    """Session-scoped psycopg connection for integration tests."""
    host = os.getenv("TEST_DB_HOST")
    port = os.getenv("TEST_DB_PORT")
    dbname = os.getenv("TEST_DB_NAME")
    user = os.getenv("TEST_DB_USER")
    password = os.getenv("TEST_DB_PASSWORD")

    if not all([host, port, dbname, user, password]):
        pytest.skip("Integration DB env vars are missing; set TEST_DB_HOST/PORT/NAME/USER/PASSWORD")

    conn = psycopg.connect(
        host=host,
        port=port,
        dbname=dbname,
        user=user,
        password=password,
        autocommit=False,
    )
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def settlement_db(pg_conn: Any) -> PsycopgSettlementDB:
    """Settlement DB adapter fixture."""
    return PsycopgSettlementDB(pg_conn)
