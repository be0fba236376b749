#!/usr/bin/env python3
"""Scheduler/admin CLI for point settlement and cast payout jobs."""

from __future__ import annotations

import argparse
from datetime import date
import json
import logging
import os
from pathlib import Path
import re
import sys
from typing import Any, Mapping, Optional, Sequence

import psycopg
from psycopg.rows import dict_row

# Ensure repository root is importable when script is executed by path.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from settlement.auto_exit import AutoExitSweeper
from settlement.batch_runner import BatchReport
from settlement.common import SettlementClock
from settlement.errors import GatewayFailure, PreconditionFailed, ValidationError
from settlement.gateway_simulator import SimulatedPaymentGateway
from settlement.grade_engine import GradeEngine
from settlement.payout_engine import ClosingPeriod, PayoutEngine
from settlement.pending_resolution import PendingResolutionProcessor
from settlement.records import CastPayoutRecord
from settlement.settlement_config import SettlementConfig, load_settlement_config
from settlement.sql_repository import SqlSettlementRepository


_NAMED_PARAM_RE = re.compile(r"(?<!:):([a-zA-Z_][a-zA-Z0-9_]*)")

PAYOUT_COMMANDS = ("payouts:approve", "payouts:reject", "payouts:cancel", "payouts:retry", "payouts:mark-paid")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_REJECTED = 2


def _convert_named_params(sql: str) -> str:
    return _NAMED_PARAM_RE.sub(r"%(\1)s", sql)


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date (expected YYYY-MM-DD): {value}") from exc


def _parse_month(value: str) -> str:
    if not re.fullmatch(r"\d{4}-(0[1-9]|1[0-2])", value.strip()):
        raise argparse.ArgumentTypeError(f"Invalid month (expected YYYY-MM): {value}")
    return value.strip()


class PsycopgSettlementDB:
    """Minimal DB adapter implementing the settlement read/write protocol."""

    def __init__(self, conn: psycopg.Connection[Any]) -> None:
        self.conn = conn

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        converted = _convert_named_params(sql)
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(converted, dict(params))
            return [dict(row) for row in cur.fetchall()]

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        converted = _convert_named_params(sql)
        with self.conn.cursor() as cur:
            cur.execute(converted, dict(params))


def _resolve_connection(args: argparse.Namespace) -> psycopg.Connection[Any]:
    if args.dsn:
        return psycopg.connect(args.dsn, autocommit=False)

    host = args.host or os.getenv("DB_HOST") or os.getenv("TEST_DB_HOST")
    port = args.port or os.getenv("DB_PORT") or os.getenv("TEST_DB_PORT")
    dbname = args.dbname or os.getenv("DB_NAME") or os.getenv("TEST_DB_NAME")
    user = args.user or os.getenv("DB_USER") or os.getenv("TEST_DB_USER")
    password = args.password or os.getenv("DB_PASSWORD") or os.getenv("TEST_DB_PASSWORD")

    missing = [
        key
        for key, value in (
            ("host", host),
            ("port", port),
            ("dbname", dbname),
            ("user", user),
            ("password", password),
        )
        if not value
    ]
    if missing:
        raise SystemExit(
            "Missing DB connection args. Provide --dsn or set --host/--port/--dbname/--user/--password "
            f"(missing: {', '.join(missing)})."
        )

    return psycopg.connect(host=host, port=port, dbname=dbname, user=user, password=password, autocommit=False)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Point settlement and cast payout jobs")
    parser.add_argument("--dsn", help="PostgreSQL DSN (optional)")
    parser.add_argument("--host", help="DB host")
    parser.add_argument("--port", help="DB port")
    parser.add_argument("--dbname", help="DB name")
    parser.add_argument("--user", help="DB user")
    parser.add_argument("--password", help="DB password")
    parser.add_argument("--log-level", default="WARNING", help="Logging level written to stderr")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit 1 when a batch had failures and no successes",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("reservations:auto-exit", help="Force-close sessions that ran out of funds")
    subparsers.add_parser("points:process-exceeded-pending", help="Mature exceeded_pending holds")
    subparsers.add_parser("points:process-pending", help="Mature pending holds of completed sessions")

    close_month = subparsers.add_parser("casts:close-month", help="Aggregate cast earnings into payouts")
    close_month.add_argument("--month", type=_parse_month, default=None, help="Closing month YYYY-MM")

    process = subparsers.add_parser("casts:process-payouts", help="Dispatch scheduled payouts that are due")
    process.add_argument("--date", type=_parse_date, default=None, help="Run date YYYY-MM-DD")

    reset = subparsers.add_parser("points:reset-quarterly", help="Quarterly reset of cast points and grade points")
    reset.add_argument("--dry-run", action="store_true")
    reset.add_argument("--date", type=_parse_date, default=None, help="Reset date YYYY-MM-DD")

    subparsers.add_parser("grades:recompute", help="Recompute guest and cast grades")

    for command in PAYOUT_COMMANDS:
        action = subparsers.add_parser(command, help=f"Admin action on one payout ({command.split(':')[1]})")
        action.add_argument("payout_id", type=int)
        if command in ("payouts:reject", "payouts:cancel"):
            action.add_argument("--reason", default=None)
        if command == "payouts:reject":
            action.add_argument("--mark-failed", action="store_true")
        if command == "payouts:mark-paid":
            action.add_argument("--note", default=None)

    return parser


def _payout_payload(payout: CastPayoutRecord) -> dict[str, Any]:
    return {
        "payout_id": payout.payout_id,
        "cast_id": payout.cast_id,
        "status": payout.status.value,
        "net_amount_yen": payout.net_amount_yen,
        "provider_reference": payout.provider_reference,
    }


def _emit(payload: Mapping[str, Any]) -> None:
    print(json.dumps(payload, sort_keys=True, default=str))


def _batch_exit_code(report: BatchReport, strict: bool) -> int:
    if strict and report.strict_failure:
        return EXIT_FAILED
    return EXIT_OK


def _run_command(
    args: argparse.Namespace,
    repository: SqlSettlementRepository,
    config: SettlementConfig,
    clock: SettlementClock,
) -> int:
    gateway = SimulatedPaymentGateway()
    payouts = PayoutEngine(repository, gateway, config, clock)

    if args.command == "reservations:auto-exit":
        report = AutoExitSweeper(repository, clock=clock).run()
    elif args.command == "points:process-exceeded-pending":
        report = PendingResolutionProcessor(repository, config, clock=clock).process_exceeded_pending()
    elif args.command == "points:process-pending":
        report = PendingResolutionProcessor(repository, config, clock=clock).process_pending()
    elif args.command == "casts:close-month":
        period = ClosingPeriod.for_month(config, args.month) if args.month else None
        report = payouts.close_monthly_period(period)
    elif args.command == "casts:process-payouts":
        report = payouts.process_due_payouts(args.date)
    elif args.command == "grades:recompute":
        report = GradeEngine(repository, clock=clock).recompute_grades()
    elif args.command == "points:reset-quarterly":
        today = args.date or clock.now_utc().astimezone(config.tz).date()
        reset = GradeEngine(repository, clock=clock).reset_quarterly(today, dry_run=args.dry_run)
        _emit({"job": "points:reset-quarterly", **reset.as_dict()})
        return EXIT_OK
    elif args.command in PAYOUT_COMMANDS:
        return _run_payout_action(args, payouts)
    else:
        raise SystemExit(f"Unknown command: {args.command}")

    _emit(report.as_dict())
    return _batch_exit_code(report, args.strict)


def _run_payout_action(args: argparse.Namespace, payouts: PayoutEngine) -> int:
    if args.command == "payouts:approve":
        payout = payouts.approve(args.payout_id)
    elif args.command == "payouts:reject":
        payout = payouts.reject(args.payout_id, args.reason or "", mark_failed=args.mark_failed)
    elif args.command == "payouts:cancel":
        payout = payouts.cancel(args.payout_id, args.reason)
    elif args.command == "payouts:retry":
        payout = payouts.retry(args.payout_id)
    else:
        payout = payouts.mark_paid(args.payout_id, args.note)
    _emit({"job": args.command, **_payout_payload(payout)})
    return EXIT_OK


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    config = load_settlement_config()
    conn = _resolve_connection(args)
    repository = SqlSettlementRepository(PsycopgSettlementDB(conn))
    try:
        rc = _run_command(args, repository, config, SettlementClock())
        conn.commit()
        return rc
    except (PreconditionFailed, ValidationError) as exc:
        conn.rollback()
        _emit({"job": args.command, "error": exc.reason, "message": str(exc)})
        return EXIT_REJECTED
    except GatewayFailure as exc:
        conn.rollback()
        _emit({"job": args.command, "error": exc.reason, "message": str(exc), "detail": exc.detail})
        return EXIT_FAILED
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


if __name__ == "__main__":
    raise SystemExit(main())
