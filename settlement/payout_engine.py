"""Monthly closing of cast earnings and the payout lifecycle."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
import logging
import math
from typing import Any, Mapping, Optional, Sequence

from backend.db.enums import CastPayoutStatus, CastPayoutType
from settlement.batch_runner import BatchReport, BatchRunner, UnitOutcome, unit_of_work
from settlement.common import (
    SettlementClock,
    end_of_month,
    month_bounds,
    normalize_rate,
    normalize_timestamp,
    parse_closing_month,
    previous_business_day,
    shift_month,
    to_yen,
)
from settlement.errors import GatewayFailure, PreconditionFailed, ValidationError
from settlement.payment_gateway import GatewayResult, PaymentGateway
from settlement.payout_state import RELEASING_STATUSES, is_terminal, require_transition
from settlement.records import CastPayoutRecord, CastRecord, NewCastPayout, PointTransactionRecord
from settlement.repository import SettlementRepository
from settlement.settlement_config import SettlementConfig

logger = logging.getLogger(__name__)

S = CastPayoutStatus


@dataclass(frozen=True)
class PayoutAmounts:
    total_points: int
    conversion_rate: Decimal
    gross_amount_yen: int
    fee_rate: Decimal
    fee_amount_yen: int
    net_amount_yen: int


def compute_payout_amounts(total_points: int, conversion_rate: Decimal, fee_rate: Decimal) -> PayoutAmounts:
    """gross = round(points * rate), fee = round(gross * fee_rate), net = gross - fee."""
    if total_points <= 0:
        raise ValidationError(f"total_points must be positive, got {total_points}")
    if conversion_rate <= 0:
        raise ValidationError(f"conversion_rate must be positive, got {conversion_rate}")
    if fee_rate < 0 or fee_rate >= 1:
        raise ValidationError(f"fee_rate must be in [0, 1), got {fee_rate}")

    rate = normalize_rate(Decimal(conversion_rate))
    fee = normalize_rate(Decimal(fee_rate))
    gross = to_yen(Decimal(total_points) * rate)
    fee_amount = to_yen(Decimal(gross) * fee)
    return PayoutAmounts(
        total_points=total_points,
        conversion_rate=rate,
        gross_amount_yen=gross,
        fee_rate=fee,
        fee_amount_yen=fee_amount,
        net_amount_yen=gross - fee_amount,
    )


@dataclass(frozen=True)
class ClosingPeriod:
    closing_month: str
    period_start: datetime
    period_end: datetime
    scheduled_payout_date: date

    @classmethod
    def for_month(cls, config: SettlementConfig, closing_month: str) -> "ClosingPeriod":
        try:
            year, month = parse_closing_month(closing_month)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        start, end = month_bounds(year, month, config.tz)
        pay_year, pay_month = shift_month(year, month, config.payout_offset_months)
        payout_date = end_of_month(pay_year, pay_month)
        if config.business_day_adjustment:
            payout_date = previous_business_day(payout_date)
        return cls(
            closing_month=f"{year:04d}-{month:02d}",
            period_start=start,
            period_end=end,
            scheduled_payout_date=payout_date,
        )

    @classmethod
    def previous_month(cls, config: SettlementConfig, now: datetime) -> "ClosingPeriod":
        local = now.astimezone(config.tz)
        year, month = shift_month(local.year, local.month, -1)
        return cls.for_month(config, f"{year:04d}-{month:02d}")

    @classmethod
    def ending_at(cls, config: SettlementConfig, period_end: datetime) -> "ClosingPeriod":
        """Period for the month containing ``period_end``, cut off at that instant."""
        local = period_end.astimezone(config.tz)
        base = cls.for_month(config, f"{local.year:04d}-{local.month:02d}")
        return cls(
            closing_month=base.closing_month,
            period_start=base.period_start,
            period_end=period_end,
            scheduled_payout_date=base.scheduled_payout_date,
        )


class PayoutEngine:
    """Closing, approval and dispatch of cast payouts.

    Batch methods return a :class:`BatchReport`. Single-payout actions run in
    their own unit of work and raise ``PreconditionFailed`` when the payout is
    not in a state that allows the action.
    """

    def __init__(
        self,
        repository: SettlementRepository,
        gateway: PaymentGateway,
        config: SettlementConfig | None = None,
        clock: SettlementClock | None = None,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self.config = config or SettlementConfig()
        self.clock = clock or SettlementClock()

    # closing

    def close_monthly_period(self, period: ClosingPeriod | None = None) -> BatchReport:
        period = period or ClosingPeriod.previous_month(self.config, self.clock.now_utc())
        cast_ids = list(self.repository.list_earnable_cast_ids(self.config.earnable_types, period.period_end))
        runner = BatchRunner(self.repository, f"casts:close-month {period.closing_month}")
        return runner.run(cast_ids, lambda cast_id: self._close_cast(cast_id, period), lambda cast_id: cast_id)

    def _close_cast(self, cast_id: int, period: ClosingPeriod) -> UnitOutcome:
        cast = self.repository.get_cast(cast_id, for_update=True)
        if cast is None:
            return UnitOutcome.SKIPPED
        if self.repository.find_active_scheduled_payout(cast_id, period.closing_month) is not None:
            return UnitOutcome.SKIPPED

        rows = list(
            self.repository.list_unaggregated_transactions(cast_id, self.config.earnable_types, period.period_end)
        )
        total_points = sum(row.amount for row in rows)
        if total_points <= 0:
            return UnitOutcome.SKIPPED

        amounts = compute_payout_amounts(
            total_points,
            self.config.yen_per_point,
            self.config.fee_rate_for_grade(cast.grade),
        )
        now = self.clock.now_utc()
        period_start = min([period.period_start, *(row.created_at for row in rows)])
        payout_id = self.repository.insert_payout(
            NewCastPayout(
                cast_id=cast_id,
                type=CastPayoutType.SCHEDULED,
                closing_month=period.closing_month,
                period_start=period_start,
                period_end=period.period_end,
                total_points=amounts.total_points,
                conversion_rate=amounts.conversion_rate,
                gross_amount_yen=amounts.gross_amount_yen,
                fee_rate=amounts.fee_rate,
                fee_amount_yen=amounts.fee_amount_yen,
                net_amount_yen=amounts.net_amount_yen,
                transaction_count=len(rows),
                status=S.PENDING_APPROVAL if cast.can_receive_payouts else S.PENDING,
                scheduled_payout_date=period.scheduled_payout_date,
                metadata={"source": "auto-close"},
            ),
            now,
        )
        self._tag(rows, payout_id)
        logger.info(
            "Closed %s for cast %s: payout=%s points=%s net=%s",
            period.closing_month,
            cast_id,
            payout_id,
            total_points,
            amounts.net_amount_yen,
        )
        return UnitOutcome.APPLIED

    def _tag(self, rows: Sequence[PointTransactionRecord], payout_id: int) -> None:
        tagged = self.repository.tag_transactions([row.transaction_id for row in rows], payout_id)
        if tagged != len(rows):
            raise PreconditionFailed(
                f"payout {payout_id}: tagged {tagged} of {len(rows)} transactions; another run aggregated them"
            )

    # instant payouts

    def request_instant_payout(self, cast_id: int, amount_yen: int, memo: Optional[str] = None) -> CastPayoutRecord:
        with unit_of_work(self.repository):
            return self._request_instant_payout(cast_id, amount_yen, memo)

    def _request_instant_payout(self, cast_id: int, amount_yen: int, memo: Optional[str]) -> CastPayoutRecord:
        cfg = self.config
        cast = self.repository.get_cast(cast_id, for_update=True)
        if cast is None:
            raise ValidationError(f"unknown cast_id {cast_id}")
        if not cast.can_receive_payouts:
            raise PreconditionFailed(f"cast {cast_id} has no enabled payout account")
        if amount_yen < cfg.instant_min_yen:
            raise ValidationError(f"instant payouts start at {cfg.instant_min_yen} yen, got {amount_yen}")

        now = self.clock.now_utc()
        rows = sorted(
            self.repository.list_unaggregated_transactions(cast_id, cfg.earnable_types, now),
            key=lambda row: (row.amount, row.created_at, row.transaction_id),
        )
        unsettled = sum(row.amount for row in rows)
        available = math.floor(Decimal(unsettled) * cfg.instant_max_ratio)
        if available < cfg.instant_min_points:
            raise ValidationError(f"cast {cast_id} has {available} points available for instant payout")
        required = math.ceil(Decimal(amount_yen) / cfg.yen_per_point)
        if required > available:
            raise ValidationError(f"requested {required} points exceeds the {available} available")

        consumed: list[PointTransactionRecord] = []
        consumed_points = 0
        for row in rows:
            if consumed_points >= required:
                break
            consumed.append(row)
            consumed_points += row.amount
        if consumed_points > available:
            raise ValidationError(
                f"covering {required} points needs whole transactions worth {consumed_points}, "
                f"over the {available} available"
            )

        # the payout pays what was requested; any remainder of the last row stays in metadata
        amounts = compute_payout_amounts(required, cfg.yen_per_point, cfg.instant_fee_rate)
        local_now = now.astimezone(cfg.tz)
        payout_id = self.repository.insert_payout(
            NewCastPayout(
                cast_id=cast_id,
                type=CastPayoutType.INSTANT,
                closing_month=f"{local_now.year:04d}-{local_now.month:02d}",
                period_start=min(row.created_at for row in consumed),
                period_end=now,
                total_points=amounts.total_points,
                conversion_rate=amounts.conversion_rate,
                gross_amount_yen=amounts.gross_amount_yen,
                fee_rate=amounts.fee_rate,
                fee_amount_yen=amounts.fee_amount_yen,
                net_amount_yen=amounts.net_amount_yen,
                transaction_count=len(consumed),
                status=S.PENDING_APPROVAL,
                scheduled_payout_date=local_now.date(),
                metadata={
                    "instant_request": True,
                    "memo": memo,
                    "requested_at": normalize_timestamp(now),
                    "requested_amount_yen": amount_yen,
                    "required_points": required,
                    "consumed_points": consumed_points,
                },
            ),
            now,
        )
        self._tag(consumed, payout_id)
        return self._load(payout_id)

    # admin actions

    def approve(self, payout_id: int) -> CastPayoutRecord:
        with unit_of_work(self.repository):
            payout = self._load(payout_id)
            if payout.status not in (S.PENDING_APPROVAL, S.PENDING):
                raise PreconditionFailed(f"payout {payout_id} is {payout.status.value}, not awaiting approval")
            cast = self._cast_for(payout)
            if payout.status is S.PENDING and not cast.can_receive_payouts:
                raise PreconditionFailed(f"cast {cast.cast_id} still has no enabled payout account")
            return self._write(payout, S.SCHEDULED, {"approved_at": self._stamp()})

    def reject(self, payout_id: int, reason: str, *, mark_failed: bool = False) -> CastPayoutRecord:
        with unit_of_work(self.repository):
            payout = self._load(payout_id)
            if payout.status is not S.PENDING_APPROVAL:
                raise PreconditionFailed(f"payout {payout_id} is {payout.status.value}, not pending_approval")
            target = S.FAILED if mark_failed else S.CANCELLED
            return self._write(payout, target, {"rejected_at": self._stamp(), "rejection_reason": reason})

    def cancel(self, payout_id: int, reason: Optional[str] = None) -> CastPayoutRecord:
        with unit_of_work(self.repository):
            payout = self._load(payout_id)
            return self._write(payout, S.CANCELLED, {"cancelled_at": self._stamp(), "cancel_reason": reason})

    def mark_paid(self, payout_id: int, note: Optional[str] = None) -> CastPayoutRecord:
        with unit_of_work(self.repository):
            payout = self._load(payout_id)
            if is_terminal(payout.status):
                raise PreconditionFailed(f"payout {payout_id} is already {payout.status.value}")
            now = self.clock.now_utc()
            return self._write(
                payout,
                S.PAID,
                {"manual_payment": True, "manual_note": note, "marked_paid_at": normalize_timestamp(now)},
                paid_at=now,
            )

    # dispatch

    def process_due_payouts(self, on_date: Optional[date] = None) -> BatchReport:
        run_date = on_date or self.clock.now_utc().astimezone(self.config.tz).date()
        due = list(self.repository.list_due_payouts(run_date))
        runner = BatchRunner(self.repository, f"casts:process-payouts {run_date.isoformat()}")
        return runner.run(due, self._process_due, lambda payout: payout.payout_id)

    def _process_due(self, snapshot: CastPayoutRecord) -> UnitOutcome:
        payout = self._load(snapshot.payout_id)
        cast = self._cast_for(payout)
        if payout.status is S.SCHEDULED and not cast.can_receive_payouts:
            logger.info("Payout %s waits for cast %s payout account", payout.payout_id, cast.cast_id)
            return UnitOutcome.SKIPPED
        self._dispatch(payout, cast, retry=False)
        return UnitOutcome.APPLIED

    def process_payout(self, payout_id: int) -> CastPayoutRecord:
        """Dispatch one scheduled payout; raises GatewayFailure after recording a decline."""
        try:
            payout = self._load(payout_id)
            cast = self._cast_for(payout)
            if not cast.can_receive_payouts:
                raise PreconditionFailed(f"cast {cast.cast_id} has no enabled payout account")
            result = self._dispatch(payout, cast, retry=False)
        except Exception:
            self.repository.rollback()
            raise
        self.repository.commit()
        return result

    def retry(self, payout_id: int) -> CastPayoutRecord:
        try:
            payout = self._load(payout_id)
            if payout.status is not S.FAILED:
                raise PreconditionFailed(f"payout {payout_id} is {payout.status.value}; only failed payouts retry")
            cast = self._cast_for(payout)
            if not cast.can_receive_payouts:
                raise PreconditionFailed(f"cast {cast.cast_id} has no enabled payout account")
            result = self._dispatch(payout, cast, retry=True)
        except Exception:
            self.repository.rollback()
            raise
        self.repository.commit()
        return result

    def _dispatch(self, payout: CastPayoutRecord, cast: CastRecord, *, retry: bool) -> CastPayoutRecord:
        """Commit processing, call the gateway, then record paid or failed."""
        extra: dict[str, Any] = {"processing_started_at": self._stamp()}
        if retry:
            extra["retry_count"] = int(payout.metadata.get("retry_count", 0)) + 1
        elif payout.status is not S.SCHEDULED:
            raise PreconditionFailed(f"payout {payout.payout_id} is {payout.status.value}, not scheduled")
        processing = self._write(payout, S.PROCESSING, extra)
        self.repository.commit()

        account_id = str(cast.payout_account_id)
        # a completed transfer is never repeated; a retry only re-sends the payout
        transfer_reference: Optional[str] = processing.metadata.get("transfer_reference")
        error: Optional[str] = None
        result: Optional[GatewayResult] = None
        try:
            if transfer_reference is None:
                transfer = self.gateway.transfer(account_id, processing.net_amount_yen)
                if transfer.success:
                    transfer_reference = transfer.provider_reference
                result = transfer
            if transfer_reference is not None:
                result = self.gateway.payout(account_id, processing.net_amount_yen)
        except Exception as exc:
            logger.exception("Gateway call failed for payout %s", processing.payout_id)
            error = f"{type(exc).__name__}: {exc}"

        if error is None and result is not None and result.success:
            now = self.clock.now_utc()
            return self._write(
                processing,
                S.PAID,
                {"transfer_reference": transfer_reference},
                paid_at=now,
                provider_reference=result.provider_reference,
            )

        if error is None:
            error = (result.error if result is not None else None) or "declined"
        self._write(
            processing,
            S.FAILED,
            {"gateway_error": error, "failed_at": self._stamp(), "transfer_reference": transfer_reference},
        )
        self.repository.commit()
        raise GatewayFailure(
            f"payout {processing.payout_id} failed at the gateway: {error}",
            detail={"payout_id": processing.payout_id, "error": error},
        )

    # helpers

    def _load(self, payout_id: int) -> CastPayoutRecord:
        payout = self.repository.get_payout(payout_id, for_update=True)
        if payout is None:
            raise PreconditionFailed(f"payout {payout_id} does not exist")
        return payout

    def _cast_for(self, payout: CastPayoutRecord) -> CastRecord:
        cast = self.repository.get_cast(payout.cast_id)
        if cast is None:
            raise PreconditionFailed(f"payout {payout.payout_id} references missing cast {payout.cast_id}")
        return cast

    def _stamp(self) -> str:
        return normalize_timestamp(self.clock.now_utc())

    def _write(
        self,
        payout: CastPayoutRecord,
        target: CastPayoutStatus,
        metadata_update: Mapping[str, Any],
        *,
        paid_at: Optional[datetime] = None,
        provider_reference: Optional[str] = None,
    ) -> CastPayoutRecord:
        require_transition(payout.payout_id, payout.status, target)
        metadata = {**payout.metadata, **metadata_update}
        written = self.repository.update_payout(
            payout.payout_id,
            payout.version,
            status=target,
            metadata=metadata,
            at=self.clock.now_utc(),
            paid_at=paid_at,
            provider_reference=provider_reference,
        )
        if not written:
            raise PreconditionFailed(f"payout {payout.payout_id} changed concurrently")
        if target in RELEASING_STATUSES:
            released = self.repository.release_transactions(payout.payout_id)
            logger.info("Payout %s %s; released %s transactions", payout.payout_id, target.value, released)
        return self._load(payout.payout_id)
