"""Error taxonomy for ledger and settlement operations."""

from __future__ import annotations

from typing import Any, Mapping


class SettlementError(RuntimeError):
    """Base class for settlement failures surfaced to callers."""

    reason = "settlement_error"


class ValidationError(SettlementError):
    """Malformed input rejected before any write."""

    reason = "validation_error"


class PreconditionFailed(SettlementError):
    """Entity is not in the state the operation requires; nothing was changed."""

    reason = "precondition_failed"


class GatewayFailure(SettlementError):
    """Payment gateway declined or errored."""

    reason = "gateway_failure"

    def __init__(self, message: str, *, detail: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.detail = dict(detail or {})


class TransientSweepError(SettlementError):
    """Unexpected failure while processing one batch candidate."""

    reason = "transient_error"

    def __init__(self, candidate_id: Any, cause: BaseException) -> None:
        super().__init__(f"candidate {candidate_id} failed: {cause}")
        self.candidate_id = candidate_id
        self.cause = cause
