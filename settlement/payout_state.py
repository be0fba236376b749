"""Cast payout status transitions."""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from backend.db.enums import CastPayoutStatus
from settlement.errors import PreconditionFailed

S = CastPayoutStatus

TRANSITIONS: Mapping[CastPayoutStatus, frozenset[CastPayoutStatus]] = MappingProxyType(
    {
        S.PENDING: frozenset({S.SCHEDULED, S.CANCELLED, S.PAID}),
        S.PENDING_APPROVAL: frozenset({S.SCHEDULED, S.CANCELLED, S.FAILED, S.PAID}),
        S.SCHEDULED: frozenset({S.PROCESSING, S.CANCELLED, S.PAID}),
        S.PROCESSING: frozenset({S.PAID, S.FAILED}),
        S.FAILED: frozenset({S.PROCESSING, S.CANCELLED, S.PAID}),
        S.PAID: frozenset(),
        S.CANCELLED: frozenset(),
    }
)

TERMINAL_STATUSES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)

# Statuses whose tagged transactions go back to the unaggregated pool.
RELEASING_STATUSES = frozenset({S.CANCELLED})


def can_transition(current: CastPayoutStatus, target: CastPayoutStatus) -> bool:
    return target in TRANSITIONS[current]


def require_transition(payout_id: int, current: CastPayoutStatus, target: CastPayoutStatus) -> None:
    """Raise PreconditionFailed unless ``current -> target`` is allowed."""
    if not can_transition(current, target):
        raise PreconditionFailed(
            f"payout {payout_id} cannot move from {current.value} to {target.value}"
        )


def is_terminal(status: CastPayoutStatus) -> bool:
    return status in TERMINAL_STATUSES
