"""Unit tests for the cast payout transition table."""

from __future__ import annotations

import pytest

from backend.db.enums import CastPayoutStatus
from settlement.errors import PreconditionFailed
from settlement.payout_state import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    can_transition,
    is_terminal,
    require_transition,
)

S = CastPayoutStatus


def test_every_status_has_a_row() -> None:
    assert set(TRANSITIONS) == set(CastPayoutStatus)
    assert TERMINAL_STATUSES == frozenset({S.PAID, S.CANCELLED})


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (S.PENDING, S.SCHEDULED),
        (S.PENDING_APPROVAL, S.SCHEDULED),
        (S.PENDING_APPROVAL, S.FAILED),
        (S.SCHEDULED, S.PROCESSING),
        (S.PROCESSING, S.PAID),
        (S.PROCESSING, S.FAILED),
        (S.FAILED, S.PROCESSING),
        (S.FAILED, S.CANCELLED),
        (S.SCHEDULED, S.PAID),
    ],
)
def test_allowed_transitions(current: CastPayoutStatus, target: CastPayoutStatus) -> None:
    assert can_transition(current, target)
    require_transition(1, current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (S.PAID, S.PROCESSING),
        (S.CANCELLED, S.SCHEDULED),
        (S.PROCESSING, S.CANCELLED),
        (S.PENDING, S.PROCESSING),
        (S.SCHEDULED, S.FAILED),
    ],
)
def test_rejected_transitions(current: CastPayoutStatus, target: CastPayoutStatus) -> None:
    assert not can_transition(current, target)
    with pytest.raises(PreconditionFailed, match=f"from {current.value} to {target.value}"):
        require_transition(7, current, target)


def test_terminal_helper() -> None:
    assert is_terminal(S.PAID)
    assert is_terminal(S.CANCELLED)
    assert not is_terminal(S.FAILED)
