from __future__ import annotations

from decimal import Decimal

import pytest

from backend.db.enums import PointTransactionType as T
from settlement.errors import GatewayFailure, ValidationError
from settlement.funding import capture_point_purchase, points_for_yen
from settlement.gateway_simulator import SimulatedPaymentGateway
from tests.utils.memory_repository import MemorySettlementRepository


def test_points_for_yen_floors() -> None:
    assert points_for_yen(12000, Decimal("1.2")) == 10000
    assert points_for_yen(1001, Decimal("1.2")) == 834
    assert points_for_yen(1, Decimal("1.2")) == 0


def test_capture_credits_a_buy_transaction(repo: MemorySettlementRepository) -> None:
    guest = repo.add_guest()
    gateway = SimulatedPaymentGateway(authorized_intents={"pi_1": 12000})

    transaction_id = capture_point_purchase(repo, gateway, guest_id=guest, intent_id="pi_1", payment_id="pay_1")

    row = repo.get_transaction(transaction_id)
    assert row.type is T.BUY
    assert row.amount == 10000
    assert row.payment_id == "pay_1"
    assert repo.get_guest(guest).points == 10000
    assert gateway.calls == [("capture", "pi_1", 0)]


def test_capture_uses_provider_reference_when_no_payment_id(repo: MemorySettlementRepository) -> None:
    guest = repo.add_guest()
    gateway = SimulatedPaymentGateway(authorized_intents={"pi_2": 600})

    transaction_id = capture_point_purchase(repo, gateway, guest_id=guest, intent_id="pi_2")

    assert repo.get_transaction(transaction_id).payment_id.startswith("ch_")


def test_declined_or_worthless_capture_writes_nothing(repo: MemorySettlementRepository) -> None:
    guest = repo.add_guest()
    gateway = SimulatedPaymentGateway(authorized_intents={"pi_tiny": 1})

    with pytest.raises(GatewayFailure, match="not authorized"):
        capture_point_purchase(repo, gateway, guest_id=guest, intent_id="pi_unknown")
    with pytest.raises(ValidationError, match="buys no points"):
        capture_point_purchase(repo, gateway, guest_id=guest, intent_id="pi_tiny")
    with pytest.raises(ValidationError, match="unknown guest_id"):
        capture_point_purchase(repo, gateway, guest_id=999, intent_id="pi_tiny")

    assert repo.transactions == {}
    assert repo.get_guest(guest).points == 0
