from __future__ import annotations

from settlement.gateway_simulator import SimulatedPaymentGateway


def test_references_are_deterministic_per_call_sequence() -> None:
    first = SimulatedPaymentGateway()
    second = SimulatedPaymentGateway()

    a = first.transfer("acct_1", 11400)
    b = second.transfer("acct_1", 11400)
    c = first.payout("acct_1", 11400)

    assert a.success and b.success and c.success
    assert a.provider_reference == b.provider_reference
    assert a.provider_reference.startswith("tr_") and len(a.provider_reference) == 27
    assert c.provider_reference.startswith("po_")
    assert first.transfer("acct_1", 11400).provider_reference != a.provider_reference


def test_declines_are_returned_not_raised() -> None:
    gateway = SimulatedPaymentGateway(declined_accounts=frozenset({"acct_bad"}))

    declined = gateway.transfer("acct_bad", 100)
    zero = gateway.payout("acct_ok", 0)
    capture = gateway.capture("pi_missing")

    assert (declined.success, declined.error) == (False, "account acct_bad declined")
    assert (zero.success, zero.error) == (False, "amount must be positive")
    assert capture.success is False and capture.amount_yen == 0
    assert [call[0] for call in gateway.calls] == ["transfer", "payout", "capture"]


def test_declined_operations_apply_to_every_account() -> None:
    gateway = SimulatedPaymentGateway(declined_operations=frozenset({"payout"}))

    transfer = gateway.transfer("acct_1", 500)
    payout = gateway.payout("acct_1", 500)

    assert transfer.success and transfer.provider_reference.startswith("tr_")
    assert (payout.success, payout.error, payout.provider_reference) == (False, "payout declined", None)
