"""Deterministic in-process payment gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from settlement.common import stable_hash
from settlement.payment_gateway import CaptureResult, GatewayResult


@dataclass
class SimulatedPaymentGateway:
    """Gateway double with hash-derived provider references.

    ``authorized_intents`` maps intent ids to the amount that can be captured.
    Accounts listed in ``declined_accounts`` have every transfer declined;
    operations listed in ``declined_operations`` (``"transfer"``, ``"payout"``)
    are declined for every account.
    """

    authorized_intents: Mapping[str, int] = field(default_factory=dict)
    declined_accounts: frozenset[str] = frozenset()
    declined_operations: frozenset[str] = frozenset()
    calls: list[tuple[str, str, int]] = field(default_factory=list)

    def capture(self, intent_id: str) -> CaptureResult:
        self.calls.append(("capture", intent_id, 0))
        amount = self.authorized_intents.get(intent_id)
        if amount is None:
            return CaptureResult(success=False, error=f"intent {intent_id} is not authorized")
        return CaptureResult(
            success=True,
            amount_yen=amount,
            provider_reference="ch_" + stable_hash(("capture", intent_id, amount))[:24],
        )

    def transfer(self, account_id: str, amount_yen: int) -> GatewayResult:
        self.calls.append(("transfer", account_id, amount_yen))
        return self._move("transfer", "tr", account_id, amount_yen)

    def payout(self, account_id: str, amount_yen: int) -> GatewayResult:
        self.calls.append(("payout", account_id, amount_yen))
        return self._move("payout", "po", account_id, amount_yen)

    def _move(self, operation: str, prefix: str, account_id: str, amount_yen: int) -> GatewayResult:
        if operation in self.declined_operations:
            return GatewayResult(success=False, error=f"{operation} declined")
        if account_id in self.declined_accounts:
            return GatewayResult(success=False, error=f"account {account_id} declined")
        if amount_yen <= 0:
            return GatewayResult(success=False, error="amount must be positive")
        sequence = sum(1 for call in self.calls if call[1] == account_id)
        reference = f"{prefix}_" + stable_hash((prefix, account_id, amount_yen, sequence))[:24]
        return GatewayResult(success=True, provider_reference=reference)
