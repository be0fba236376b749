"""Payment gateway contract used for purchases and cast payouts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass(frozen=True)
class GatewayResult:
    """Outcome of a transfer or payout call."""

    success: bool
    provider_reference: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class CaptureResult:
    """Outcome of capturing an authorized payment intent."""

    success: bool
    amount_yen: int = 0
    provider_reference: Optional[str] = None
    error: Optional[str] = None


class PaymentGateway(Protocol):
    """Business declines come back as ``success=False``; only transport faults raise."""

    def capture(self, intent_id: str) -> CaptureResult:
        """Capture an authorized payment intent."""

    def transfer(self, account_id: str, amount_yen: int) -> GatewayResult:
        """Move funds to a connected payout account."""

    def payout(self, account_id: str, amount_yen: int) -> GatewayResult:
        """Pay out a connected account's balance to its bank."""
