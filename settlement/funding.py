"""Captured point purchases credited to guests."""

from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal
import logging

from backend.db.enums import PointTransactionType
from settlement.batch_runner import unit_of_work
from settlement.common import SettlementClock
from settlement.errors import GatewayFailure, ValidationError
from settlement.ledger import PointLedger
from settlement.payment_gateway import PaymentGateway
from settlement.records import NewPointTransaction
from settlement.repository import SettlementRepository
from settlement.settlement_config import SettlementConfig

logger = logging.getLogger(__name__)


def points_for_yen(amount_yen: int, yen_per_point: Decimal) -> int:
    return int((Decimal(amount_yen) / yen_per_point).to_integral_value(rounding=ROUND_FLOOR))


def capture_point_purchase(
    repository: SettlementRepository,
    gateway: PaymentGateway,
    *,
    guest_id: int,
    intent_id: str,
    payment_id: str | None = None,
    config: SettlementConfig | None = None,
    clock: SettlementClock | None = None,
) -> int:
    """Capture an authorized intent and append the matching ``buy`` row.

    Returns the new transaction id. A declined capture raises GatewayFailure
    and writes nothing.
    """
    cfg = config or SettlementConfig()
    ledger = PointLedger(repository, clock)
    if repository.get_guest(guest_id) is None:
        raise ValidationError(f"unknown guest_id {guest_id}")

    result = gateway.capture(intent_id)
    if not result.success:
        raise GatewayFailure(
            f"capture of {intent_id} failed: {result.error or 'declined'}",
            detail={"intent_id": intent_id, "error": result.error},
        )

    points = points_for_yen(result.amount_yen, cfg.yen_per_point)
    if points <= 0:
        raise ValidationError(f"captured {result.amount_yen} yen buys no points")

    with unit_of_work(repository):
        transaction_id = ledger.append(
            NewPointTransaction(
                type=PointTransactionType.BUY,
                amount=points,
                guest_id=guest_id,
                payment_id=payment_id or result.provider_reference,
                description=f"Point purchase ({result.amount_yen} yen)",
            )
        )
    logger.info("Guest %s bought %s points via %s", guest_id, points, intent_id)
    return transaction_id
