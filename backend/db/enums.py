"""PostgreSQL native enum contracts for the point ledger schema."""

from __future__ import annotations

import enum
import logging

from sqlalchemy.dialects.postgresql import ENUM as PGEnum

logger = logging.getLogger(__name__)


class PointTransactionType(str, enum.Enum):
    """Kind of point movement recorded in the ledger."""

    BUY = "buy"
    TRANSFER = "transfer"
    CONVERT = "convert"
    GIFT = "gift"
    PENDING = "pending"
    EXCEEDED_PENDING = "exceeded_pending"
    REFUND = "refund"


class CastPayoutStatus(str, enum.Enum):
    """Lifecycle status of a cast payout batch."""

    PENDING = "pending"
    PENDING_APPROVAL = "pending_approval"
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CastPayoutType(str, enum.Enum):
    """Scheduled month-end batch or cast-requested instant payout."""

    SCHEDULED = "scheduled"
    INSTANT = "instant"


class GuestGrade(str, enum.Enum):
    """Guest tier, ordered from lowest to highest."""

    GREEN = "green"
    ORANGE = "orange"
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"
    CENTURION = "centurion"


class CastGrade(str, enum.Enum):
    """Cast tier, ordered from lowest to highest."""

    BEGINNER = "beginner"
    GREEN = "green"
    ORANGE = "orange"
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


point_transaction_type_enum = PGEnum(
    PointTransactionType,
    name="point_transaction_type_enum",
    values_callable=lambda members: [member.value for member in members],
)
cast_payout_status_enum = PGEnum(
    CastPayoutStatus,
    name="cast_payout_status_enum",
    values_callable=lambda members: [member.value for member in members],
)
cast_payout_type_enum = PGEnum(
    CastPayoutType,
    name="cast_payout_type_enum",
    values_callable=lambda members: [member.value for member in members],
)
guest_grade_enum = PGEnum(
    GuestGrade,
    name="guest_grade_enum",
    values_callable=lambda members: [member.value for member in members],
)
cast_grade_enum = PGEnum(
    CastGrade,
    name="cast_grade_enum",
    values_callable=lambda members: [member.value for member in members],
)
