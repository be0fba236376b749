"""Time-based accrued cost for running and finished sessions."""

from __future__ import annotations

from datetime import datetime, timedelta
import math
from typing import Optional

from settlement.errors import ValidationError

POINTS_PER_HOUR = 1000
OVERTIME_POINTS_PER_MINUTE = 20


def planned_end(
    scheduled_at: Optional[datetime],
    started_at: Optional[datetime],
    duration_hours: int,
) -> datetime:
    """End of the booked window, anchored on the schedule when there is one."""
    anchor = scheduled_at if scheduled_at is not None else started_at
    if anchor is None:
        raise ValidationError("accrued cost needs scheduled_at or started_at")
    return anchor + timedelta(hours=duration_hours)


def overtime_minutes(planned: datetime, end: datetime) -> int:
    """Whole minutes past the plan; a started minute counts in full."""
    if end <= planned:
        return 0
    return math.ceil((end - planned).total_seconds() / 60)


def accrued_cost(
    scheduled_at: Optional[datetime],
    started_at: Optional[datetime],
    end: datetime,
    duration_hours: int,
) -> int:
    """Points owed for a session ending (or evaluated) at ``end``.

    The booked duration is always charged in full. Time past the planned end
    is charged per started minute.
    """
    if duration_hours < 0:
        raise ValidationError(f"duration_hours must be >= 0, got {duration_hours}")

    base_points = duration_hours * POINTS_PER_HOUR
    planned = planned_end(scheduled_at, started_at, duration_hours)
    return base_points + overtime_minutes(planned, end) * OVERTIME_POINTS_PER_MINUTE
