"""
Budget period windows.

Computes calendar-aligned, half-open ``[start, end)`` windows so that
consecutive periods are contiguous and never overlap.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Tuple


class PeriodType(str, Enum):
    """Recurring windows over which a budget limit resets."""
    PER_REQUEST = "per_request"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def is_windowed(self) -> bool:
        return self is not PeriodType.PER_REQUEST


# Order in which budgets of a single scope are checked
PERIOD_PRECEDENCE = (
    PeriodType.PER_REQUEST,
    PeriodType.DAILY,
    PeriodType.WEEKLY,
    PeriodType.MONTHLY,
    PeriodType.YEARLY,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def period_bounds(
    period_type: PeriodType,
    now: datetime,
) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Return the window containing ``now`` for a period type.

    Windows are aligned to the start of the day, ISO week (Monday),
    month or year in ``now``'s timezone. Per-request budgets have no window.

    Args:
        period_type: Period to compute
        now: Reference instant

    Returns:
        (start, end) with ``start <= now < end``, or (None, None) for per-request
    """
    if period_type is PeriodType.PER_REQUEST:
        return None, None

    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

    if period_type is PeriodType.DAILY:
        return day_start, day_start + timedelta(days=1)

    if period_type is PeriodType.WEEKLY:
        start = day_start - timedelta(days=day_start.weekday())
        return start, start + timedelta(days=7)

    if period_type is PeriodType.MONTHLY:
        start = day_start.replace(day=1)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        return start, end

    if period_type is PeriodType.YEARLY:
        start = day_start.replace(month=1, day=1)
        return start, start.replace(year=start.year + 1)

    raise ValueError(f"Unknown period type: {period_type}")
