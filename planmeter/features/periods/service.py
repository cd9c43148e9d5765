"""
planmeter/features/periods/service.py

Period arithmetic.

Calendar-naive by design of the billing terms: a month is 30 days and a year
is 365 days, regardless of the actual calendar. Leap days and month lengths
are not considered.
"""

from datetime import datetime, timedelta
from typing import Optional, Union

from planmeter.core.errors import InvalidPeriodUnitError
from planmeter.models.period import Period, ResetPeriod


MINUTES_PER_UNIT = {
    Period.MINUTE: 1,
    Period.HOUR: 60,
    Period.DAY: 60 * 24,
    Period.WEEK: 60 * 24 * 7,
    Period.MONTH: 60 * 24 * 30,
    Period.YEAR: 60 * 24 * 365,
}

MINUTES_PER_DAY = 60 * 24


def _parse_unit(unit: Union[Period, str]) -> Period:
    try:
        return Period(unit)
    except ValueError:
        raise InvalidPeriodUnitError(f"Invalid period unit: {unit!r}")


def to_minutes(count: int, unit: Union[Period, str]) -> int:
    """Length of `count` units in minutes."""
    return count * MINUTES_PER_UNIT[_parse_unit(unit)]


def to_days(count: int, unit: Union[Period, str]) -> int:
    """Length of `count` units in whole days (sub-day periods round down)."""
    return to_minutes(count, unit) // MINUTES_PER_DAY


def window_start(now: datetime, reset_period: ResetPeriod) -> datetime:
    """Start of the rolling usage window ending at `now`."""
    return now - timedelta(minutes=to_minutes(reset_period.count, reset_period.unit))


def period_end(start_at: Optional[datetime], reset_period: Optional[ResetPeriod]) -> Optional[datetime]:
    """End of a billing period starting at `start_at`; None when either is unset."""
    if start_at is None or reset_period is None:
        return None
    return start_at + timedelta(days=to_days(reset_period.count, reset_period.unit))
