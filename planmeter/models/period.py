"""
planmeter/models/period.py

Period units and the (count, unit) reset period descriptor.
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class Period(str, Enum):
    YEAR = "year"
    MONTH = "month"
    WEEK = "week"
    DAY = "day"
    HOUR = "hour"
    MINUTE = "minute"


class ResetPeriod(BaseModel):
    """
    A window length such as "1 month" or "12 hours".

    Used both for plan billing periods (subscription end dates) and for
    per-feature usage windows.
    """
    model_config = ConfigDict(frozen=True)

    count: int = Field(gt=0)
    unit: Period

    @classmethod
    def from_columns(cls, count: Optional[int], unit: Optional[str]) -> Optional["ResetPeriod"]:
        """Build from a (reset_period, reset_period_type) column pair; None if either is unset."""
        if count is None or unit is None:
            return None
        return cls(count=count, unit=Period(unit))
