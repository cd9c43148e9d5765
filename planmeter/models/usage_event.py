"""
planmeter/models/usage_event.py

UsageEvent model: one consumption of a metered feature.
"""

from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict


class UsageEvent(BaseModel):
    """
    UsageEvent records gross consumption.

    The value is what was used, regardless of whether extra credits or the
    plan allowance funded it. Events are never updated.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    subscription_id: int
    feature_id: int
    value: Decimal
    created_at: datetime
