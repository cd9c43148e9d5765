"""
planmeter/models/credit.py

Credit models: bonus quantities granted on top of a plan allowance.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Union
from pydantic import BaseModel, ConfigDict

from planmeter.models.feature import FeatureValue
from planmeter.models.subscription import SubscriberRef


class Credit(BaseModel):
    """
    Credit is an independently expiring grant for one feature.

    The credits balance shrinks as it is consumed and the row disappears at
    zero. granted_by identifies who granted it (an admin, a promotion...).
    """
    model_config = ConfigDict(frozen=True)

    id: int
    subscription_id: int
    feature_id: int
    credits: Decimal
    reason: Optional[str] = None
    granted_by: Optional[SubscriberRef] = None
    expires_at: Optional[datetime] = None
    created_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def days_until_expiration(self, now: datetime) -> Optional[int]:
        if self.expires_at is None:
            return None
        return max(0, (self.expires_at - now).days)


Quantity = Union[Decimal, FeatureValue]


class CreditUsageStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan_limit: Quantity
    extra_credits: Decimal
    total_available: Quantity
    used: Decimal
    remaining: Quantity
