"""
planmeter/models/subscription.py

Subscription model and the typed subscriber reference.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class SubscriberRef(BaseModel):
    """
    Identity of whatever owns a subscription (a user, a team, an org...).

    The engine never needs the owner's behaviour, only a stable key to join on.
    """
    model_config = ConfigDict(frozen=True)

    type: str
    id: str


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    FUTURE = "future"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Subscription(BaseModel):
    """
    Subscription of a subscriber to one plan version.

    Status is not stored: it is derived from (start_at, end_at, cancelled_at)
    against the current time, see features/subscriptions/status.py.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    plan_version_id: int
    subscriber: SubscriberRef
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    renewed_from_id: Optional[int] = None
    created_at: datetime


class SubscriptionEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    subscription_id: int
    event_type: str
    created_at: datetime
