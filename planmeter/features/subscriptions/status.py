"""
planmeter/features/subscriptions/status.py

Derived subscription status.

Pure functions of (start_at, end_at, cancelled_at, now). Nothing here reads
or writes the database, so the same subscription and the same `now` always
yield the same status.
"""

from datetime import datetime
from typing import Optional

from planmeter.core.clock import normalize_now
from planmeter.models.subscription import Subscription, SubscriptionStatus


def is_cancelled(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    return subscription.cancelled_at is not None


def is_pending(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    return subscription.start_at is None and not is_cancelled(subscription)


def is_expired(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    now = normalize_now(now)
    return subscription.end_at is not None and subscription.end_at < now


def is_future(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    now = normalize_now(now)
    return subscription.start_at is not None and subscription.start_at > now


def is_active(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    """Started, inside its window and not cancelled."""
    now = normalize_now(now)
    if subscription.start_at is None or subscription.start_at > now:
        return False
    if subscription.end_at is not None and subscription.end_at < now:
        return False
    return not is_cancelled(subscription)


def subscription_status(subscription: Subscription, now: Optional[datetime] = None) -> SubscriptionStatus:
    """
    Collapse the flags into one status.

    Precedence: cancelled, expired, pending, future, active.
    """
    now = normalize_now(now)
    if is_cancelled(subscription, now):
        return SubscriptionStatus.CANCELLED
    if is_expired(subscription, now):
        return SubscriptionStatus.EXPIRED
    if is_pending(subscription, now):
        return SubscriptionStatus.PENDING
    if is_future(subscription, now):
        return SubscriptionStatus.FUTURE
    return SubscriptionStatus.ACTIVE
