"""
planmeter/features/usage/service.py

Usage ledger service.

Handles:
- Usage event recording (append-only, gross quantities)
- Usage queries over a rolling reset window
- Next-availability computation for metered features
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Union

from sqlalchemy import select, insert, func
from sqlalchemy.orm import Session

from planmeter.core.clock import ensure_utc, normalize_now
from planmeter.core.database import positive_quantity, session_scope, subscriptions, subscription_feature_usages
from planmeter.core.errors import NotConsumableError, SubscriptionNotFoundError
from planmeter.features.periods.service import to_minutes, window_start
from planmeter.features.plans.service import feature_allowance_by_id
from planmeter.models.period import ResetPeriod
from planmeter.models.plan_feature import PlanFeature
from planmeter.models.usage_event import UsageEvent


logger = logging.getLogger(__name__)


def _window_query(subscription_id: int, feature_id: int, reset_period: Optional[ResetPeriod], now: datetime):
    query = (
        select(subscription_feature_usages)
        .where(subscription_feature_usages.c.subscription_id == subscription_id)
        .where(subscription_feature_usages.c.feature_id == feature_id)
    )
    if reset_period is not None:
        query = query.where(subscription_feature_usages.c.created_at >= window_start(now, reset_period))
    return query


def record_usage(
    subscription_id: int,
    feature_id: int,
    amount: Union[Decimal, int, str],
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> UsageEvent:
    """
    Append a usage event.

    No allowance check happens here; EntitlementEngine.use does that under
    the feature lock before calling in.

    Raises:
        InvalidAmountError: amount <= 0 or finer than four decimal places
        SubscriptionNotFoundError: unknown subscription
        NotConsumableError: feature not in the subscription's plan version, or non-consumable
    """
    amount = positive_quantity(amount, "Usage amount")
    created_at = normalize_now(now)

    with session_scope(session) as s:
        plan_version_id = s.execute(
            select(subscriptions.c.plan_version_id).where(subscriptions.c.id == subscription_id)
        ).scalar()
        if plan_version_id is None:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")

        allowance = feature_allowance_by_id(plan_version_id, feature_id, session=s)
        if allowance is None or not allowance.feature.is_consumable:
            raise NotConsumableError(
                f"Feature {feature_id} is not a consumable feature of subscription {subscription_id}"
            )

        result = s.execute(
            insert(subscription_feature_usages).values(
                subscription_id=subscription_id,
                feature_id=feature_id,
                value=amount,
                created_at=created_at,
            )
        )
        event_id = result.inserted_primary_key[0]

    logger.debug(
        "[usage] recorded",
        extra={"subscription_id": subscription_id, "feature_id": feature_id, "amount": str(amount)},
    )
    return UsageEvent(
        id=event_id,
        subscription_id=subscription_id,
        feature_id=feature_id,
        value=amount,
        created_at=created_at,
    )


def usage_in_period(
    subscription_id: int,
    feature_id: int,
    reset_period: Optional[ResetPeriod],
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> List[UsageEvent]:
    """
    Usage events inside the current window, oldest first.

    With no reset period the window is the whole lifetime of the subscription.
    """
    now = normalize_now(now)
    query = _window_query(subscription_id, feature_id, reset_period, now).order_by(
        subscription_feature_usages.c.created_at,
        subscription_feature_usages.c.id,
    )
    with session_scope(session) as s:
        rows = s.execute(query).all()
        return [
            UsageEvent(
                id=row.id,
                subscription_id=row.subscription_id,
                feature_id=row.feature_id,
                value=Decimal(str(row.value)),
                created_at=ensure_utc(row.created_at),
            )
            for row in rows
        ]


def total_usage_in_period(
    subscription_id: int,
    feature_id: int,
    reset_period: Optional[ResetPeriod],
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Decimal:
    """Sum of usage inside the current window (0 when there is none)."""
    now = normalize_now(now)
    query = _window_query(subscription_id, feature_id, reset_period, now).with_only_columns(
        func.sum(subscription_feature_usages.c.value)
    )
    with session_scope(session) as s:
        total = s.execute(query).scalar()
    return Decimal(str(total or 0))


def next_available_at(
    subscription_id: int,
    plan_feature: PlanFeature,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Union[datetime, bool, None]:
    """
    When the oldest usage in the window drops out of it.

    Returns:
        None if the allowance is unlimited
        False if the allowance never resets
        now if nothing is in the window
        oldest_event.created_at + reset period otherwise
    """
    if plan_feature.is_unlimited:
        return None
    if plan_feature.reset_period is None:
        return False

    now = normalize_now(now)
    with session_scope(session) as s:
        oldest = s.execute(
            _window_query(subscription_id, plan_feature.feature.id, plan_feature.reset_period, now)
            .with_only_columns(func.min(subscription_feature_usages.c.created_at))
        ).scalar()

    if oldest is None:
        return now
    period = plan_feature.reset_period
    return ensure_utc(oldest) + timedelta(minutes=to_minutes(period.count, period.unit))
