"""
planmeter/features/entitlements/service.py

Entitlement engine.

Handles:
- Remaining quantity per feature (plan allowance + extra credits - usage in window)
- can_use checks (active subscription, consumable, enough remaining)
- use: check, consume credits first, record gross usage, all under the feature lock
- Credit usage statistics and next-availability queries
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Union

from sqlalchemy.orm import Session

from planmeter.core.clock import normalize_now
from planmeter.core.database import positive_quantity, session_scope
from planmeter.core.errors import (
    CannotUseFeatureError,
    FeatureNotInPlanError,
    NotConsumableError,
)
from planmeter.core.locking import lock_feature
from planmeter.core.metrics import entitlement_denied_total, feature_usage_total
from planmeter.features.credits import service as credits_service
from planmeter.features.plans.service import feature_allowance
from planmeter.features.subscriptions.service import get_subscription
from planmeter.features.subscriptions.status import is_active
from planmeter.features.usage import service as usage_service
from planmeter.models.credit import CreditUsageStats, Quantity
from planmeter.models.feature import FeatureValue
from planmeter.models.plan_feature import PlanFeature
from planmeter.models.subscription import Subscription
from planmeter.models.usage_event import UsageEvent


logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


def _require_allowance(subscription: Subscription, feature_slug: str, session: Session) -> PlanFeature:
    plan_feature = feature_allowance(subscription.plan_version_id, feature_slug, session=session)
    if plan_feature is None:
        raise FeatureNotInPlanError(f"The feature '{feature_slug}' is not part of the plan")
    return plan_feature


def _deny(subscription: Subscription, feature_slug: str, reason: str, **context) -> bool:
    entitlement_denied_total.inc({"feature": feature_slug, "reason": reason})
    logger.warning(
        "[entitlements] DENIED",
        extra={"subscription_id": subscription.id, "feature": feature_slug, "reason": reason, **context},
    )
    return False


def has_feature(subscription: Subscription, feature_slug: str, *, session: Optional[Session] = None) -> bool:
    return feature_allowance(subscription.plan_version_id, feature_slug, session=session) is not None


def has_active_feature(
    subscription: Subscription,
    feature_slug: str,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> bool:
    return has_feature(subscription, feature_slug, session=session) and is_active(subscription, now)


def remaining(
    subscription: Subscription,
    feature_slug: str,
    include_credits: bool = True,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Quantity:
    """
    Quantity still available in the current window.

    The result can be negative when usage was recorded beyond the allowance
    (e.g. after credits expired); callers clamp for display.

    Raises:
        FeatureNotInPlanError: feature not attached to the subscription's version
        NotConsumableError: non-consumable feature, or an allowance with no value
    """
    now = normalize_now(now)
    with session_scope(session) as s:
        plan_feature = _require_allowance(subscription, feature_slug, s)
        if not plan_feature.feature.is_consumable or plan_feature.value is None:
            raise NotConsumableError(f"The feature '{feature_slug}' is not consumable")
        if plan_feature.is_unlimited:
            return FeatureValue.UNLIMITED

        used = usage_service.total_usage_in_period(
            subscription.id, plan_feature.feature.id, plan_feature.reset_period, now=now, session=s
        )
        credits = _ZERO
        if include_credits:
            credits = credits_service.active_balance(subscription.id, plan_feature.feature.id, now=now, session=s)
        return plan_feature.allowance + credits - used


def can_use(
    subscription: Subscription,
    feature_slug: str,
    amount: Union[Decimal, int, float, str],
    include_credits: bool = True,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> bool:
    """
    Whether `amount` of a feature can be used right now.

    Raises:
        InvalidAmountError: amount <= 0 or finer than four decimal places
        FeatureNotInPlanError: feature not attached to the subscription's version
    """
    amount = positive_quantity(amount)
    now = normalize_now(now)
    if not is_active(subscription, now):
        return _deny(subscription, feature_slug, "inactive")

    with session_scope(session) as s:
        plan_feature = _require_allowance(subscription, feature_slug, s)
        if not plan_feature.feature.is_consumable:
            return _deny(subscription, feature_slug, "non_consumable")

        left = remaining(subscription, feature_slug, include_credits, now=now, session=s)
        if left == FeatureValue.UNLIMITED:
            return True
        if left < amount:
            return _deny(
                subscription,
                feature_slug,
                "insufficient",
                requested=str(amount),
                remaining=str(left),
            )
        return True


def use(
    subscription: Subscription,
    feature_slug: str,
    amount: Union[Decimal, int, float, str],
    use_credits: bool = True,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> UsageEvent:
    """
    Use a feature: check, draw down credits, record usage.

    Everything happens in one transaction under the (subscription, feature)
    lock, so concurrent calls cannot both pass the check. When use_credits is
    set, active credits are consumed oldest-first before the allowance. The
    usage event always records the full amount.

    Raises:
        InvalidAmountError: amount <= 0 or finer than four decimal places
        FeatureNotInPlanError: feature not attached to the subscription's version
        CannotUseFeatureError: can_use returned False
        SubscriptionNotFoundError: subscription deleted
        ConcurrencyConflictError: lock unavailable
    """
    amount = positive_quantity(amount)
    now = normalize_now(now)

    with session_scope(session) as s:
        plan_feature = _require_allowance(subscription, feature_slug, s)
        lock_feature(s, subscription.id, plan_feature.feature.id)
        # Status checks run against the stored row, not the caller's copy
        current = get_subscription(subscription.id, session=s)

        if not can_use(current, feature_slug, amount, include_credits=use_credits, now=now, session=s):
            raise CannotUseFeatureError(f"The feature '{feature_slug}' cannot be used")

        uncovered = amount
        if use_credits:
            uncovered = credits_service.consume(
                subscription.id, plan_feature.feature.id, amount, feature_slug=feature_slug, now=now, session=s
            )

        event = usage_service.record_usage(subscription.id, plan_feature.feature.id, amount, now=now, session=s)

    feature_usage_total.inc({"feature": feature_slug}, float(amount))
    logger.info(
        "[entitlements] used",
        extra={
            "subscription_id": subscription.id,
            "feature": feature_slug,
            "amount": str(amount),
            "from_credits": str(amount - uncovered),
        },
    )
    return event


def credit_usage_stats(
    subscription: Subscription,
    feature_slug: str,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> CreditUsageStats:
    """
    Plan limit, credits, usage and remaining for one feature.

    Missing or non-consumable features report zeros; unlimited allowances
    report UNLIMITED for plan_limit, total_available and remaining.
    """
    now = normalize_now(now)
    with session_scope(session) as s:
        plan_feature = feature_allowance(subscription.plan_version_id, feature_slug, session=s)
        if plan_feature is None or not plan_feature.feature.is_consumable or plan_feature.value is None:
            return CreditUsageStats(
                plan_limit=_ZERO, extra_credits=_ZERO, total_available=_ZERO, used=_ZERO, remaining=_ZERO
            )

        feature_id = plan_feature.feature.id
        extra_credits = credits_service.active_balance(subscription.id, feature_id, now=now, session=s)
        used = usage_service.total_usage_in_period(
            subscription.id, feature_id, plan_feature.reset_period, now=now, session=s
        )

    if plan_feature.is_unlimited:
        return CreditUsageStats(
            plan_limit=FeatureValue.UNLIMITED,
            extra_credits=extra_credits,
            total_available=FeatureValue.UNLIMITED,
            used=used,
            remaining=FeatureValue.UNLIMITED,
        )

    total_available = plan_feature.allowance + extra_credits
    return CreditUsageStats(
        plan_limit=plan_feature.allowance,
        extra_credits=extra_credits,
        total_available=total_available,
        used=used,
        remaining=max(_ZERO, total_available - used),
    )


def feature_usage_in_period(
    subscription: Subscription,
    feature_slug: str,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> List[UsageEvent]:
    with session_scope(session) as s:
        plan_feature = _require_allowance(subscription, feature_slug, s)
        return usage_service.usage_in_period(
            subscription.id, plan_feature.feature.id, plan_feature.reset_period, now=now, session=s
        )


def total_usage_in_period(
    subscription: Subscription,
    feature_slug: str,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Decimal:
    with session_scope(session) as s:
        plan_feature = _require_allowance(subscription, feature_slug, s)
        return usage_service.total_usage_in_period(
            subscription.id, plan_feature.feature.id, plan_feature.reset_period, now=now, session=s
        )


def next_available_at(
    subscription: Subscription,
    feature_slug: str,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Union[datetime, bool, None]:
    """
    Next time usage frees up for a feature.

    Returns None for unlimited allowances, False for allowances that never
    reset, otherwise a timestamp (now when nothing is in the window).
    """
    with session_scope(session) as s:
        plan_feature = _require_allowance(subscription, feature_slug, s)
        return usage_service.next_available_at(subscription.id, plan_feature, now=now, session=s)


def next_available_across(
    subscriptions: Iterable[Subscription],
    feature_slug: str,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Union[datetime, bool, None]:
    """
    Earliest next-availability over several subscriptions.

    None if any of them is unlimited, False if there are none or none of them
    ever resets.
    """
    subscriptions = list(subscriptions)
    if not subscriptions:
        return False

    with session_scope(session) as s:
        results = [next_available_at(sub, feature_slug, now=now, session=s) for sub in subscriptions]

    if any(result is None for result in results):
        return None
    timestamps = [result for result in results if isinstance(result, datetime)]
    return min(timestamps) if timestamps else False
