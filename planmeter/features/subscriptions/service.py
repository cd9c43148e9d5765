"""
planmeter/features/subscriptions/service.py

Subscription lifecycle service.

Handles:
- Subscribing a subscriber to a plan version (or a plan's current version)
- Transitions: activate, cancel, resume, renew, extend
- Transition event log
- Subscriber queries (active, subscribed, due for renewal)
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, insert, update, and_, or_, exists
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from planmeter.core.clock import ensure_utc, normalize_now
from planmeter.core.database import session_scope, subscriptions, subscription_events, plan_versions
from planmeter.core.errors import (
    AlreadyRenewedError,
    InvalidAmountError,
    InvalidStateError,
    NoActiveSubscriptionError,
    NothingToExtendError,
    PlanNotFoundError,
    SubscriptionNotFoundError,
)
from planmeter.core.locking import lock_subscription
from planmeter.core.metrics import subscription_transitions_total
from planmeter.features.periods.service import period_end
from planmeter.features.plans.service import current_version, get_plan_by_slug, get_plan_version
from planmeter.features.subscriptions.status import is_active, is_pending
from planmeter.models.subscription import Subscription, SubscriberRef, SubscriptionEvent


logger = logging.getLogger(__name__)

# Event types
SUBSCRIBED = "subscribed"
ACTIVATED = "activated"
CANCELLED = "cancelled"
RESUMED = "resumed"
RENEWED = "renewed"
EXTENDED = "extended"


def _row_to_subscription(row) -> Subscription:
    return Subscription(
        id=row.id,
        plan_version_id=row.plan_version_id,
        subscriber=SubscriberRef(type=row.subscriber_type, id=row.subscriber_id),
        start_at=ensure_utc(row.start_at),
        end_at=ensure_utc(row.end_at),
        cancelled_at=ensure_utc(row.cancelled_at),
        renewed_from_id=row.renewed_from_id,
        created_at=ensure_utc(row.created_at),
    )


def _record_event(s: Session, subscription_id: int, event_type: str, now: datetime) -> None:
    s.execute(
        insert(subscription_events).values(
            subscription_id=subscription_id,
            event_type=event_type,
            created_at=now,
        )
    )
    subscription_transitions_total.inc({"transition": event_type})


def _locked_row(s: Session, subscription_id: int):
    row = lock_subscription(s, subscription_id)
    if row is None:
        raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
    return row


def _billing_period(s: Session, plan_version_id: int):
    version = get_plan_version(plan_version_id, session=s)
    return version.reset_period if version else None


def _active_clause(now: datetime):
    return and_(
        subscriptions.c.start_at.is_not(None),
        subscriptions.c.start_at <= now,
        or_(subscriptions.c.end_at.is_(None), subscriptions.c.end_at >= now),
        subscriptions.c.cancelled_at.is_(None),
        subscriptions.c.deleted_at.is_(None),
    )


def _subscriber_clause(subscriber: SubscriberRef):
    return and_(
        subscriptions.c.subscriber_type == subscriber.type,
        subscriptions.c.subscriber_id == subscriber.id,
        subscriptions.c.deleted_at.is_(None),
    )


def get_subscription(subscription_id: int, *, session: Optional[Session] = None) -> Subscription:
    with session_scope(session) as s:
        row = s.execute(
            select(subscriptions)
            .where(subscriptions.c.id == subscription_id)
            .where(subscriptions.c.deleted_at.is_(None))
        ).first()
        if row is None:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        return _row_to_subscription(row)


def subscribe(
    subscriber: SubscriberRef,
    plan_version_id: int,
    *,
    start_at: Optional[datetime] = None,
    end_at: Optional[datetime] = None,
    pending: bool = False,
    renewed_from_id: Optional[int] = None,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Subscription:
    """
    Subscribe to a plan version.

    Pending subscriptions have no start date until activated. Otherwise the
    subscription starts at start_at (default now) and, when no end_at is
    given, ends one billing period later (unbounded for versions without a
    billing period).

    Raises:
        PlanNotFoundError: unknown plan version
        AlreadyRenewedError: renewed_from_id already has a renewal
    """
    now = normalize_now(now)
    start = None if pending else ensure_utc(start_at) or now
    end = ensure_utc(end_at)

    with session_scope(session) as s:
        version = get_plan_version(plan_version_id, session=s)
        if version is None:
            raise PlanNotFoundError(f"Plan version {plan_version_id} not found")
        if start is not None and end is None:
            end = period_end(start, version.reset_period)

        try:
            # Savepoint keeps a caller's transaction usable after a renewal race
            with s.begin_nested():
                result = s.execute(
                    insert(subscriptions).values(
                        plan_version_id=plan_version_id,
                        subscriber_type=subscriber.type,
                        subscriber_id=subscriber.id,
                        start_at=start,
                        end_at=end,
                        renewed_from_id=renewed_from_id,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError as exc:
            if renewed_from_id is None:
                raise
            raise AlreadyRenewedError(f"Subscription {renewed_from_id} has already been renewed") from exc
        subscription_id = result.inserted_primary_key[0]
        _record_event(s, subscription_id, SUBSCRIBED, now)

    logger.info(
        "[subscriptions] subscribed",
        extra={
            "subscription_id": subscription_id,
            "subscriber_type": subscriber.type,
            "subscriber_id": subscriber.id,
            "plan_version_id": plan_version_id,
            "pending": pending,
        },
    )
    return Subscription(
        id=subscription_id,
        plan_version_id=plan_version_id,
        subscriber=subscriber,
        start_at=start,
        end_at=end,
        renewed_from_id=renewed_from_id,
        created_at=now,
    )


def subscribe_to_plan(
    subscriber: SubscriberRef,
    plan_slug: str,
    *,
    start_at: Optional[datetime] = None,
    end_at: Optional[datetime] = None,
    pending: bool = False,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Subscription:
    """Subscribe to the current version of a plan."""
    with session_scope(session) as s:
        plan = get_plan_by_slug(plan_slug, session=s)
        if plan is None:
            raise PlanNotFoundError(f"Plan '{plan_slug}' not found")
        version = current_version(plan.id, session=s)
        if version is None:
            raise PlanNotFoundError(f"Plan '{plan_slug}' has no published version")
        return subscribe(
            subscriber,
            version.id,
            start_at=start_at,
            end_at=end_at,
            pending=pending,
            now=now,
            session=s,
        )


def activate(
    subscription_id: int,
    start_at: Optional[datetime] = None,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Subscription:
    """
    Start a pending subscription.

    Raises:
        SubscriptionNotFoundError: unknown subscription
        InvalidStateError: subscription already started
    """
    now = normalize_now(now)
    with session_scope(session) as s:
        row = _locked_row(s, subscription_id)
        if row.start_at is not None:
            raise InvalidStateError(f"Subscription {subscription_id} is not pending")
        start = ensure_utc(start_at) or now
        end = ensure_utc(row.end_at) or period_end(start, _billing_period(s, row.plan_version_id))
        s.execute(
            update(subscriptions)
            .where(subscriptions.c.id == subscription_id)
            .values(start_at=start, end_at=end, updated_at=now)
        )
        _record_event(s, subscription_id, ACTIVATED, now)
        subscription = get_subscription(subscription_id, session=s)

    logger.info("[subscriptions] activated", extra={"subscription_id": subscription_id})
    return subscription


def cancel(
    subscription_id: int,
    immediately: bool = False,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Subscription:
    """
    Cancel a subscription.

    cancelled_at is set to now. The subscription also ends now when cancelled
    immediately or when it had no end date; otherwise it runs until end_at.
    """
    now = normalize_now(now)
    with session_scope(session) as s:
        row = _locked_row(s, subscription_id)
        values = {"cancelled_at": now, "updated_at": now}
        if immediately or row.end_at is None:
            values["end_at"] = now
        s.execute(update(subscriptions).where(subscriptions.c.id == subscription_id).values(**values))
        _record_event(s, subscription_id, CANCELLED, now)
        subscription = get_subscription(subscription_id, session=s)

    logger.info(
        "[subscriptions] cancelled",
        extra={"subscription_id": subscription_id, "immediately": immediately},
    )
    return subscription


def resume(
    subscription_id: int,
    start_at: Optional[datetime] = None,
    end_at: Optional[datetime] = None,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Subscription:
    """
    Undo a cancellation.

    Clears cancelled_at, starts the subscription if it never started, and
    sets end_at to the given value or one billing period after start.
    """
    now = normalize_now(now)
    with session_scope(session) as s:
        row = _locked_row(s, subscription_id)
        start = ensure_utc(row.start_at) or ensure_utc(start_at) or now
        end = ensure_utc(end_at) or period_end(start, _billing_period(s, row.plan_version_id))
        s.execute(
            update(subscriptions)
            .where(subscriptions.c.id == subscription_id)
            .values(cancelled_at=None, start_at=start, end_at=end, updated_at=now)
        )
        _record_event(s, subscription_id, RESUMED, now)
        subscription = get_subscription(subscription_id, session=s)

    logger.info("[subscriptions] resumed", extra={"subscription_id": subscription_id})
    return subscription


def renew(
    subscription_id: int,
    start_at: Optional[datetime] = None,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Subscription:
    """
    Create the follow-up subscription for the same subscriber and version.

    The renewal starts at start_at, else when the source ends, else now.
    A subscription can be renewed once.

    Raises:
        SubscriptionNotFoundError: unknown subscription
        AlreadyRenewedError: a renewal already exists
    """
    now = normalize_now(now)
    with session_scope(session) as s:
        row = _locked_row(s, subscription_id)
        already = s.execute(
            select(subscriptions.c.id).where(subscriptions.c.renewed_from_id == subscription_id)
        ).first()
        if already is not None:
            raise AlreadyRenewedError(f"Subscription {subscription_id} has already been renewed")

        start = ensure_utc(start_at) or ensure_utc(row.end_at) or now
        renewal = subscribe(
            SubscriberRef(type=row.subscriber_type, id=row.subscriber_id),
            row.plan_version_id,
            start_at=start,
            renewed_from_id=subscription_id,
            now=now,
            session=s,
        )
        _record_event(s, renewal.id, RENEWED, now)

    logger.info(
        "[subscriptions] renewed",
        extra={"subscription_id": subscription_id, "renewal_id": renewal.id},
    )
    return renewal


def extend(
    subscription_id: int,
    days: int,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Subscription:
    """
    Push end_at out by `days`.

    Raises:
        InvalidAmountError: days <= 0
        NothingToExtendError: subscription has no end date
    """
    if days <= 0:
        raise InvalidAmountError(f"Days must be greater than 0, got {days}")
    now = normalize_now(now)
    with session_scope(session) as s:
        row = _locked_row(s, subscription_id)
        if row.end_at is None:
            raise NothingToExtendError(f"Subscription {subscription_id} has no end date to extend")
        s.execute(
            update(subscriptions)
            .where(subscriptions.c.id == subscription_id)
            .values(end_at=ensure_utc(row.end_at) + timedelta(days=days), updated_at=now)
        )
        _record_event(s, subscription_id, EXTENDED, now)
        subscription = get_subscription(subscription_id, session=s)

    logger.info("[subscriptions] extended", extra={"subscription_id": subscription_id, "days": days})
    return subscription


def list_subscription_events(subscription_id: int, *, session: Optional[Session] = None) -> List[SubscriptionEvent]:
    with session_scope(session) as s:
        rows = s.execute(
            select(subscription_events)
            .where(subscription_events.c.subscription_id == subscription_id)
            .order_by(subscription_events.c.created_at, subscription_events.c.id)
        ).all()
        return [
            SubscriptionEvent(
                subscription_id=row.subscription_id,
                event_type=row.event_type,
                created_at=ensure_utc(row.created_at),
            )
            for row in rows
        ]


def list_subscriptions(subscriber: SubscriberRef, *, session: Optional[Session] = None) -> List[Subscription]:
    with session_scope(session) as s:
        rows = s.execute(
            select(subscriptions)
            .where(_subscriber_clause(subscriber))
            .order_by(subscriptions.c.created_at, subscriptions.c.id)
        ).all()
        return [_row_to_subscription(row) for row in rows]


def active_subscriptions(
    subscriber: SubscriberRef,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> List[Subscription]:
    """Active subscriptions of a subscriber, most recently started first."""
    now = normalize_now(now)
    with session_scope(session) as s:
        rows = s.execute(
            select(subscriptions)
            .where(_subscriber_clause(subscriber))
            .where(_active_clause(now))
            .order_by(subscriptions.c.start_at.desc(), subscriptions.c.id.desc())
        ).all()
        return [_row_to_subscription(row) for row in rows]


def require_active_subscription(
    subscriber: SubscriberRef,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Subscription:
    active = active_subscriptions(subscriber, now=now, session=session)
    if not active:
        raise NoActiveSubscriptionError("No active subscription found")
    return active[0]


def subscribed(
    subscriber: SubscriberRef,
    plan_slug: str,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> bool:
    """Whether the subscriber has an active or pending subscription to any version of the plan."""
    now = normalize_now(now)
    with session_scope(session) as s:
        plan = get_plan_by_slug(plan_slug, session=s)
        if plan is None:
            return False
        rows = s.execute(
            select(subscriptions)
            .select_from(subscriptions.join(plan_versions, subscriptions.c.plan_version_id == plan_versions.c.id))
            .where(_subscriber_clause(subscriber))
            .where(plan_versions.c.plan_id == plan.id)
        ).all()
    return any(
        is_active(sub, now) or is_pending(sub, now)
        for sub in (_row_to_subscription(row) for row in rows)
    )


def due_for_renewal(
    within_days: int,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> List[Subscription]:
    """Active, not yet renewed subscriptions ending within the next `within_days` days."""
    now = normalize_now(now)
    horizon = now + timedelta(days=within_days)
    renewals = subscriptions.alias("renewals")
    with session_scope(session) as s:
        rows = s.execute(
            select(subscriptions)
            .where(_active_clause(now))
            .where(subscriptions.c.end_at.is_not(None))
            .where(subscriptions.c.end_at <= horizon)
            .where(~exists().where(renewals.c.renewed_from_id == subscriptions.c.id))
            .order_by(subscriptions.c.end_at, subscriptions.c.id)
        ).all()
        return [_row_to_subscription(row) for row in rows]
