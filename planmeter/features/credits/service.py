"""
planmeter/features/credits/service.py

Extra credit ledger.

Handles:
- Credit grants per (subscription, feature)
- Active balance (non-expired rows)
- FIFO consumption under the feature lock
- Expired credit purge (batched)
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Union

from sqlalchemy import select, insert, update, delete, func, or_
from sqlalchemy.orm import Session

from planmeter.core.clock import ensure_utc, normalize_now
from planmeter.core.database import session_scope, get_db_session, positive_quantity, subscription_feature_credits
from planmeter.core.errors import NotConsumableError, ValidationError
from planmeter.core.locking import lock_feature
from planmeter.core.metrics import credits_granted_total, credits_consumed_total, credits_purged_total
from planmeter.features.plans.service import require_feature
from planmeter.models.credit import Credit
from planmeter.models.subscription import SubscriberRef


logger = logging.getLogger(__name__)


def _active_filter(now: datetime):
    return or_(
        subscription_feature_credits.c.expires_at.is_(None),
        subscription_feature_credits.c.expires_at > now,
    )


def _row_to_credit(row) -> Credit:
    granted_by = None
    if row.granted_by_type is not None and row.granted_by_id is not None:
        granted_by = SubscriberRef(type=row.granted_by_type, id=row.granted_by_id)
    return Credit(
        id=row.id,
        subscription_id=row.subscription_id,
        feature_id=row.feature_id,
        credits=Decimal(str(row.credits)),
        reason=row.reason,
        granted_by=granted_by,
        expires_at=ensure_utc(row.expires_at),
        created_at=ensure_utc(row.created_at),
    )


def grant(
    subscription_id: int,
    feature_slug: str,
    credits: Union[Decimal, int, str],
    *,
    reason: Optional[str] = None,
    granted_by: Optional[SubscriberRef] = None,
    expires_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Credit:
    """
    Grant extra credits for a consumable feature.

    Raises:
        InvalidAmountError: credits <= 0 or finer than four decimal places
        FeatureNotFoundError: unknown feature slug
        NotConsumableError: feature is non-consumable
    """
    credits = positive_quantity(credits, "Credits")
    created_at = normalize_now(now)

    with session_scope(session) as s:
        feature = require_feature(feature_slug, session=s)
        if not feature.is_consumable:
            raise NotConsumableError(f"Feature '{feature_slug}' is not consumable")
        result = s.execute(
            insert(subscription_feature_credits).values(
                subscription_id=subscription_id,
                feature_id=feature.id,
                credits=credits,
                reason=reason,
                granted_by_type=granted_by.type if granted_by else None,
                granted_by_id=granted_by.id if granted_by else None,
                expires_at=ensure_utc(expires_at),
                created_at=created_at,
                updated_at=created_at,
            )
        )
        credit_id = result.inserted_primary_key[0]

    credits_granted_total.inc({"feature": feature_slug}, float(credits))
    logger.info(
        "[credits] granted",
        extra={
            "subscription_id": subscription_id,
            "feature": feature_slug,
            "credits": str(credits),
            "reason": reason,
        },
    )
    return Credit(
        id=credit_id,
        subscription_id=subscription_id,
        feature_id=feature.id,
        credits=credits,
        reason=reason,
        granted_by=granted_by,
        expires_at=ensure_utc(expires_at),
        created_at=created_at,
    )


def active_balance(
    subscription_id: int,
    feature_id: int,
    *,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Decimal:
    """Sum of credits that have not expired at `now` (0 when there are none)."""
    now = normalize_now(now)
    with session_scope(session) as s:
        total = s.execute(
            select(func.sum(subscription_feature_credits.c.credits))
            .where(subscription_feature_credits.c.subscription_id == subscription_id)
            .where(subscription_feature_credits.c.feature_id == feature_id)
            .where(_active_filter(now))
        ).scalar()
    return Decimal(str(total or 0))


def list_credits(
    subscription_id: int,
    *,
    feature_id: Optional[int] = None,
    active_only: bool = True,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> List[Credit]:
    """Credit rows in consumption order (oldest first)."""
    now = normalize_now(now)
    query = select(subscription_feature_credits).where(
        subscription_feature_credits.c.subscription_id == subscription_id
    )
    if feature_id is not None:
        query = query.where(subscription_feature_credits.c.feature_id == feature_id)
    if active_only:
        query = query.where(_active_filter(now))
    query = query.order_by(subscription_feature_credits.c.created_at, subscription_feature_credits.c.id)
    with session_scope(session) as s:
        return [_row_to_credit(row) for row in s.execute(query).all()]


def consume(
    subscription_id: int,
    feature_id: int,
    amount: Union[Decimal, int, str],
    *,
    feature_slug: Optional[str] = None,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Decimal:
    """
    Consume active credits oldest-first and return the uncovered remainder.

    Each row loses min(row.credits, remaining); rows reaching zero are
    deleted, so no row is ever left negative. Runs under the
    (subscription, feature) lock; with a caller session the lock is held
    until the caller's transaction ends.

    Raises:
        InvalidAmountError: amount <= 0 or finer than four decimal places
        ConcurrencyConflictError: lock unavailable
    """
    amount = positive_quantity(amount, "Consume amount")
    now = normalize_now(now)
    remaining = amount

    with session_scope(session) as s:
        lock_feature(s, subscription_id, feature_id)
        rows = s.execute(
            select(subscription_feature_credits.c.id, subscription_feature_credits.c.credits)
            .where(subscription_feature_credits.c.subscription_id == subscription_id)
            .where(subscription_feature_credits.c.feature_id == feature_id)
            .where(_active_filter(now))
            .order_by(subscription_feature_credits.c.created_at, subscription_feature_credits.c.id)
        ).all()

        for row in rows:
            if remaining <= 0:
                break
            balance = Decimal(str(row.credits))
            taken = min(balance, remaining)
            left = balance - taken
            remaining -= taken
            if left <= 0:
                s.execute(delete(subscription_feature_credits).where(subscription_feature_credits.c.id == row.id))
            else:
                s.execute(
                    update(subscription_feature_credits)
                    .where(subscription_feature_credits.c.id == row.id)
                    .values(credits=left, updated_at=now)
                )

    consumed = amount - remaining
    if consumed > 0:
        credits_consumed_total.inc({"feature": feature_slug or str(feature_id)}, float(consumed))
        logger.info(
            "[credits] consumed",
            extra={
                "subscription_id": subscription_id,
                "feature_id": feature_id,
                "consumed": str(consumed),
                "uncovered": str(remaining),
            },
        )
    return remaining


def purge_expired_credits(
    *,
    batch_size: int = 1000,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> int:
    """
    Delete credit rows that expired strictly before `now`.

    Each batch runs in its own transaction; rows locked by an in-flight
    consume are skipped and picked up by the next run.

    Returns:
        Rows deleted, or with dry_run the rows that would be deleted
    """
    if batch_size <= 0:
        raise ValidationError(f"batch_size must be positive, got {batch_size}")
    now = normalize_now(now)
    expired_filter = subscription_feature_credits.c.expires_at < now

    with get_db_session() as session:
        expired = session.execute(
            select(func.count()).select_from(subscription_feature_credits).where(expired_filter)
        ).scalar() or 0

    if dry_run:
        logger.info("[credits] purge dry run", extra={"expired": expired})
        return expired

    deleted = 0
    batches = 0
    while True:
        with get_db_session() as session:
            ids = session.execute(
                select(subscription_feature_credits.c.id)
                .where(expired_filter)
                .order_by(subscription_feature_credits.c.id)
                .limit(batch_size)
                .with_for_update(skip_locked=True)
            ).scalars().all()
            if not ids:
                break
            session.execute(delete(subscription_feature_credits).where(subscription_feature_credits.c.id.in_(ids)))
        deleted += len(ids)
        batches += 1
        if len(ids) < batch_size:
            break

    if deleted:
        credits_purged_total.inc(amount=deleted)
    logger.info("[credits] purged expired credits", extra={"expired": expired, "deleted": deleted, "batches": batches})
    return deleted
