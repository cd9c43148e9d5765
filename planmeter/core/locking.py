"""
Row locks scoped to a (subscription, feature) pair.

Entitlement checks and the writes they guard (usage events, credit
decrements) must not interleave across requests for the same pair, or two
requests can both pass can_use before either records usage. Callers take the
lock inside the transaction that performs the writes; it is released when
that transaction commits or rolls back.

Locks are reentrant within a transaction: selecting an already-held row
FOR UPDATE again from the same transaction does not block.
"""

import logging
from typing import Optional

from sqlalchemy import select, insert
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from planmeter.core.config import settings
from planmeter.core.database import subscription_feature_locks, subscriptions
from planmeter.core.errors import ConcurrencyConflictError


logger = logging.getLogger(__name__)


def lock_feature(session: Session, subscription_id: int, feature_id: int, *, nowait: Optional[bool] = None) -> None:
    """Acquire the (subscription_id, feature_id) lock for the current transaction.

    Raises:
        ConcurrencyConflictError: lock held elsewhere (NOWAIT), the database
            reported lock contention, or a concurrent first insert won the race.
    """
    use_nowait = settings.LOCK_NOWAIT if nowait is None else nowait
    stmt = (
        select(subscription_feature_locks.c.id)
        .where(subscription_feature_locks.c.subscription_id == subscription_id)
        .where(subscription_feature_locks.c.feature_id == feature_id)
        .with_for_update(nowait=use_nowait)
    )
    try:
        row = session.execute(stmt).first()
        if row is None:
            session.execute(
                insert(subscription_feature_locks).values(
                    subscription_id=subscription_id,
                    feature_id=feature_id,
                )
            )
            session.flush()
            session.execute(stmt).first()
    except IntegrityError as exc:
        logger.warning(
            "[locking] lock row insert raced",
            extra={"subscription_id": subscription_id, "feature_id": feature_id},
        )
        raise ConcurrencyConflictError(
            f"Concurrent request is using feature {feature_id} on subscription {subscription_id}"
        ) from exc
    except OperationalError as exc:
        logger.warning(
            "[locking] lock unavailable",
            extra={"subscription_id": subscription_id, "feature_id": feature_id, "error": str(exc.orig)},
        )
        raise ConcurrencyConflictError(
            f"Feature {feature_id} on subscription {subscription_id} is locked by another request"
        ) from exc


def lock_subscription(session: Session, subscription_id: int, *, nowait: Optional[bool] = None):
    """Lock a subscription row for a lifecycle transition and return it (or None)."""
    use_nowait = settings.LOCK_NOWAIT if nowait is None else nowait
    try:
        return session.execute(
            select(subscriptions)
            .where(subscriptions.c.id == subscription_id)
            .where(subscriptions.c.deleted_at.is_(None))
            .with_for_update(nowait=use_nowait)
        ).first()
    except OperationalError as exc:
        logger.warning(
            "[locking] subscription lock unavailable",
            extra={"subscription_id": subscription_id, "error": str(exc.orig)},
        )
        raise ConcurrencyConflictError(
            f"Subscription {subscription_id} is locked by another request"
        ) from exc
