"""Tests for feature-scoped locks and all-or-nothing use."""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, OperationalError

from planmeter.core.database import get_db_session, subscription_feature_locks
from planmeter.core.errors import ConcurrencyConflictError
from planmeter.core.locking import lock_feature, lock_subscription
from planmeter.features.credits.service import active_balance, grant
from planmeter.features.entitlements import service as entitlements_service
from planmeter.features.usage.service import total_usage_in_period


def _lock_rows():
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(subscription_feature_locks)).scalar()


def test_lock_row_created_once_and_reentrant(subscription, catalog):
    with get_db_session() as session:
        lock_feature(session, subscription.id, catalog.api_calls.id)
        lock_feature(session, subscription.id, catalog.api_calls.id)
    with get_db_session() as session:
        lock_feature(session, subscription.id, catalog.api_calls.id)
        lock_feature(session, subscription.id, catalog.storage.id)

    assert _lock_rows() == 2


def test_lock_contention_raises_conflict():
    session = MagicMock()
    session.execute.side_effect = OperationalError("SELECT ... FOR UPDATE NOWAIT", {}, Exception("could not obtain lock"))

    with pytest.raises(ConcurrencyConflictError) as exc:
        lock_feature(session, 1, 2, nowait=True)
    assert exc.value.status_code == 409


def test_racing_lock_insert_raises_conflict():
    session = MagicMock()
    session.execute.side_effect = [
        MagicMock(first=MagicMock(return_value=None)),
        IntegrityError("INSERT", {}, Exception("duplicate key")),
    ]

    with pytest.raises(ConcurrencyConflictError):
        lock_feature(session, 1, 2)


def test_subscription_lock_contention_raises_conflict():
    session = MagicMock()
    session.execute.side_effect = OperationalError("SELECT", {}, Exception("lock timeout"))

    with pytest.raises(ConcurrencyConflictError):
        lock_subscription(session, 1)


def test_use_rolls_back_credit_consumption_on_failure(subscription, catalog, now, monkeypatch):
    grant(subscription.id, "api-calls", 10, now=now - timedelta(days=1))

    def failing_record_usage(*args, **kwargs):
        raise RuntimeError("storage failure")

    monkeypatch.setattr(entitlements_service.usage_service, "record_usage", failing_record_usage)

    with pytest.raises(RuntimeError):
        entitlements_service.use(subscription, "api-calls", 5, now=now)

    assert active_balance(subscription.id, catalog.api_calls.id, now=now) == Decimal("10")
    assert total_usage_in_period(subscription.id, catalog.api_calls.id, None, now=now) == Decimal("0")


def test_use_fails_cleanly_when_lock_unavailable(subscription, catalog, now, monkeypatch):
    grant(subscription.id, "api-calls", 10, now=now - timedelta(days=1))

    def busy(*args, **kwargs):
        raise ConcurrencyConflictError("locked")

    monkeypatch.setattr(entitlements_service, "lock_feature", busy)

    with pytest.raises(ConcurrencyConflictError):
        entitlements_service.use(subscription, "api-calls", 5, now=now)

    assert active_balance(subscription.id, catalog.api_calls.id, now=now) == Decimal("10")
    assert total_usage_in_period(subscription.id, catalog.api_calls.id, None, now=now) == Decimal("0")
