"""Tests for the usage ledger."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from planmeter.core.database import features, get_db_session
from planmeter.core.errors import InvalidAmountError, NotConsumableError, SubscriptionNotFoundError
from planmeter.features.plans.service import feature_allowance, feature_allowance_by_id, list_plan_features
from planmeter.features.usage.service import (
    next_available_at,
    record_usage,
    total_usage_in_period,
    usage_in_period,
)
from planmeter.models.period import ResetPeriod


DAY = ResetPeriod(count=1, unit="day")


def test_record_usage_appends_event(subscription, catalog, now):
    event = record_usage(subscription.id, catalog.api_calls.id, "2.5", now=now)
    assert event.value == Decimal("2.5")
    assert event.created_at == now
    assert total_usage_in_period(subscription.id, catalog.api_calls.id, None, now=now) == Decimal("2.5")


def test_record_usage_rejects_non_positive(subscription, catalog, now):
    with pytest.raises(InvalidAmountError):
        record_usage(subscription.id, catalog.api_calls.id, 0, now=now)
    with pytest.raises(InvalidAmountError):
        record_usage(subscription.id, catalog.api_calls.id, -1, now=now)


def test_record_usage_rejects_non_consumable(subscription, catalog, now):
    with pytest.raises(NotConsumableError):
        record_usage(subscription.id, catalog.sso.id, 1, now=now)


def test_record_usage_rejects_feature_outside_plan(subscription, now):
    with pytest.raises(NotConsumableError):
        record_usage(subscription.id, 12345, 1, now=now)


def test_deleted_feature_is_not_part_of_the_plan(subscription, catalog, now):
    with get_db_session() as session:
        session.execute(
            update(features).where(features.c.id == catalog.api_calls.id).values(deleted_at=now)
        )

    assert feature_allowance_by_id(catalog.version.id, catalog.api_calls.id) is None
    assert feature_allowance(catalog.version.id, "api-calls") is None
    assert "api-calls" not in [pf.feature.slug for pf in list_plan_features(catalog.version.id)]
    with pytest.raises(NotConsumableError):
        record_usage(subscription.id, catalog.api_calls.id, 1, now=now)


def test_record_usage_unknown_subscription(catalog, now):
    with pytest.raises(SubscriptionNotFoundError):
        record_usage(999, catalog.api_calls.id, 1, now=now)


def test_usage_in_period_window(subscription, catalog, now):
    feature_id = catalog.api_calls.id
    record_usage(subscription.id, feature_id, 5, now=now - timedelta(days=2))
    record_usage(subscription.id, feature_id, 3, now=now - timedelta(hours=20))
    record_usage(subscription.id, feature_id, 1, now=now - timedelta(hours=1))

    events = usage_in_period(subscription.id, feature_id, DAY, now=now)
    assert [e.value for e in events] == [Decimal("3"), Decimal("1")]
    assert events[0].created_at < events[1].created_at

    assert total_usage_in_period(subscription.id, feature_id, DAY, now=now) == Decimal("4")
    assert total_usage_in_period(subscription.id, feature_id, None, now=now) == Decimal("9")


def test_total_usage_is_zero_when_empty(subscription, catalog, now):
    assert total_usage_in_period(subscription.id, catalog.api_calls.id, DAY, now=now) == Decimal("0")


def test_next_available_unlimited_is_none(subscription, catalog, now):
    exports = feature_allowance(catalog.version.id, "exports")
    assert next_available_at(subscription.id, exports, now=now) is None


def test_next_available_without_reset_is_false(subscription, catalog, now):
    storage = feature_allowance(catalog.version.id, "storage-gb")
    record_usage(subscription.id, catalog.storage.id, 1, now=now)
    assert next_available_at(subscription.id, storage, now=now) is False


def test_next_available_is_now_when_window_empty(subscription, catalog, now):
    api_calls = feature_allowance(catalog.version.id, "api-calls")
    assert next_available_at(subscription.id, api_calls, now=now) == now


def test_next_available_is_oldest_plus_period(subscription, catalog, now):
    api_calls = feature_allowance(catalog.version.id, "api-calls")
    oldest = now - timedelta(days=12)
    record_usage(subscription.id, catalog.api_calls.id, 1, now=oldest)
    record_usage(subscription.id, catalog.api_calls.id, 1, now=now - timedelta(days=3))
    # Outside the 30-day window, ignored
    record_usage(subscription.id, catalog.api_calls.id, 1, now=now - timedelta(days=40))

    assert next_available_at(subscription.id, api_calls, now=now) == oldest + timedelta(days=30)
