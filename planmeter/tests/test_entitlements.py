"""Tests for entitlement checks, usage and credit interplay."""

from datetime import timedelta
from decimal import Decimal

import pytest

from planmeter.core.errors import (
    CannotUseFeatureError,
    FeatureNotInPlanError,
    InvalidAmountError,
    NotConsumableError,
    QuotaExceededError,
)
from planmeter.core.metrics import entitlement_denied_total, feature_usage_total
from planmeter.features.credits.service import active_balance, consume, grant, list_credits
from planmeter.features.entitlements.service import (
    can_use,
    credit_usage_stats,
    feature_usage_in_period,
    has_active_feature,
    has_feature,
    next_available_across,
    next_available_at,
    remaining,
    total_usage_in_period,
    use,
)
from planmeter.features.subscriptions.service import cancel, get_subscription, subscribe
from planmeter.features.usage.service import record_usage
from planmeter.models.feature import FeatureValue
from planmeter.models.subscription import SubscriberRef


def test_remaining_allowance_minus_usage(subscription, catalog, now):
    record_usage(subscription.id, catalog.api_calls.id, 20, now=now - timedelta(days=2))

    assert remaining(subscription, "api-calls", now=now) == Decimal("30")
    assert can_use(subscription, "api-calls", 30, now=now) is True
    assert can_use(subscription, "api-calls", 31, now=now) is False
    assert can_use(subscription, "api-calls", 40, now=now) is False
    with pytest.raises(CannotUseFeatureError):
        use(subscription, "api-calls", 40, now=now)

    # Rejected use records nothing
    assert remaining(subscription, "api-calls", now=now) == Decimal("30")


def test_usage_outside_window_is_forgotten(subscription, catalog, now):
    record_usage(subscription.id, catalog.api_calls.id, 50, now=now - timedelta(days=31))
    assert remaining(subscription, "api-calls", now=now) == Decimal("50")


def test_credits_cover_usage_over_plan_limit(subscription, catalog, now):
    grant(subscription.id, "api-calls", 10, expires_at=now + timedelta(days=7), now=now - timedelta(days=1))
    record_usage(subscription.id, catalog.api_calls.id, 55, now=now - timedelta(hours=5))

    assert remaining(subscription, "api-calls", now=now) == Decimal("5")
    assert remaining(subscription, "api-calls", include_credits=False, now=now) == Decimal("-5")

    use(subscription, "api-calls", 5, now=now)

    assert active_balance(subscription.id, catalog.api_calls.id, now=now) == Decimal("5")


def test_use_records_gross_usage_and_consumes_credits_first(subscription, catalog, now):
    grant(subscription.id, "api-calls", 10, now=now - timedelta(days=1))

    event = use(subscription, "api-calls", 4, now=now)

    assert event.value == Decimal("4")
    assert total_usage_in_period(subscription, "api-calls", now=now) == Decimal("4")
    assert active_balance(subscription.id, catalog.api_calls.id, now=now) == Decimal("6")
    # 50 + 6 credits - 4 used
    assert remaining(subscription, "api-calls", now=now) == Decimal("52")
    assert feature_usage_total.value({"feature": "api-calls"}) == 4


def test_use_without_credits_leaves_credits_alone(subscription, catalog, now):
    grant(subscription.id, "api-calls", 10, now=now - timedelta(days=1))

    use(subscription, "api-calls", 50, use_credits=False, now=now)

    assert active_balance(subscription.id, catalog.api_calls.id, now=now) == Decimal("10")
    with pytest.raises(CannotUseFeatureError):
        use(subscription, "api-calls", 1, use_credits=False, now=now)
    assert can_use(subscription, "api-calls", 10, now=now) is True


def test_cannot_use_error_is_quota_error(subscription, now):
    with pytest.raises(QuotaExceededError) as exc:
        use(subscription, "api-calls", 51, now=now)
    assert exc.value.status_code == 403


def test_unlimited_feature(subscription, catalog, now):
    for i in range(5):
        use(subscription, "exports", 1000, now=now - timedelta(minutes=i))

    assert remaining(subscription, "exports", now=now) == FeatureValue.UNLIMITED
    assert remaining(subscription, "exports", include_credits=False, now=now) == FeatureValue.UNLIMITED
    assert can_use(subscription, "exports", 10 ** 9, now=now) is True


def test_non_consumable_feature(subscription, now):
    assert has_feature(subscription, "sso")
    assert can_use(subscription, "sso", 1, now=now) is False
    with pytest.raises(NotConsumableError):
        remaining(subscription, "sso", now=now)
    assert entitlement_denied_total.value({"feature": "sso", "reason": "non_consumable"}) == 1


def test_feature_not_in_plan(subscription, now):
    assert not has_feature(subscription, "teleport")
    with pytest.raises(FeatureNotInPlanError):
        remaining(subscription, "teleport", now=now)
    with pytest.raises(FeatureNotInPlanError):
        can_use(subscription, "teleport", 1, now=now)
    with pytest.raises(FeatureNotInPlanError):
        use(subscription, "teleport", 1, now=now)


def test_non_positive_amount_rejected(subscription, now):
    with pytest.raises(InvalidAmountError):
        can_use(subscription, "api-calls", 0, now=now)
    with pytest.raises(InvalidAmountError):
        use(subscription, "api-calls", -3, now=now)


def test_cancelled_and_ended_subscription_cannot_use(subscription, now):
    cancelled = cancel(subscription.id, immediately=True, now=now - timedelta(minutes=5))

    assert can_use(cancelled, "api-calls", 1, now=now) is False
    assert can_use(cancelled, "exports", 1, now=now) is False
    assert not has_active_feature(cancelled, "api-calls", now=now)
    with pytest.raises(CannotUseFeatureError):
        use(cancelled, "api-calls", 1, now=now)
    assert entitlement_denied_total.value({"feature": "api-calls", "reason": "inactive"}) >= 1


def test_use_checks_status_of_stored_subscription(subscription, now):
    snapshot = get_subscription(subscription.id)
    cancel(subscription.id, immediately=True, now=now - timedelta(minutes=5))

    # The snapshot still looks active; the stored row is cancelled
    assert can_use(snapshot, "api-calls", 1, now=now) is True
    with pytest.raises(CannotUseFeatureError):
        use(snapshot, "api-calls", 1, now=now)
    assert total_usage_in_period(snapshot, "api-calls", now=now) == Decimal("0")


@pytest.mark.parametrize("amount", ["0.00001", "0.00004", "1.23456", "NaN", "Infinity", "abc"])
def test_amounts_must_fit_quantity_scale(subscription, catalog, now, amount):
    with pytest.raises(InvalidAmountError):
        grant(subscription.id, "api-calls", amount, now=now)
    with pytest.raises(InvalidAmountError):
        consume(subscription.id, catalog.api_calls.id, amount, now=now)
    with pytest.raises(InvalidAmountError):
        record_usage(subscription.id, catalog.api_calls.id, amount, now=now)
    with pytest.raises(InvalidAmountError):
        can_use(subscription, "api-calls", amount, now=now)
    with pytest.raises(InvalidAmountError):
        use(subscription, "api-calls", amount, now=now)

    assert list_credits(subscription.id, active_only=False, now=now) == []
    assert total_usage_in_period(subscription, "api-calls", now=now) == Decimal("0")


def test_four_decimal_places_stored_exactly(subscription, catalog, now):
    credit = grant(subscription.id, "api-calls", "0.0001", now=now - timedelta(days=1))
    assert credit.credits == Decimal("0.0001")
    assert [c.credits for c in list_credits(subscription.id, now=now)] == [Decimal("0.0001")]

    use(subscription, "api-calls", "1.2500", now=now)
    assert list_credits(subscription.id, now=now) == []
    assert total_usage_in_period(subscription, "api-calls", now=now) == Decimal("1.25")
    assert remaining(subscription, "api-calls", now=now) == Decimal("48.75")


def test_pending_subscription_cannot_use(catalog, subscriber, now):
    pending = subscribe(subscriber, catalog.version.id, pending=True, now=now)
    assert can_use(pending, "api-calls", 1, now=now) is False
    assert has_feature(pending, "api-calls")
    assert not has_active_feature(pending, "api-calls", now=now)


def test_credit_usage_stats(subscription, catalog, now):
    grant(subscription.id, "api-calls", 10, now=now - timedelta(days=1))
    record_usage(subscription.id, catalog.api_calls.id, 55, now=now - timedelta(hours=1))

    stats = credit_usage_stats(subscription, "api-calls", now=now)
    assert stats.plan_limit == Decimal("50")
    assert stats.extra_credits == Decimal("10")
    assert stats.total_available == Decimal("60")
    assert stats.used == Decimal("55")
    assert stats.remaining == Decimal("5")


def test_credit_usage_stats_clamps_remaining(subscription, catalog, now):
    record_usage(subscription.id, catalog.api_calls.id, 70, now=now - timedelta(hours=1))
    assert credit_usage_stats(subscription, "api-calls", now=now).remaining == Decimal("0")


def test_credit_usage_stats_unlimited(subscription, catalog, now):
    grant(subscription.id, "exports", 3, now=now)
    stats = credit_usage_stats(subscription, "exports", now=now)
    assert stats.plan_limit == FeatureValue.UNLIMITED
    assert stats.total_available == FeatureValue.UNLIMITED
    assert stats.remaining == FeatureValue.UNLIMITED
    assert stats.extra_credits == Decimal("3")


def test_credit_usage_stats_zero_for_missing_or_non_consumable(subscription, now):
    for slug in ("sso", "teleport"):
        stats = credit_usage_stats(subscription, slug, now=now)
        assert stats.plan_limit == 0
        assert stats.total_available == 0
        assert stats.remaining == 0


def test_feature_usage_in_period_uses_allowance_window(subscription, catalog, now):
    record_usage(subscription.id, catalog.exports.id, 1, now=now - timedelta(days=2))
    record_usage(subscription.id, catalog.exports.id, 2, now=now - timedelta(hours=2))

    events = feature_usage_in_period(subscription, "exports", now=now)
    assert [e.value for e in events] == [Decimal("2")]


def test_next_available_at(subscription, catalog, now):
    assert next_available_at(subscription, "exports", now=now) is None
    assert next_available_at(subscription, "storage-gb", now=now) is False
    assert next_available_at(subscription, "api-calls", now=now) == now

    used_at = now - timedelta(days=4)
    record_usage(subscription.id, catalog.api_calls.id, 1, now=used_at)
    assert next_available_at(subscription, "api-calls", now=now) == used_at + timedelta(days=30)


def test_next_available_across_subscriptions(catalog, now):
    start = now - timedelta(days=1)
    first = subscribe(SubscriberRef(type="user", id="a"), catalog.version.id, start_at=start, now=start)
    second = subscribe(SubscriberRef(type="user", id="b"), catalog.version.id, start_at=start, now=start)
    record_usage(first.id, catalog.api_calls.id, 1, now=now - timedelta(days=2))
    record_usage(second.id, catalog.api_calls.id, 1, now=now - timedelta(days=5))

    assert next_available_across([first, second], "api-calls", now=now) == now - timedelta(days=5) + timedelta(days=30)
    assert next_available_across([first, second], "exports", now=now) is None
    assert next_available_across([first, second], "storage-gb", now=now) is False
    assert next_available_across([], "api-calls", now=now) is False
