"""Tests for the extra credit ledger."""

from datetime import timedelta
from decimal import Decimal

import pytest

from planmeter.core.errors import FeatureNotFoundError, InvalidAmountError, NotConsumableError, ValidationError
from planmeter.core.metrics import credits_consumed_total, credits_granted_total, credits_purged_total
from planmeter.features.credits.service import (
    active_balance,
    consume,
    grant,
    list_credits,
    purge_expired_credits,
)
from planmeter.models.subscription import SubscriberRef


def test_grant_then_consume_leaves_balance(subscription, catalog, now):
    grant(subscription.id, "api-calls", 100, now=now)
    uncovered = consume(subscription.id, catalog.api_calls.id, 30, now=now)

    assert uncovered == Decimal("0")
    assert active_balance(subscription.id, catalog.api_calls.id, now=now) == Decimal("70")


def test_grant_validation(subscription, now):
    with pytest.raises(InvalidAmountError):
        grant(subscription.id, "api-calls", 0, now=now)
    with pytest.raises(FeatureNotFoundError):
        grant(subscription.id, "missing", 5, now=now)


def test_grant_rejects_non_consumable(subscription, catalog, now):
    with pytest.raises(NotConsumableError):
        grant(subscription.id, "sso", 5, now=now)


def test_grant_records_metadata(subscription, catalog, now):
    admin = SubscriberRef(type="admin", id="ops-1")
    credit = grant(
        subscription.id,
        "api-calls",
        "12.5",
        reason="outage compensation",
        granted_by=admin,
        expires_at=now + timedelta(days=7),
        now=now,
    )
    assert credit.days_until_expiration(now) == 7
    assert credits_granted_total.value({"feature": "api-calls"}) == 12.5

    stored = list_credits(subscription.id, feature_id=catalog.api_calls.id, now=now)
    assert len(stored) == 1
    assert stored[0].granted_by == admin
    assert stored[0].reason == "outage compensation"
    assert stored[0].credits == Decimal("12.5")


def test_consume_oldest_first(subscription, catalog, now):
    feature_id = catalog.api_calls.id
    first = grant(subscription.id, "api-calls", 10, now=now - timedelta(days=2))
    second = grant(subscription.id, "api-calls", 10, now=now - timedelta(days=1))

    consume(subscription.id, feature_id, 4, now=now)

    remaining = {c.id: c.credits for c in list_credits(subscription.id, feature_id=feature_id, now=now)}
    assert remaining[first.id] == Decimal("6")
    assert remaining[second.id] == Decimal("10")


def test_consume_deletes_exhausted_rows_and_spills_over(subscription, catalog, now):
    feature_id = catalog.api_calls.id
    first = grant(subscription.id, "api-calls", 10, now=now - timedelta(days=2))
    second = grant(subscription.id, "api-calls", 10, now=now - timedelta(days=1))

    consume(subscription.id, feature_id, 15, now=now)

    credits = list_credits(subscription.id, feature_id=feature_id, now=now)
    assert [c.id for c in credits] == [second.id]
    assert credits[0].credits == Decimal("5")
    assert first.id not in {c.id for c in credits}


def test_consume_more_than_balance_returns_remainder(subscription, catalog, now):
    feature_id = catalog.api_calls.id
    grant(subscription.id, "api-calls", 10, now=now)
    grant(subscription.id, "api-calls", 5, now=now)

    uncovered = consume(subscription.id, feature_id, 40, now=now)

    assert uncovered == Decimal("25")
    assert active_balance(subscription.id, feature_id, now=now) == Decimal("0")
    assert list_credits(subscription.id, feature_id=feature_id, active_only=False, now=now) == []
    assert credits_consumed_total.value({"feature": str(feature_id)}) == 15


def test_consume_never_leaves_negative_rows(subscription, catalog, now):
    feature_id = catalog.api_calls.id
    for amount in ("3", "0.5", "7"):
        grant(subscription.id, "api-calls", amount, now=now)

    consume(subscription.id, feature_id, "4", now=now)

    rows = list_credits(subscription.id, feature_id=feature_id, active_only=False, now=now)
    assert all(row.credits > 0 for row in rows)
    assert sum(row.credits for row in rows) == Decimal("6.5")


def test_consume_skips_expired_credits(subscription, catalog, now):
    feature_id = catalog.api_calls.id
    expired = grant(subscription.id, "api-calls", 10, expires_at=now - timedelta(days=1), now=now - timedelta(days=5))
    grant(subscription.id, "api-calls", 10, now=now - timedelta(days=1))

    consume(subscription.id, feature_id, 4, now=now)

    all_rows = {c.id: c.credits for c in list_credits(subscription.id, active_only=False, now=now)}
    assert all_rows[expired.id] == Decimal("10")
    assert active_balance(subscription.id, feature_id, now=now) == Decimal("6")


def test_consume_rejects_non_positive(subscription, catalog, now):
    with pytest.raises(InvalidAmountError):
        consume(subscription.id, catalog.api_calls.id, 0, now=now)


def test_credit_expiring_exactly_now_is_inactive(subscription, catalog, now):
    grant(subscription.id, "api-calls", 10, expires_at=now, now=now - timedelta(days=1))
    assert active_balance(subscription.id, catalog.api_calls.id, now=now) == Decimal("0")


def test_purge_deletes_only_expired(subscription, catalog, now):
    grant(subscription.id, "api-calls", 1, expires_at=now - timedelta(days=3), now=now - timedelta(days=10))
    grant(subscription.id, "api-calls", 1, expires_at=now - timedelta(minutes=1), now=now - timedelta(days=10))
    keep_future = grant(subscription.id, "api-calls", 1, expires_at=now + timedelta(days=1), now=now)
    keep_forever = grant(subscription.id, "api-calls", 1, now=now)

    assert purge_expired_credits(batch_size=1, dry_run=True, now=now) == 2
    assert len(list_credits(subscription.id, active_only=False, now=now)) == 4

    assert purge_expired_credits(batch_size=1, now=now) == 2
    remaining = {c.id for c in list_credits(subscription.id, active_only=False, now=now)}
    assert remaining == {keep_future.id, keep_forever.id}
    assert credits_purged_total.value() == 2


def test_purge_rejects_bad_batch_size(now):
    with pytest.raises(ValidationError):
        purge_expired_credits(batch_size=0, now=now)
