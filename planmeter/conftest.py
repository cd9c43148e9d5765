# planmeter/conftest.py
import os
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

from planmeter.core.database import init_engine, create_all_tables, drop_all_tables, dispose_engine
from planmeter.core.metrics import METRICS
from planmeter.features.plans.service import (
    attach_feature,
    create_feature,
    create_plan,
    create_plan_version,
)
from planmeter.features.subscriptions.service import subscribe
from planmeter.models.feature import FeatureType, FeatureValue
from planmeter.models.period import ResetPeriod
from planmeter.models.subscription import SubscriberRef


TEST_DATABASE_URL = "sqlite+pysqlite:///:memory:"

# Fixed clock for window arithmetic
NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def database():
    """
    Fresh in-memory database per test.

    StaticPool keeps a single connection alive, so the schema survives across
    sessions until the engine is disposed.
    """
    init_engine(TEST_DATABASE_URL)
    create_all_tables()
    METRICS.reset()
    yield
    drop_all_tables()
    dispose_engine()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def catalog():
    """
    One published "pro" plan (monthly billing) with:
    - api-calls: 50 per month
    - storage-gb: 10, never resets
    - exports: unlimited per day
    - sso: non-consumable
    """
    created = NOW - timedelta(days=90)
    api_calls = create_feature("api-calls", {"en": "API calls"}, FeatureType.CONSUMABLE, now=created)
    storage = create_feature("storage-gb", {"en": "Storage"}, FeatureType.CONSUMABLE, now=created)
    exports = create_feature("exports", {"en": "Exports"}, FeatureType.CONSUMABLE, now=created)
    sso = create_feature("sso", {"en": "Single sign-on"}, FeatureType.NON_CONSUMABLE, now=created)

    plan = create_plan("pro", {"en": "Pro"}, now=created)
    version = create_plan_version(
        plan.id,
        price="19.00",
        reset_period=ResetPeriod(count=1, unit="month"),
        published_at=created,
        now=created,
    )
    attach_feature(version.id, "api-calls", value="50", reset_period=ResetPeriod(count=1, unit="month"), sort_order=1)
    attach_feature(version.id, "storage-gb", value="10", sort_order=2)
    attach_feature(
        version.id,
        "exports",
        value=FeatureValue.UNLIMITED,
        reset_period=ResetPeriod(count=1, unit="day"),
        sort_order=3,
    )
    attach_feature(version.id, "sso", sort_order=4)

    return SimpleNamespace(
        plan=plan,
        version=version,
        api_calls=api_calls,
        storage=storage,
        exports=exports,
        sso=sso,
    )


@pytest.fixture
def subscriber():
    return SubscriberRef(type="user", id="user-1")


@pytest.fixture
def subscription(catalog, subscriber):
    """Active subscription that started ten days before NOW."""
    start = NOW - timedelta(days=10)
    return subscribe(subscriber, catalog.version.id, start_at=start, now=start)
