"""
planmeter/features/plans/service.py

Plan catalog service.

Handles:
- Feature, plan and plan version creation
- Attaching feature allowances to versions
- Current version resolution (published + active, highest version number)
- Allowance lookup for a subscription's plan version
- Default catalog seeding
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Union

from sqlalchemy import select, insert, update, func
from sqlalchemy.orm import Session

from planmeter.core.clock import ensure_utc, normalize_now
from planmeter.core.config import settings
from planmeter.core.database import (
    session_scope,
    plans,
    plan_versions,
    features,
    plan_features,
    subscriptions,
)
from planmeter.core.errors import (
    FeatureNotFoundError,
    InvalidStateError,
    PlanNotFoundError,
    ValidationError,
)
from planmeter.models.feature import Feature, FeatureType, FeatureValue
from planmeter.models.period import ResetPeriod
from planmeter.models.plan import Plan, PlanVersion
from planmeter.models.plan_feature import PlanFeature


logger = logging.getLogger(__name__)


# Default catalog (seeded when SEED_DEFAULT_PLANS is set, or by hand)
DEFAULT_FEATURES = {
    "api-calls": {"name": {"en": "API calls"}, "type": FeatureType.CONSUMABLE},
    "storage-gb": {"name": {"en": "Storage (GB)"}, "type": FeatureType.CONSUMABLE},
    "priority-support": {"name": {"en": "Priority support"}, "type": FeatureType.NON_CONSUMABLE},
}

DEFAULT_PLANS = {
    "free": {
        "name": {"en": "Free"},
        "price": Decimal("0"),
        "reset_period": ResetPeriod(count=1, unit="month"),
        "features": {
            "api-calls": {"value": "1000", "reset_period": ResetPeriod(count=1, unit="day")},
            "storage-gb": {"value": "1"},
        },
    },
    "pro": {
        "name": {"en": "Pro"},
        "price": Decimal("19.00"),
        "reset_period": ResetPeriod(count=1, unit="month"),
        "features": {
            "api-calls": {"value": "50000", "reset_period": ResetPeriod(count=1, unit="day")},
            "storage-gb": {"value": "100"},
            "priority-support": {"value": None},
        },
    },
    "business": {
        "name": {"en": "Business"},
        "price": Decimal("99.00"),
        "reset_period": ResetPeriod(count=1, unit="year"),
        "features": {
            "api-calls": {"value": FeatureValue.UNLIMITED.value},
            "storage-gb": {"value": "1000"},
            "priority-support": {"value": None},
        },
    },
}

_FEATURE_ORDERINGS = {
    "sort_order": (plan_features.c.sort_order, plan_features.c.id),
    "slug": (features.c.slug,),
}


def _row_to_feature(row) -> Feature:
    return Feature(
        id=row.id,
        slug=row.slug,
        name=row.name,
        description=row.description,
        type=FeatureType(row.type),
        sort_order=row.sort_order,
        created_at=ensure_utc(row.created_at),
    )


def _row_to_plan(row) -> Plan:
    return Plan(
        id=row.id,
        slug=row.slug,
        name=row.name,
        description=row.description,
        is_active=row.is_active,
        sort_order=row.sort_order,
        created_at=ensure_utc(row.created_at),
    )


def _row_to_version(row) -> PlanVersion:
    return PlanVersion(
        id=row.id,
        plan_id=row.plan_id,
        version_number=row.version_number,
        version_label=row.version_label,
        price=Decimal(str(row.price)),
        currency=row.currency,
        reset_period=ResetPeriod.from_columns(row.reset_period, row.reset_period_type),
        is_active=row.is_active,
        published_at=ensure_utc(row.published_at),
        created_at=ensure_utc(row.created_at),
    )


def _plan_feature_select():
    return select(
        plan_features.c.id,
        plan_features.c.plan_version_id,
        plan_features.c.value,
        plan_features.c.display_value,
        plan_features.c.reset_period,
        plan_features.c.reset_period_type,
        plan_features.c.is_hidden,
        plan_features.c.sort_order,
        features.c.id.label("feature_id"),
        features.c.slug.label("feature_slug"),
        features.c.name.label("feature_name"),
        features.c.description.label("feature_description"),
        features.c.type.label("feature_type"),
        features.c.sort_order.label("feature_sort_order"),
        features.c.created_at.label("feature_created_at"),
    ).select_from(plan_features.join(features, plan_features.c.feature_id == features.c.id))


def _row_to_plan_feature(row) -> PlanFeature:
    return PlanFeature(
        id=row.id,
        plan_version_id=row.plan_version_id,
        feature=Feature(
            id=row.feature_id,
            slug=row.feature_slug,
            name=row.feature_name,
            description=row.feature_description,
            type=FeatureType(row.feature_type),
            sort_order=row.feature_sort_order,
            created_at=ensure_utc(row.feature_created_at),
        ),
        value=row.value,
        display_value=row.display_value,
        reset_period=ResetPeriod.from_columns(row.reset_period, row.reset_period_type),
        is_hidden=row.is_hidden,
        sort_order=row.sort_order,
    )


def _normalize_value(value: Union[str, int, float, Decimal, None]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, FeatureValue):
        return value.value
    text = str(value).strip()
    if text == FeatureValue.UNLIMITED.value:
        return text
    try:
        number = Decimal(text)
    except InvalidOperation:
        raise ValidationError(f"Feature value must be a number or 'unlimited', got {value!r}")
    if not number.is_finite() or number < 0:
        raise ValidationError(f"Feature value must be a non-negative number, got {value!r}")
    return text


# Features

def create_feature(
    slug: str,
    name: Dict[str, str],
    type: FeatureType,
    *,
    description: Optional[Dict[str, str]] = None,
    sort_order: int = 0,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Feature:
    """Create a feature. Slugs are unique."""
    created_at = normalize_now(now)
    with session_scope(session) as s:
        result = s.execute(
            insert(features).values(
                slug=slug,
                name=name,
                description=description,
                type=FeatureType(type).value,
                sort_order=sort_order,
                created_at=created_at,
            )
        )
        feature_id = result.inserted_primary_key[0]
    logger.info("[plans] feature created", extra={"feature": slug, "feature_type": FeatureType(type).value})
    return Feature(
        id=feature_id,
        slug=slug,
        name=name,
        description=description,
        type=FeatureType(type),
        sort_order=sort_order,
        created_at=created_at,
    )


def get_feature_by_slug(slug: str, *, session: Optional[Session] = None) -> Optional[Feature]:
    with session_scope(session) as s:
        row = s.execute(
            select(features)
            .where(features.c.slug == slug)
            .where(features.c.deleted_at.is_(None))
        ).first()
        return _row_to_feature(row) if row else None


def require_feature(slug: str, *, session: Optional[Session] = None) -> Feature:
    feature = get_feature_by_slug(slug, session=session)
    if feature is None:
        raise FeatureNotFoundError(f"Feature '{slug}' not found")
    return feature


# Plans

def create_plan(
    slug: str,
    name: Dict[str, str],
    *,
    description: Optional[Dict[str, str]] = None,
    is_active: bool = True,
    sort_order: int = 0,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> Plan:
    created_at = normalize_now(now)
    with session_scope(session) as s:
        result = s.execute(
            insert(plans).values(
                slug=slug,
                name=name,
                description=description,
                is_active=is_active,
                sort_order=sort_order,
                created_at=created_at,
                updated_at=created_at,
            )
        )
        plan_id = result.inserted_primary_key[0]
    logger.info("[plans] plan created", extra={"plan": slug})
    return Plan(
        id=plan_id,
        slug=slug,
        name=name,
        description=description,
        is_active=is_active,
        sort_order=sort_order,
        created_at=created_at,
    )


def get_plan(plan_id: int, *, session: Optional[Session] = None) -> Optional[Plan]:
    with session_scope(session) as s:
        row = s.execute(
            select(plans).where(plans.c.id == plan_id).where(plans.c.deleted_at.is_(None))
        ).first()
        return _row_to_plan(row) if row else None


def get_plan_by_slug(slug: str, *, session: Optional[Session] = None) -> Optional[Plan]:
    with session_scope(session) as s:
        row = s.execute(
            select(plans).where(plans.c.slug == slug).where(plans.c.deleted_at.is_(None))
        ).first()
        return _row_to_plan(row) if row else None


# Versions

def create_plan_version(
    plan_id: int,
    *,
    price: Union[Decimal, int, str] = Decimal("0"),
    currency: Optional[str] = None,
    reset_period: Optional[ResetPeriod] = None,
    version_label: Optional[str] = None,
    is_active: bool = True,
    published_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> PlanVersion:
    """
    Append a new version to a plan.

    The version number is one past the plan's current maximum. Versions are
    unpublished unless published_at is given.
    """
    created_at = normalize_now(now)
    with session_scope(session) as s:
        if s.execute(select(plans.c.id).where(plans.c.id == plan_id)).first() is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found")
        current_max = s.execute(
            select(func.max(plan_versions.c.version_number)).where(plan_versions.c.plan_id == plan_id)
        ).scalar()
        version_number = (current_max or 0) + 1
        values = dict(
            plan_id=plan_id,
            version_number=version_number,
            version_label=version_label,
            price=Decimal(str(price)),
            currency=currency or settings.DEFAULT_CURRENCY,
            reset_period=reset_period.count if reset_period else None,
            reset_period_type=reset_period.unit.value if reset_period else None,
            is_active=is_active,
            published_at=ensure_utc(published_at),
            created_at=created_at,
        )
        result = s.execute(insert(plan_versions).values(**values))
        version_id = result.inserted_primary_key[0]

    logger.info(
        "[plans] version created",
        extra={"plan_id": plan_id, "version_number": version_number, "published": published_at is not None},
    )
    return PlanVersion(
        id=version_id,
        plan_id=plan_id,
        version_number=version_number,
        version_label=version_label,
        price=Decimal(str(price)),
        currency=values["currency"],
        reset_period=reset_period,
        is_active=is_active,
        published_at=ensure_utc(published_at),
        created_at=created_at,
    )


def get_plan_version(plan_version_id: int, *, session: Optional[Session] = None) -> Optional[PlanVersion]:
    with session_scope(session) as s:
        row = s.execute(
            select(plan_versions)
            .where(plan_versions.c.id == plan_version_id)
            .where(plan_versions.c.deleted_at.is_(None))
        ).first()
        return _row_to_version(row) if row else None


def publish_version(plan_version_id: int, *, now: Optional[datetime] = None, session: Optional[Session] = None) -> None:
    with session_scope(session) as s:
        s.execute(
            update(plan_versions)
            .where(plan_versions.c.id == plan_version_id)
            .values(published_at=normalize_now(now))
        )


def unpublish_version(plan_version_id: int, *, session: Optional[Session] = None) -> None:
    with session_scope(session) as s:
        s.execute(
            update(plan_versions)
            .where(plan_versions.c.id == plan_version_id)
            .values(published_at=None)
        )


def current_version(plan_id: int, *, session: Optional[Session] = None) -> Optional[PlanVersion]:
    """
    Resolve the version new subscribers should get.

    Returns the highest version_number among active, published versions, or
    None if the plan has no eligible version.
    """
    with session_scope(session) as s:
        row = s.execute(
            select(plan_versions)
            .where(plan_versions.c.plan_id == plan_id)
            .where(plan_versions.c.is_active.is_(True))
            .where(plan_versions.c.published_at.is_not(None))
            .where(plan_versions.c.deleted_at.is_(None))
            .order_by(plan_versions.c.version_number.desc())
            .limit(1)
        ).first()
        return _row_to_version(row) if row else None


def _version_is_referenced(s: Session, plan_version_id: int) -> bool:
    return s.execute(
        select(subscriptions.c.id).where(subscriptions.c.plan_version_id == plan_version_id).limit(1)
    ).first() is not None


# Plan features

def attach_feature(
    plan_version_id: int,
    feature_slug: str,
    *,
    value: Union[str, int, Decimal, FeatureValue, None] = None,
    display_value: Optional[Dict[str, str]] = None,
    reset_period: Optional[ResetPeriod] = None,
    is_hidden: bool = False,
    sort_order: int = 0,
    session: Optional[Session] = None,
) -> PlanFeature:
    """
    Attach a feature allowance to a plan version.

    Raises:
        FeatureNotFoundError: unknown feature slug
        ValidationError: consumable feature without a value, or a malformed value
        InvalidStateError: the version already has subscribers
    """
    normalized = _normalize_value(value)
    with session_scope(session) as s:
        feature = require_feature(feature_slug, session=s)
        if feature.is_consumable and normalized is None:
            raise ValidationError(f"Consumable feature '{feature_slug}' requires a value")
        if _version_is_referenced(s, plan_version_id):
            raise InvalidStateError(f"Plan version {plan_version_id} has subscribers and cannot change")
        result = s.execute(
            insert(plan_features).values(
                plan_version_id=plan_version_id,
                feature_id=feature.id,
                value=normalized,
                display_value=display_value,
                reset_period=reset_period.count if reset_period else None,
                reset_period_type=reset_period.unit.value if reset_period else None,
                is_hidden=is_hidden,
                sort_order=sort_order,
            )
        )
        plan_feature_id = result.inserted_primary_key[0]

    return PlanFeature(
        id=plan_feature_id,
        plan_version_id=plan_version_id,
        feature=feature,
        value=normalized,
        display_value=display_value,
        reset_period=reset_period,
        is_hidden=is_hidden,
        sort_order=sort_order,
    )


def feature_allowance(plan_version_id: int, feature_slug: str, *, session: Optional[Session] = None) -> Optional[PlanFeature]:
    """Allowance of a feature (by slug) in a plan version; None if not attached."""
    with session_scope(session) as s:
        row = s.execute(
            _plan_feature_select()
            .where(plan_features.c.plan_version_id == plan_version_id)
            .where(features.c.slug == feature_slug)
            .where(features.c.deleted_at.is_(None))
        ).first()
        return _row_to_plan_feature(row) if row else None


def feature_allowance_by_id(plan_version_id: int, feature_id: int, *, session: Optional[Session] = None) -> Optional[PlanFeature]:
    """Allowance of a feature (by id) in a plan version; None if not attached."""
    with session_scope(session) as s:
        row = s.execute(
            _plan_feature_select()
            .where(plan_features.c.plan_version_id == plan_version_id)
            .where(plan_features.c.feature_id == feature_id)
            .where(features.c.deleted_at.is_(None))
        ).first()
        return _row_to_plan_feature(row) if row else None


def list_plan_features(
    plan_version_id: int,
    *,
    order_by: str = "sort_order",
    include_hidden: bool = True,
    session: Optional[Session] = None,
) -> List[PlanFeature]:
    """List a version's allowances in an explicit order ('sort_order' or 'slug')."""
    if order_by not in _FEATURE_ORDERINGS:
        raise ValidationError(f"Unsupported ordering: {order_by!r}")
    query = (
        _plan_feature_select()
        .where(plan_features.c.plan_version_id == plan_version_id)
        .where(features.c.deleted_at.is_(None))
    )
    if not include_hidden:
        query = query.where(plan_features.c.is_hidden.is_(False))
    with session_scope(session) as s:
        rows = s.execute(query.order_by(*_FEATURE_ORDERINGS[order_by])).all()
        return [_row_to_plan_feature(row) for row in rows]


def seed_plans(*, now: Optional[datetime] = None) -> None:
    """
    Seed the default catalog (idempotent).

    Creates missing features, and for each missing plan one published v1
    carrying its default allowances. Existing plans are left untouched.
    Safe to call multiple times.
    """
    published_at = normalize_now(now)
    with session_scope() as s:
        for slug, config in DEFAULT_FEATURES.items():
            if get_feature_by_slug(slug, session=s) is None:
                create_feature(slug, config["name"], config["type"], now=published_at, session=s)

        for slug, config in DEFAULT_PLANS.items():
            if get_plan_by_slug(slug, session=s) is not None:
                continue
            plan = create_plan(slug, config["name"], now=published_at, session=s)
            version = create_plan_version(
                plan.id,
                price=config["price"],
                reset_period=config["reset_period"],
                published_at=published_at,
                now=published_at,
                session=s,
            )
            for sort_order, (feature_slug, allowance) in enumerate(config["features"].items()):
                attach_feature(
                    version.id,
                    feature_slug,
                    value=allowance["value"],
                    reset_period=allowance.get("reset_period"),
                    sort_order=sort_order,
                    session=s,
                )
    logger.info("[plans] default catalog seeded", extra={"plans": list(DEFAULT_PLANS)})
