"""
Feature entitlement API.

Per-subscription feature checks, usage and extra credit grants.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Union

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from planmeter.core.errors import FeatureNotInPlanError
from planmeter.features.credits import service as credits_service
from planmeter.features.entitlements import service as entitlements_service
from planmeter.features.plans.service import feature_allowance
from planmeter.features.subscriptions.service import get_subscription
from planmeter.features.subscriptions.status import is_active
from planmeter.models.feature import FeatureValue
from planmeter.models.subscription import SubscriberRef


router = APIRouter(prefix="/v1/subscriptions/{subscription_id}/features", tags=["entitlements"])


class CanUseRequest(BaseModel):
    amount: Decimal = Field(..., description="Quantity to check")
    include_credits: bool = True


class UseRequest(BaseModel):
    amount: Decimal = Field(..., description="Quantity to use")
    use_credits: bool = True


class GrantCreditsRequest(BaseModel):
    credits: Decimal
    reason: Optional[str] = None
    granted_by_type: Optional[str] = None
    granted_by_id: Optional[str] = None
    expires_at: Optional[datetime] = None


def _quantity(value: Union[Decimal, FeatureValue]) -> str:
    if isinstance(value, FeatureValue):
        return value.value
    return str(value)


def _timestamp(value: Union[datetime, bool, None]):
    if isinstance(value, datetime):
        return value.isoformat()
    return value


@router.get("/{feature_slug}")
def get_feature(subscription_id: int, feature_slug: str) -> Dict:
    """Allowance, usage and availability of one feature."""
    subscription = get_subscription(subscription_id)
    plan_feature = feature_allowance(subscription.plan_version_id, feature_slug)
    if plan_feature is None:
        raise FeatureNotInPlanError(f"The feature '{feature_slug}' is not part of the plan")

    remaining = None
    if plan_feature.feature.is_consumable and plan_feature.value is not None:
        remaining = _quantity(entitlements_service.remaining(subscription, feature_slug))

    stats = entitlements_service.credit_usage_stats(subscription, feature_slug)
    return {
        "subscription_id": subscription_id,
        "feature": feature_slug,
        "type": plan_feature.feature.type.value,
        "value": plan_feature.value,
        "active": is_active(subscription),
        "remaining": remaining,
        "stats": {name: _quantity(value) for name, value in stats.model_dump().items()},
        "next_available_at": _timestamp(entitlements_service.next_available_at(subscription, feature_slug)),
    }


@router.post("/{feature_slug}/can-use")
def can_use(subscription_id: int, feature_slug: str, body: CanUseRequest) -> Dict:
    subscription = get_subscription(subscription_id)
    allowed = entitlements_service.can_use(subscription, feature_slug, body.amount, body.include_credits)
    return {"subscription_id": subscription_id, "feature": feature_slug, "allowed": allowed}


@router.post("/{feature_slug}/use", status_code=201)
def use(subscription_id: int, feature_slug: str, body: UseRequest) -> Dict:
    subscription = get_subscription(subscription_id)
    event = entitlements_service.use(subscription, feature_slug, body.amount, body.use_credits)
    return {
        "subscription_id": subscription_id,
        "feature": feature_slug,
        "usage": event.model_dump(mode="json"),
        "remaining": _quantity(entitlements_service.remaining(subscription, feature_slug)),
    }


@router.post("/{feature_slug}/credits", status_code=201)
def grant_credits(subscription_id: int, feature_slug: str, body: GrantCreditsRequest) -> Dict:
    get_subscription(subscription_id)
    granted_by = None
    if body.granted_by_type and body.granted_by_id:
        granted_by = SubscriberRef(type=body.granted_by_type, id=body.granted_by_id)
    credit = credits_service.grant(
        subscription_id,
        feature_slug,
        body.credits,
        reason=body.reason,
        granted_by=granted_by,
        expires_at=body.expires_at,
    )
    return credit.model_dump(mode="json")


@router.get("/{feature_slug}/credits")
def list_credits(subscription_id: int, feature_slug: str, active_only: bool = Query(True)) -> Dict:
    subscription = get_subscription(subscription_id)
    plan_feature = feature_allowance(subscription.plan_version_id, feature_slug)
    if plan_feature is None:
        raise FeatureNotInPlanError(f"The feature '{feature_slug}' is not part of the plan")
    credits = credits_service.list_credits(
        subscription_id, feature_id=plan_feature.feature.id, active_only=active_only
    )
    return {
        "subscription_id": subscription_id,
        "feature": feature_slug,
        "credits": [credit.model_dump(mode="json") for credit in credits],
        "balance": str(credits_service.active_balance(subscription_id, plan_feature.feature.id)),
        "count": len(credits),
    }
