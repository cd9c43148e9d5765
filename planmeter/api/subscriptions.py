"""
Subscription lifecycle API.

Routes map one-to-one onto features/subscriptions/service.py; domain errors
propagate to the AppError handlers registered in main.py.
"""

from datetime import datetime
from typing import Dict, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field, field_validator, model_validator

from planmeter.features.subscriptions import service as subscriptions_service
from planmeter.features.subscriptions.status import subscription_status
from planmeter.models.subscription import Subscription, SubscriberRef


router = APIRouter(prefix="/v1/subscriptions", tags=["subscriptions"])


class SubscribeRequest(BaseModel):
    subscriber_type: str
    subscriber_id: str
    plan_slug: Optional[str] = None
    plan_version_id: Optional[int] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    pending: bool = False

    @field_validator("subscriber_type", "subscriber_id", "plan_slug")
    @classmethod
    def _trim(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None

    @model_validator(mode="after")
    def _one_plan_reference(self):
        if (self.plan_slug is None) == (self.plan_version_id is None):
            raise ValueError("exactly one of plan_slug or plan_version_id is required")
        if not self.subscriber_type or not self.subscriber_id:
            raise ValueError("subscriber_type and subscriber_id are required")
        return self


class ActivateRequest(BaseModel):
    start_at: Optional[datetime] = None


class CancelRequest(BaseModel):
    immediately: bool = False


class ResumeRequest(BaseModel):
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None


class RenewRequest(BaseModel):
    start_at: Optional[datetime] = None


class ExtendRequest(BaseModel):
    days: int = Field(..., description="Days to add to end_at")


def subscription_payload(subscription: Subscription) -> Dict:
    payload = subscription.model_dump(mode="json")
    payload["status"] = subscription_status(subscription).value
    return payload


@router.post("", status_code=201)
def create_subscription(body: SubscribeRequest) -> Dict:
    subscriber = SubscriberRef(type=body.subscriber_type, id=body.subscriber_id)
    if body.plan_slug is not None:
        subscription = subscriptions_service.subscribe_to_plan(
            subscriber,
            body.plan_slug,
            start_at=body.start_at,
            end_at=body.end_at,
            pending=body.pending,
        )
    else:
        subscription = subscriptions_service.subscribe(
            subscriber,
            body.plan_version_id,
            start_at=body.start_at,
            end_at=body.end_at,
            pending=body.pending,
        )
    return subscription_payload(subscription)


@router.get("/{subscription_id}")
def get_subscription(subscription_id: int) -> Dict:
    return subscription_payload(subscriptions_service.get_subscription(subscription_id))


@router.post("/{subscription_id}/activate")
def activate_subscription(subscription_id: int, body: Optional[ActivateRequest] = None) -> Dict:
    body = body or ActivateRequest()
    return subscription_payload(subscriptions_service.activate(subscription_id, body.start_at))


@router.post("/{subscription_id}/cancel")
def cancel_subscription(subscription_id: int, body: Optional[CancelRequest] = None) -> Dict:
    body = body or CancelRequest()
    return subscription_payload(subscriptions_service.cancel(subscription_id, body.immediately))


@router.post("/{subscription_id}/resume")
def resume_subscription(subscription_id: int, body: Optional[ResumeRequest] = None) -> Dict:
    body = body or ResumeRequest()
    return subscription_payload(subscriptions_service.resume(subscription_id, body.start_at, body.end_at))


@router.post("/{subscription_id}/renew", status_code=201)
def renew_subscription(subscription_id: int, body: Optional[RenewRequest] = None) -> Dict:
    body = body or RenewRequest()
    return subscription_payload(subscriptions_service.renew(subscription_id, body.start_at))


@router.post("/{subscription_id}/extend")
def extend_subscription(subscription_id: int, body: ExtendRequest) -> Dict:
    return subscription_payload(subscriptions_service.extend(subscription_id, body.days))


@router.get("/{subscription_id}/events")
def list_events(subscription_id: int) -> Dict:
    subscriptions_service.get_subscription(subscription_id)
    events = subscriptions_service.list_subscription_events(subscription_id)
    return {
        "subscription_id": subscription_id,
        "events": [event.model_dump(mode="json") for event in events],
        "count": len(events),
    }
