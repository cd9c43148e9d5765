"""
planmeter/models/plan.py

Plan and PlanVersion models.

A plan is a named subscribable offering; its terms live on versions so a
plan can change price or allowances without touching existing subscribers.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict

from planmeter.models.period import ResetPeriod


class Plan(BaseModel):
    """
    Plan represents a subscribable offering.

    Examples:
    - free
    - pro
    - business

    Plans are soft deleted only; versions are appended over time.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    slug: str
    name: Dict[str, str]
    description: Optional[Dict[str, str]] = None
    is_active: bool = True
    sort_order: int = 0
    created_at: datetime


class PlanVersion(BaseModel):
    """
    Snapshot of a plan's price, billing period and features.

    Constraint: only versions that are active AND published are eligible as
    the plan's current version.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    plan_id: int
    version_number: int
    version_label: Optional[str] = None
    price: Decimal = Decimal("0")
    currency: str
    reset_period: Optional[ResetPeriod] = None
    is_active: bool = True
    published_at: Optional[datetime] = None
    created_at: datetime

    @property
    def is_published(self) -> bool:
        return self.published_at is not None

    @property
    def is_free(self) -> bool:
        return self.price == 0

    def display_version(self) -> str:
        return self.version_label or f"v{self.version_number}"
