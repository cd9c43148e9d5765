"""
planmeter/models/feature.py

Feature model: a capability gated by subscription.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict


class FeatureType(str, Enum):
    CONSUMABLE = "consumable"  # metered, carries a numeric allowance
    NON_CONSUMABLE = "non_consumable"  # boolean access gate


class FeatureValue(str, Enum):
    """Sentinel allowance values."""
    UNLIMITED = "unlimited"


class Feature(BaseModel):
    """
    Feature represents something a plan can grant.

    Examples:
    - api-calls (consumable, metered per period)
    - storage-gb (consumable, lifetime)
    - priority-support (non-consumable)

    Names and descriptions are locale maps, e.g. {"en": "API calls"}.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    slug: str
    name: Dict[str, str]
    description: Optional[Dict[str, str]] = None
    type: FeatureType
    sort_order: int = 0
    created_at: datetime

    @property
    def is_consumable(self) -> bool:
        return self.type == FeatureType.CONSUMABLE

    def display_name(self, locale: str = "en") -> str:
        if locale in self.name:
            return self.name[locale]
        return next(iter(self.name.values()), self.slug)
