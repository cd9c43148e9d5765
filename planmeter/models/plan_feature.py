"""
planmeter/models/plan_feature.py

PlanFeature model: the allowance of one feature within one plan version.
"""

from decimal import Decimal
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict

from planmeter.models.feature import Feature, FeatureValue
from planmeter.models.period import ResetPeriod


class PlanFeature(BaseModel):
    """
    PlanFeature carries the allowance value for a feature.

    Value encoding:
    - "50", "2.5": numeric allowance per reset period (or lifetime)
    - "unlimited": no quantity cap
    - None: non-consumable access gate

    reset_period is independent of the plan version's billing period: it is
    the usage window for this feature only. None means usage never resets.
    """
    model_config = ConfigDict(frozen=True)

    id: int
    plan_version_id: int
    feature: Feature
    value: Optional[str] = None
    display_value: Optional[Dict[str, str]] = None
    reset_period: Optional[ResetPeriod] = None
    is_hidden: bool = False
    sort_order: int = 0

    @property
    def is_unlimited(self) -> bool:
        return self.value == FeatureValue.UNLIMITED.value

    @property
    def allowance(self) -> Optional[Decimal]:
        """Numeric allowance, or None for unlimited / non-consumable entries."""
        if self.value is None or self.is_unlimited:
            return None
        return Decimal(self.value)
