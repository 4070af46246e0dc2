from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict

from legalinsight.models.plan import PlanTier


class PromoStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PromoCode(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    code: str
    status: PromoStatus
    max_usage: int
    current_usage: int
    expiry_date: datetime
    validity_duration_days: int


class PromoRedemption(BaseModel):
    """A redeemed promo code granting a plan for a fixed window."""
    model_config = ConfigDict(frozen=True)

    id: str
    promo_code_id: str
    user_id: str
    plan_id: PlanTier
    starts_at: datetime
    expires_at: datetime
    validity_duration_days: int
    redeemed_at: datetime

    def is_active(self, now: datetime) -> bool:
        return self.starts_at <= now < self.expires_at
