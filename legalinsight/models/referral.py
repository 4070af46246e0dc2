from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from legalinsight.models.plan import PlanTier


class ReferralRewardRecord(BaseModel):
    """Time-boxed bonus plan earned through referrals in one month-year."""
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    month_year: str
    plan_id: PlanTier
    referral_count: int
    starts_at: datetime
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return self.starts_at <= now < self.expires_at


class Referral(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    referrer_user_id: str
    referred_user_id: str
    referral_email: str
    created_at: datetime
    first_paid_purchase_at: Optional[datetime] = None
    reward_granted: bool = False


class ReferralStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_referrals: int
    qualifying_referrals_this_month: int
    month_year: str
    current_reward: Optional[ReferralRewardRecord] = None
