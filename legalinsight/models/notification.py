from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class NotificationKind(str, Enum):
    PLAN_EXPIRED = "plan_expired"
    REWARD_RESTORED = "reward_restored"
    PURCHASE_APPLIED = "purchase_applied"
    PURCHASE_REFUNDED = "purchase_refunded"
    REFERRAL_REWARD = "referral_reward"
    PROMO_REDEEMED = "promo_redeemed"


class PlanNotification(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    kind: NotificationKind
    title: str
    message: str
    created_at: datetime
    read_at: Optional[datetime] = None
