"""
legalinsight/models/plan.py

Plan tiers and the per-user plan record.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class PlanTier(str, Enum):
    """Closed set of plan tiers. Every consumer matches exhaustively."""
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    PAY_PER_USE = "pay-per-use"

    @property
    def is_paid(self) -> bool:
        return self is not PlanTier.FREE

    @property
    def display_name(self) -> str:
        return PLAN_DISPLAY_NAMES[self]


PLAN_DISPLAY_NAMES = {
    PlanTier.FREE: "Free Plan",
    PlanTier.BASIC: "Basic Plan",
    PlanTier.PREMIUM: "Premium Subscription",
    PlanTier.PAY_PER_USE: "Pay Per Use",
}


class PausedReward(BaseModel):
    """
    Snapshot of a referral reward frozen while a purchased plan takes precedence.

    remaining_time_ms is the reward lifetime left at the moment of the pause;
    original_expiry is the reward's expiry before it was pulled forward.
    """
    model_config = ConfigDict(frozen=True)

    reward_plan_id: PlanTier
    remaining_time_ms: int
    original_expiry: datetime
    reward_id: Optional[str] = None


class PlanRecord(BaseModel):
    """
    PlanRecord is the user's current plan assignment.

    Constraint: at most one row per user; expires_at None means non-expiring.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan_id: PlanTier
    started_at: datetime
    expires_at: Optional[datetime] = None
    purchase_id: Optional[str] = None
    paused_reward: Optional[PausedReward] = None
    user_email: Optional[str] = None
    updated_at: Optional[datetime] = None
