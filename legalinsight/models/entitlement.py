"""
legalinsight/models/entitlement.py

Features gated by plan, the resolved effective plan, and gate decisions.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union
from pydantic import BaseModel, ConfigDict

from legalinsight.models.plan import PlanRecord, PlanTier


UNLIMITED = "unlimited"

Credits = Union[int, str]


class Feature(str, Enum):
    """
    Closed set of gated features.

    - ANALYSIS: analyze a new document (consumes a credit)
    - VIEW_ANALYSIS: view an existing analysis
    - advanced analysis tools: improvement suggestions, side-by-side
      comparison, advanced clause suggestions, downloadable improvements,
      clause explanations
    - premium tools: agreement generator, legal chat, dispute response,
      jurisdiction suggestions
    """
    ANALYSIS = "analysis"
    VIEW_ANALYSIS = "view-analysis"
    IMPROVEMENT_SUGGESTIONS = "improvement-suggestions"
    SIDE_BY_SIDE_COMPARISON = "side-by-side-comparison"
    ADVANCED_CLAUSE_SUGGESTIONS = "advanced-clause-suggestions"
    DOWNLOADABLE_IMPROVEMENTS = "downloadable-improvements"
    CLAUSE_EXPLANATIONS = "clause-explanations"
    AGREEMENT_GENERATOR = "agreement-generator"
    LEGAL_CHAT = "legal-chat"
    DISPUTE_RESPONSE = "dispute-response"
    JURISDICTION_SUGGESTIONS = "jurisdiction-suggestions"


class SourceKind(str, Enum):
    EXPLICIT_PLAN = "explicit-plan"
    REFERRAL_REWARD = "referral-reward"
    PROMO_CODE = "promo-code"


class DenyReason(str, Enum):
    FREE_LIMIT_REACHED = "free-limit-reached"
    FREE_CREDITS_UNAVAILABLE = "free-credits-unavailable"
    BASIC_LIMIT_REACHED = "basic-limit-reached"
    PAY_PER_USE_CONSUMED = "pay-per-use-consumed"
    PLAN_EXPIRED = "plan-expired"
    REQUIRES_PAID_PLAN = "requires-paid-plan"
    REQUIRES_PREMIUM = "requires-premium"
    ENTITLEMENT_CHECK_FAILED = "entitlement-check-failed"


class EffectivePlan(BaseModel):
    """Plan that governs entitlement right now, and where it came from."""
    model_config = ConfigDict(frozen=True)

    plan_id: PlanTier
    expires_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    source_kind: SourceKind = SourceKind.EXPLICIT_PLAN


class PlanState(BaseModel):
    """
    Everything the gate needs, loaded once per decision.

    gating_plan is the effective plan after expiry is applied (an expired
    paid plan gates as free). used is the document count in
    [window_start, window_end).
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    now: datetime
    effective: EffectivePlan
    expired: bool
    has_ever_paid: bool
    used: int
    window_start: datetime
    window_end: datetime
    plan_record: Optional[PlanRecord] = None

    @property
    def gating_plan(self) -> PlanTier:
        return PlanTier.FREE if self.expired else self.effective.plan_id


@dataclass(frozen=True)
class EntitlementDecision:
    feature: Feature
    allowed: bool
    remaining_credits: Credits
    plan_id: PlanTier
    reason: Optional[DenyReason] = None
    message: Optional[str] = None
    required_plan: Optional[PlanTier] = None

    def as_dict(self) -> dict:
        return {
            "feature": self.feature.value,
            "allowed": self.allowed,
            "remaining_credits": self.remaining_credits,
            "plan_id": self.plan_id.value,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "required_plan": self.required_plan.value if self.required_plan else None,
        }


class UsageSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan_id: PlanTier
    window_start: datetime
    window_end: datetime
    used: int
    limit: Optional[int] = None
    remaining_credits: Credits
    limit_reached: bool
    has_ever_paid: bool


class PlanOverview(BaseModel):
    """Plan badge data: what governs the user now and when it ends."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan_id: PlanTier
    plan_name: str
    source_kind: SourceKind
    expires_at: Optional[datetime] = None
    expired: bool
    expiring_soon: bool
    days_remaining: Optional[int] = None
    has_ever_paid: bool
    stored_plan_id: PlanTier
    paused_reward_plan_id: Optional[PlanTier] = None
