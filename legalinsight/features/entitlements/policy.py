"""
Canonical feature policy.

Every feature maps to exactly one access rule. Callers never re-derive
access from plan names; they go through this table.
"""

from enum import Enum
from typing import Optional

from legalinsight.models.entitlement import DenyReason, Feature
from legalinsight.models.plan import PlanTier


class Access(str, Enum):
    EVERYONE = "everyone"
    # Consumes a credit from the metering window
    METERED = "metered"
    # Active basic, pay-per-use or premium, or any user who has ever paid
    PAID_OR_PRIOR_PURCHASE = "paid-or-prior-purchase"
    PREMIUM = "premium"


FEATURE_POLICY = {
    Feature.ANALYSIS: Access.METERED,
    Feature.VIEW_ANALYSIS: Access.EVERYONE,
    Feature.IMPROVEMENT_SUGGESTIONS: Access.PAID_OR_PRIOR_PURCHASE,
    Feature.SIDE_BY_SIDE_COMPARISON: Access.PAID_OR_PRIOR_PURCHASE,
    Feature.ADVANCED_CLAUSE_SUGGESTIONS: Access.PAID_OR_PRIOR_PURCHASE,
    Feature.DOWNLOADABLE_IMPROVEMENTS: Access.PAID_OR_PRIOR_PURCHASE,
    Feature.CLAUSE_EXPLANATIONS: Access.PAID_OR_PRIOR_PURCHASE,
    Feature.AGREEMENT_GENERATOR: Access.PREMIUM,
    Feature.LEGAL_CHAT: Access.PREMIUM,
    Feature.DISPUTE_RESPONSE: Access.PREMIUM,
    Feature.JURISDICTION_SUGGESTIONS: Access.PREMIUM,
}


DENY_MESSAGES = {
    DenyReason.FREE_LIMIT_REACHED: "You've used your one free analysis for this month. Upgrade your plan to analyze more documents.",
    DenyReason.FREE_CREDITS_UNAVAILABLE: "Free analyses are only available before your first purchase. Choose a plan to analyze more documents.",
    DenyReason.BASIC_LIMIT_REACHED: "You've used all of this month's Basic Plan analyses. Upgrade to Premium for unlimited analyses.",
    DenyReason.PAY_PER_USE_CONSUMED: "You've used your pay-per-document purchase. Buy another document analysis to continue.",
    DenyReason.PLAN_EXPIRED: "Your subscription has expired. Please renew to access this feature.",
    DenyReason.REQUIRES_PAID_PLAN: "This feature requires a paid plan. Upgrade to unlock advanced analysis features.",
    DenyReason.REQUIRES_PREMIUM: "This feature requires an active Premium Subscription.",
    DenyReason.ENTITLEMENT_CHECK_FAILED: "We couldn't verify your plan right now. Please try again in a moment.",
}


def access_for(feature: Feature) -> Access:
    return FEATURE_POLICY[feature]


def required_plan(feature: Feature) -> Optional[PlanTier]:
    """Lowest tier that unlocks the feature, for locked-feature messaging."""
    access = FEATURE_POLICY[feature]
    if access is Access.EVERYONE or access is Access.METERED:
        return None
    if access is Access.PAID_OR_PRIOR_PURCHASE:
        return PlanTier.BASIC
    if access is Access.PREMIUM:
        return PlanTier.PREMIUM
    raise ValueError(f"Unhandled access rule: {access}")


def deny_message(reason: DenyReason) -> str:
    return DENY_MESSAGES[reason]
