"""
legalinsight/features/entitlements/service.py

Entitlement Gate.

Handles:
- Loading a PlanState (plan record, rewards, promos, ever-paid flag, usage)
- evaluate(): the pure per-feature decision
- check_feature(): load + evaluate, failing closed on store errors
- require_feature(): raise EntitlementDeniedError when blocked
- Usage summary and plan overview for display
"""

from datetime import timedelta
from typing import Dict, Optional
import logging
import math

from sqlalchemy.exc import SQLAlchemyError

from legalinsight.core.clock import Clock, resolve_clock
from legalinsight.core.config import settings
from legalinsight.core.database import get_db_session
from legalinsight.core.errors import EntitlementDeniedError, TransientQueryError
from legalinsight.features.entitlements.policy import Access, access_for, deny_message, required_plan
from legalinsight.features.entitlements.resolver import is_expired, resolve_effective_plan
from legalinsight.features.plans.service import get_plan_record
from legalinsight.features.promo.service import fetch_active_redemptions
from legalinsight.features.purchases.service import has_ever_paid
from legalinsight.features.referrals.service import fetch_active_rewards
from legalinsight.features.usage.service import (
    count_usage,
    metering_window,
    monthly_credit_limit,
    remaining_credits,
)
from legalinsight.models.entitlement import (
    UNLIMITED,
    DenyReason,
    EntitlementDecision,
    Feature,
    PlanOverview,
    PlanState,
    UsageSummary,
)
from legalinsight.models.plan import PlanTier


logger = logging.getLogger(__name__)


def load_plan_state(user_id: str, clock: Optional[Clock] = None) -> PlanState:
    """
    Gather everything the gate needs for one decision.

    Raises:
        TransientQueryError: plan, reward, promo or purchase reads failed
    """
    now = resolve_clock(clock).now()
    record = get_plan_record(user_id)
    try:
        with get_db_session() as session:
            rewards = fetch_active_rewards(session, user_id, now)
            promos = fetch_active_redemptions(session, user_id, now)
    except SQLAlchemyError as exc:
        raise TransientQueryError(f"Failed to read grants for user {user_id}") from exc

    effective = resolve_effective_plan(now, record, rewards, promos)
    expired = is_expired(effective, now)
    ever_paid = has_ever_paid(user_id)

    gating = PlanTier.FREE if expired else effective.plan_id
    window_start, window_end = metering_window(gating, now, effective.started_at)
    used = count_usage(user_id, gating, window_start, window_end)

    return PlanState(
        user_id=user_id,
        now=now,
        effective=effective,
        expired=expired,
        has_ever_paid=ever_paid,
        used=used,
        window_start=window_start,
        window_end=window_end,
        plan_record=record,
    )


def _metered_denial(state: PlanState) -> DenyReason:
    plan = state.gating_plan
    if state.expired:
        return DenyReason.PLAN_EXPIRED
    if plan is PlanTier.FREE:
        return DenyReason.FREE_CREDITS_UNAVAILABLE if state.has_ever_paid else DenyReason.FREE_LIMIT_REACHED
    if plan is PlanTier.BASIC:
        return DenyReason.BASIC_LIMIT_REACHED
    if plan is PlanTier.PAY_PER_USE:
        return DenyReason.PAY_PER_USE_CONSUMED
    if plan is PlanTier.PREMIUM:
        raise ValueError("premium analysis is never metered")
    raise ValueError(f"Unhandled plan tier: {plan}")


def evaluate(feature: Feature, state: PlanState) -> EntitlementDecision:
    """
    Decide whether feature is available under state. No side effects.

    Expired paid plans gate as free. Users who have ever paid keep the
    advanced analysis-viewing features but get no free analysis credits.
    """
    plan = state.gating_plan
    credits = remaining_credits(plan, state.used, state.has_ever_paid)
    access = access_for(feature)

    def allow() -> EntitlementDecision:
        return EntitlementDecision(feature=feature, allowed=True, remaining_credits=credits, plan_id=plan)

    def deny(reason: DenyReason) -> EntitlementDecision:
        return EntitlementDecision(
            feature=feature,
            allowed=False,
            remaining_credits=credits,
            plan_id=plan,
            reason=reason,
            message=deny_message(reason),
            required_plan=required_plan(feature),
        )

    if access is Access.EVERYONE:
        return allow()

    if access is Access.METERED:
        if credits == UNLIMITED or credits > 0:
            return allow()
        return deny(_metered_denial(state))

    if access is Access.PAID_OR_PRIOR_PURCHASE:
        if plan.is_paid or state.has_ever_paid:
            return allow()
        return deny(DenyReason.PLAN_EXPIRED if state.expired else DenyReason.REQUIRES_PAID_PLAN)

    if access is Access.PREMIUM:
        if plan is PlanTier.PREMIUM:
            return allow()
        return deny(DenyReason.PLAN_EXPIRED if state.expired else DenyReason.REQUIRES_PREMIUM)

    raise ValueError(f"Unhandled access rule: {access}")


def _failed_decision(feature: Feature) -> EntitlementDecision:
    return EntitlementDecision(
        feature=feature,
        allowed=False,
        remaining_credits=0,
        plan_id=PlanTier.FREE,
        reason=DenyReason.ENTITLEMENT_CHECK_FAILED,
        message=deny_message(DenyReason.ENTITLEMENT_CHECK_FAILED),
    )


def check_feature(user_id: str, feature: Feature, clock: Optional[Clock] = None) -> EntitlementDecision:
    """Load state and evaluate; a failed load denies (fails closed)."""
    try:
        state = load_plan_state(user_id, clock)
    except TransientQueryError as exc:
        logger.warning(
            "[entitlements] check failed, denying",
            extra={"user_id": user_id, "feature": feature.value, "error": exc.message},
        )
        return _failed_decision(feature)

    decision = evaluate(feature, state)
    if not decision.allowed:
        logger.info(
            "[entitlements] feature denied",
            extra={
                "user_id": user_id,
                "feature": feature.value,
                "plan_id": decision.plan_id.value,
                "reason": decision.reason.value if decision.reason else None,
                "used": state.used,
            },
        )
    return decision


def require_feature(user_id: str, feature: Feature, clock: Optional[Clock] = None) -> EntitlementDecision:
    """Return the allowing decision or raise EntitlementDeniedError."""
    decision = check_feature(user_id, feature, clock)
    if decision.allowed:
        return decision
    raise EntitlementDeniedError(
        decision.message or "Feature not available on your plan",
        reason=decision.reason.value if decision.reason else DenyReason.ENTITLEMENT_CHECK_FAILED.value,
        feature=feature.value,
        plan_id=decision.plan_id.value,
        required_plan=decision.required_plan.value if decision.required_plan else None,
        remaining_credits=decision.remaining_credits,
    )


def evaluate_all(user_id: str, clock: Optional[Clock] = None) -> Dict[Feature, EntitlementDecision]:
    """Decisions for every feature from a single state load."""
    try:
        state = load_plan_state(user_id, clock)
    except TransientQueryError as exc:
        logger.warning(
            "[entitlements] check failed, denying all",
            extra={"user_id": user_id, "error": exc.message},
        )
        return {feature: _failed_decision(feature) for feature in Feature}
    return {feature: evaluate(feature, state) for feature in Feature}


def usage_summary(user_id: str, clock: Optional[Clock] = None) -> UsageSummary:
    state = load_plan_state(user_id, clock)
    plan = state.gating_plan
    limit = monthly_credit_limit(plan, state.has_ever_paid)
    credits = remaining_credits(plan, state.used, state.has_ever_paid)
    return UsageSummary(
        plan_id=plan,
        window_start=state.window_start,
        window_end=state.window_end,
        used=state.used,
        limit=limit,
        remaining_credits=credits,
        limit_reached=credits != UNLIMITED and credits <= 0,
        has_ever_paid=state.has_ever_paid,
    )


def plan_overview(user_id: str, clock: Optional[Clock] = None) -> PlanOverview:
    """Effective plan with expiry flags; expiring_soon covers the last EXPIRING_SOON_DAYS."""
    state = load_plan_state(user_id, clock)
    effective = state.effective
    expires_at = effective.expires_at
    days_remaining = None
    expiring_soon = False
    if expires_at is not None and not state.expired:
        left = expires_at - state.now
        days_remaining = max(0, math.ceil(left / timedelta(days=1)))
        expiring_soon = left <= timedelta(days=settings.EXPIRING_SOON_DAYS)

    record = state.plan_record
    return PlanOverview(
        user_id=user_id,
        plan_id=state.gating_plan,
        plan_name=state.gating_plan.display_name,
        source_kind=effective.source_kind,
        expires_at=expires_at,
        expired=state.expired,
        expiring_soon=expiring_soon,
        days_remaining=days_remaining,
        has_ever_paid=state.has_ever_paid,
        stored_plan_id=record.plan_id if record else PlanTier.FREE,
        paused_reward_plan_id=record.paused_reward.reward_plan_id if record and record.paused_reward else None,
    )
