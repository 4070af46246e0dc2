"""
Effective Plan Resolver.

Pure: no I/O, no clock reads. Precedence is promo code, then referral
reward, then the explicit plan record. Expiry of the explicit plan is
reported by is_expired, not applied here.
"""

from datetime import datetime
from typing import Iterable, Optional

from legalinsight.core.clock import ensure_utc
from legalinsight.models.entitlement import EffectivePlan, SourceKind
from legalinsight.models.plan import PlanRecord, PlanTier
from legalinsight.models.promo import PromoRedemption
from legalinsight.models.referral import ReferralRewardRecord


def _latest_valid(grants: Iterable, now: datetime):
    valid = [grant for grant in grants if grant.starts_at <= now < grant.expires_at]
    if not valid:
        return None
    return max(valid, key=lambda grant: grant.expires_at)


def resolve_effective_plan(
    now: datetime,
    plan_record: Optional[PlanRecord],
    referral_rewards: Iterable[ReferralRewardRecord] = (),
    promo_redemptions: Iterable[PromoRedemption] = (),
) -> EffectivePlan:
    now = ensure_utc(now)

    promo = _latest_valid(promo_redemptions, now)
    if promo is not None:
        return EffectivePlan(
            plan_id=promo.plan_id,
            expires_at=promo.expires_at,
            started_at=promo.starts_at,
            source_kind=SourceKind.PROMO_CODE,
        )

    reward = _latest_valid(referral_rewards, now)
    if reward is not None:
        return EffectivePlan(
            plan_id=reward.plan_id,
            expires_at=reward.expires_at,
            started_at=reward.starts_at,
            source_kind=SourceKind.REFERRAL_REWARD,
        )

    if plan_record is None:
        return EffectivePlan(plan_id=PlanTier.FREE, source_kind=SourceKind.EXPLICIT_PLAN)

    return EffectivePlan(
        plan_id=plan_record.plan_id,
        expires_at=plan_record.expires_at,
        started_at=plan_record.started_at,
        source_kind=SourceKind.EXPLICIT_PLAN,
    )


def is_expired(effective: EffectivePlan, now: datetime) -> bool:
    """True when the effective plan has a non-null expiry strictly before now."""
    if effective.plan_id is PlanTier.FREE or effective.expires_at is None:
        return False
    return ensure_utc(now) > effective.expires_at
