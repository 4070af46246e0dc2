"""Referral recording and reward grants."""
from datetime import datetime, timedelta, timezone

import pytest

from legalinsight.core.clock import FixedClock
from legalinsight.core.errors import ConflictError, ValidationError
from legalinsight.features.entitlements.service import check_feature, load_plan_state
from legalinsight.features.notifications.service import list_notifications
from legalinsight.features.plans.service import get_plan_record
from legalinsight.features.referrals.service import (
    active_rewards,
    fetch_rewards,
    list_referrals,
    record_referral,
    referral_stats,
    reward_tier_for,
)
from legalinsight.core.database import get_db_session
from legalinsight.models.entitlement import Feature, SourceKind
from legalinsight.models.notification import NotificationKind
from legalinsight.models.plan import PlanTier
from legalinsight.tests.factories import buy, grant_reward


def _rewards(user_id):
    with get_db_session() as session:
        return fetch_rewards(session, user_id)


def test_reward_tiers():
    assert reward_tier_for(0) is None
    assert reward_tier_for(1) is PlanTier.BASIC
    assert reward_tier_for(2) is PlanTier.PREMIUM
    assert reward_tier_for(7) is PlanTier.PREMIUM


def test_record_referral_validation(clock):
    with pytest.raises(ValidationError):
        record_referral("user_r", "user_r", "r@example.com", clock=clock)
    with pytest.raises(ValidationError):
        record_referral("user_r", "user_a", "  ", clock=clock)

    referral = record_referral("user_r", "user_a", " A@Example.com ", clock=clock)
    assert referral.referral_email == "a@example.com"
    assert referral.reward_granted is False

    with pytest.raises(ConflictError):
        record_referral("user_other", "user_a", "a@example.com", clock=clock)


def test_first_purchase_grants_basic_reward(clock):
    record_referral("user_r", "user_a", "a@example.com", clock=clock)
    buy("user_a", PlanTier.BASIC, clock)

    rewards = _rewards("user_r")
    assert len(rewards) == 1
    assert rewards[0].plan_id is PlanTier.BASIC
    assert rewards[0].month_year == "2025-03"
    assert rewards[0].starts_at == clock.now()
    assert rewards[0].expires_at == clock.now() + timedelta(days=30)

    referral = list_referrals("user_r")[0]
    assert referral.reward_granted is True
    assert referral.first_paid_purchase_at == clock.now()

    kinds = [n.kind for n in list_notifications("user_r")]
    assert kinds == [NotificationKind.REFERRAL_REWARD]


def test_second_referral_in_a_month_upgrades_to_premium(clock):
    record_referral("user_r", "user_a", "a@example.com", clock=clock)
    record_referral("user_r", "user_b", "b@example.com", clock=clock)
    buy("user_a", PlanTier.BASIC, clock)
    clock.advance(days=2)
    buy("user_b", PlanTier.PREMIUM, clock)

    rewards = _rewards("user_r")
    assert len(rewards) == 1
    assert rewards[0].plan_id is PlanTier.PREMIUM
    assert rewards[0].referral_count == 2

    stats = referral_stats("user_r", clock=clock)
    assert stats.total_referrals == 2
    assert stats.qualifying_referrals_this_month == 2
    assert stats.current_reward.plan_id is PlanTier.PREMIUM


def test_only_the_first_purchase_qualifies(clock):
    record_referral("user_r", "user_a", "a@example.com", clock=clock)
    buy("user_a", PlanTier.BASIC, clock)
    clock.advance(days=31)
    buy("user_a", PlanTier.BASIC, clock)

    assert len(_rewards("user_r")) == 1
    assert referral_stats("user_r", clock=clock).qualifying_referrals_this_month == 0


def test_referrals_in_a_new_month_start_a_new_reward(clock):
    record_referral("user_r", "user_a", "a@example.com", clock=clock)
    record_referral("user_r", "user_b", "b@example.com", clock=clock)
    buy("user_a", PlanTier.BASIC, clock)
    clock.advance(days=25)
    buy("user_b", PlanTier.BASIC, clock)

    rewards = sorted(_rewards("user_r"), key=lambda r: r.month_year)
    assert [r.month_year for r in rewards] == ["2025-03", "2025-04"]
    assert all(r.plan_id is PlanTier.BASIC for r in rewards)


def test_reward_waits_for_an_active_paid_plan(clock):
    buy("user_r", PlanTier.PREMIUM, clock)
    plan_end = get_plan_record("user_r").expires_at
    record_referral("user_r", "user_a", "a@example.com", clock=clock)

    clock.advance(days=1)
    buy("user_a", PlanTier.BASIC, clock)

    reward = _rewards("user_r")[0]
    assert reward.starts_at == plan_end
    assert reward.expires_at == plan_end + timedelta(days=30)
    assert referral_stats("user_r", clock=clock).current_reward is None


def test_upgrade_reaches_a_paused_reward(clock):
    record_referral("user_r", "user_a", "a@example.com", clock=clock)
    record_referral("user_r", "user_b", "b@example.com", clock=clock)
    buy("user_a", PlanTier.BASIC, clock)

    clock.advance(hours=1)
    buy("user_r", PlanTier.BASIC, clock)
    assert get_plan_record("user_r").paused_reward.reward_plan_id is PlanTier.BASIC

    clock.advance(hours=1)
    buy("user_b", PlanTier.BASIC, clock)

    paused = get_plan_record("user_r").paused_reward
    assert paused.reward_plan_id is PlanTier.PREMIUM
    assert paused.remaining_time_ms == int((timedelta(days=30) - timedelta(hours=1)).total_seconds() * 1000)


def test_rewards_from_consecutive_months_chain_and_yield_to_a_purchase():
    clock = FixedClock(datetime(2025, 1, 25, 12, 0, tzinfo=timezone.utc))
    record_referral("user_r", "user_a", "a@example.com", clock=clock)
    record_referral("user_r", "user_b", "b@example.com", clock=clock)
    buy("user_a", PlanTier.BASIC, clock)

    clock.advance(days=7)
    buy("user_b", PlanTier.BASIC, clock)

    january, february = sorted(_rewards("user_r"), key=lambda r: r.month_year)
    assert february.starts_at == january.expires_at
    assert len(active_rewards("user_r", clock.now())) == 1

    clock.advance(days=4)
    buy("user_r", PlanTier.PREMIUM, clock)

    assert active_rewards("user_r", clock.now()) == []
    state = load_plan_state("user_r", clock)
    assert state.effective.plan_id is PlanTier.PREMIUM
    assert state.effective.source_kind is SourceKind.EXPLICIT_PLAN
    assert check_feature("user_r", Feature.LEGAL_CHAT, clock).allowed is True


def test_purchase_pauses_every_overlapping_reward(clock):
    grant_reward(
        "user_r",
        PlanTier.BASIC,
        starts_at=clock.now() - timedelta(days=18),
        expires_at=clock.now() + timedelta(days=12),
    )
    premium_id = grant_reward(
        "user_r",
        PlanTier.PREMIUM,
        starts_at=clock.now() - timedelta(days=9),
        expires_at=clock.now() + timedelta(days=21),
    )

    buy("user_r", PlanTier.BASIC, clock)

    assert active_rewards("user_r", clock.now()) == []
    paused = get_plan_record("user_r").paused_reward
    assert paused.reward_id == premium_id
    assert paused.reward_plan_id is PlanTier.PREMIUM
    assert paused.remaining_time_ms == int(timedelta(days=33).total_seconds() * 1000)
    assert check_feature("user_r", Feature.LEGAL_CHAT, clock).allowed is False


def test_reward_earned_during_a_purchase_starts_after_the_paused_reward(clock):
    record_referral("user_r", "user_a", "a@example.com", clock=clock)
    grant_reward(
        "user_r",
        PlanTier.BASIC,
        starts_at=clock.now() - timedelta(days=40),
        expires_at=clock.now() + timedelta(days=5),
    )
    buy("user_r", PlanTier.PREMIUM, clock)
    plan_end = get_plan_record("user_r").expires_at

    buy("user_a", PlanTier.BASIC, clock)

    current_month = [r for r in _rewards("user_r") if r.month_year == "2025-03"]
    assert current_month[0].starts_at == plan_end + timedelta(days=5)
