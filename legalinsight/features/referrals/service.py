"""
legalinsight/features/referrals/service.py

Referral Reward Ledger.

Handles:
- Recording who referred whom
- Granting the referrer a monthly reward when a referred user first pays
  (1 qualifying referral in a month -> basic, 2 or more -> premium)
- Pausing the active reward when a purchase supersedes it
- Restoring a paused reward when the superseding plan expires
- Referral statistics
"""

from datetime import datetime, timedelta
from typing import List, Optional
import logging
import uuid

from sqlalchemy import select, insert, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from legalinsight.core.clock import (
    Clock,
    ensure_utc,
    month_year,
    resolve_clock,
    start_of_month,
    start_of_next_month,
)
from legalinsight.core.config import settings
from legalinsight.core.database import get_db_session, referrals, referral_rewards, user_plans
from legalinsight.core.errors import ConflictError, ValidationError
from legalinsight.features.notifications.service import record_notification
from legalinsight.features.plans.service import fetch_plan_record, serialize_paused_reward
from legalinsight.models.notification import NotificationKind
from legalinsight.models.plan import PausedReward, PlanTier
from legalinsight.models.referral import Referral, ReferralRewardRecord, ReferralStats


logger = logging.getLogger(__name__)


def reward_tier_for(qualifying_referrals: int) -> Optional[PlanTier]:
    if qualifying_referrals >= 2:
        return PlanTier.PREMIUM
    if qualifying_referrals == 1:
        return PlanTier.BASIC
    return None


def _row_to_reward(row) -> ReferralRewardRecord:
    return ReferralRewardRecord(
        id=row.id,
        user_id=row.user_id,
        month_year=row.month_year,
        plan_id=PlanTier(row.plan_id),
        referral_count=row.referral_count,
        starts_at=ensure_utc(row.starts_at),
        expires_at=ensure_utc(row.expires_at),
    )


def _row_to_referral(row) -> Referral:
    return Referral(
        id=row.id,
        referrer_user_id=row.referrer_user_id,
        referred_user_id=row.referred_user_id,
        referral_email=row.referral_email,
        created_at=ensure_utc(row.created_at),
        first_paid_purchase_at=ensure_utc(row.first_paid_purchase_at),
        reward_granted=bool(row.reward_granted),
    )


def record_referral(
    referrer_user_id: str,
    referred_user_id: str,
    referral_email: str,
    clock: Optional[Clock] = None,
) -> Referral:
    """Record that referred_user_id signed up through referrer_user_id."""
    if referrer_user_id == referred_user_id:
        raise ValidationError("Users cannot refer themselves")
    email = (referral_email or "").strip().lower()
    if not email:
        raise ValidationError("referral_email is required")

    now = resolve_clock(clock).now()
    referral_id = str(uuid.uuid4())
    try:
        with get_db_session() as session:
            session.execute(
                insert(referrals).values(
                    id=referral_id,
                    referrer_user_id=referrer_user_id,
                    referred_user_id=referred_user_id,
                    referral_email=email,
                    reward_granted=False,
                    created_at=now,
                )
            )
    except IntegrityError:
        raise ConflictError(f"User {referred_user_id} already has a referrer")

    logger.info(
        "[referrals] referral recorded",
        extra={"referrer_user_id": referrer_user_id, "referred_user_id": referred_user_id},
    )
    return Referral(
        id=referral_id,
        referrer_user_id=referrer_user_id,
        referred_user_id=referred_user_id,
        referral_email=email,
        created_at=now,
    )


def fetch_rewards(session: Session, user_id: str) -> List[ReferralRewardRecord]:
    rows = session.execute(
        select(referral_rewards)
        .where(referral_rewards.c.user_id == user_id)
        .order_by(referral_rewards.c.expires_at.desc())
    ).all()
    return [_row_to_reward(row) for row in rows]


def fetch_active_rewards(session: Session, user_id: str, now: datetime) -> List[ReferralRewardRecord]:
    """Rewards with starts_at <= now < expires_at, latest expiry first."""
    return [reward for reward in fetch_rewards(session, user_id) if reward.is_active(now)]


def active_rewards(user_id: str, now: datetime) -> List[ReferralRewardRecord]:
    with get_db_session() as session:
        return fetch_active_rewards(session, user_id, now)


def pause_reward(session: Session, user_id: str, now: datetime) -> Optional[PausedReward]:
    """
    Freeze the user's active rewards.

    Every active reward's expiry is pulled forward to now. The snapshot
    keeps the highest tier among them and their combined remaining
    lifetime. Runs in the caller's transaction.
    """
    active = fetch_active_rewards(session, user_id, now)
    if not active:
        return None
    reward = max(active, key=lambda r: (r.plan_id is PlanTier.PREMIUM, r.expires_at))
    remaining_ms = sum(int((r.expires_at - now).total_seconds() * 1000) for r in active)

    session.execute(
        update(referral_rewards)
        .where(referral_rewards.c.id.in_([r.id for r in active]))
        .values(expires_at=now)
    )
    logger.info(
        "[referrals] reward paused",
        extra={
            "user_id": user_id,
            "reward_id": reward.id,
            "plan_id": reward.plan_id.value,
            "remaining_time_ms": remaining_ms,
            "paused_count": len(active),
        },
    )
    return PausedReward(
        reward_plan_id=reward.plan_id,
        remaining_time_ms=remaining_ms,
        original_expiry=reward.expires_at,
        reward_id=reward.id,
    )


def defer_pending_rewards(session: Session, user_id: str, now: datetime, until: datetime) -> int:
    """
    Push rewards that have not started yet so they start no earlier than until.

    Durations are preserved. Returns the number of rewards moved.
    """
    moved = 0
    for reward in fetch_rewards(session, user_id):
        if reward.starts_at <= now or reward.starts_at >= until:
            continue
        duration = reward.expires_at - reward.starts_at
        session.execute(
            update(referral_rewards)
            .where(referral_rewards.c.id == reward.id)
            .values(starts_at=until, expires_at=until + duration)
        )
        moved += 1
    return moved


def restore_reward(session: Session, user_id: str, paused: PausedReward, now: datetime) -> datetime:
    """
    Re-activate a paused reward for its remaining lifetime.

    Returns the restored expiry (now + remaining time).
    """
    restored_expiry = now + timedelta(milliseconds=paused.remaining_time_ms)
    stmt = update(referral_rewards).where(referral_rewards.c.user_id == user_id)
    if paused.reward_id:
        stmt = stmt.where(referral_rewards.c.id == paused.reward_id)
    else:
        stmt = stmt.where(referral_rewards.c.plan_id == paused.reward_plan_id.value).where(
            referral_rewards.c.expires_at <= now
        )
    result = session.execute(stmt.values(starts_at=now, expires_at=restored_expiry))
    if result.rowcount == 0:
        logger.warning(
            "[referrals] paused reward row missing, restoring on plan record only",
            extra={"user_id": user_id, "reward_id": paused.reward_id},
        )
    logger.info(
        "[referrals] reward restored",
        extra={
            "user_id": user_id,
            "reward_id": paused.reward_id,
            "plan_id": paused.reward_plan_id.value,
            "expires_at": restored_expiry.isoformat(),
        },
    )
    return restored_expiry


def _count_qualifying(session: Session, referrer_user_id: str, now: datetime) -> int:
    return int(
        session.execute(
            select(func.count())
            .select_from(referrals)
            .where(referrals.c.referrer_user_id == referrer_user_id)
            .where(referrals.c.first_paid_purchase_at >= start_of_month(now))
            .where(referrals.c.first_paid_purchase_at < start_of_next_month(now))
        ).scalar()
        or 0
    )


def _reward_start(session: Session, user_id: str, now: datetime) -> datetime:
    """
    Start of a newly granted reward.

    Rewards chain rather than overlap: a new one starts after an unexpired
    paid plan (plus the paused reward it holds) and after every reward
    that is running or waiting to start.
    """
    start = now
    record = fetch_plan_record(session, user_id)
    if record and record.plan_id.is_paid and record.expires_at is not None and record.expires_at > now:
        start = record.expires_at
        if record.paused_reward:
            start += timedelta(milliseconds=record.paused_reward.remaining_time_ms)
    for reward in fetch_rewards(session, user_id):
        if reward.expires_at > start:
            start = reward.expires_at
    return start


def mark_first_paid_purchase(session: Session, referred_user_id: str, now: datetime) -> Optional[ReferralRewardRecord]:
    """
    Credit the referrer when a referred user completes their first purchase.

    Grants or upgrades the referrer's reward for the current month. Runs in
    the caller's (purchase ingestion) transaction.
    """
    row = session.execute(
        select(referrals)
        .where(referrals.c.referred_user_id == referred_user_id)
        .where(referrals.c.first_paid_purchase_at.is_(None))
    ).first()
    if not row:
        return None

    referrer_id = row.referrer_user_id
    session.execute(
        update(referrals)
        .where(referrals.c.id == row.id)
        .values(first_paid_purchase_at=now)
    )

    qualifying = _count_qualifying(session, referrer_id, now)
    tier = reward_tier_for(qualifying)
    if tier is None:
        return None

    key = month_year(now)
    existing = session.execute(
        select(referral_rewards)
        .where(referral_rewards.c.user_id == referrer_id)
        .where(referral_rewards.c.month_year == key)
    ).first()

    if existing:
        reward = _row_to_reward(existing).model_copy(update={"plan_id": tier, "referral_count": qualifying})
        session.execute(
            update(referral_rewards)
            .where(referral_rewards.c.id == reward.id)
            .values(plan_id=tier.value, referral_count=qualifying)
        )
        _upgrade_paused_snapshot(session, referrer_id, reward.id, tier)
    else:
        starts_at = _reward_start(session, referrer_id, now)
        reward = ReferralRewardRecord(
            id=str(uuid.uuid4()),
            user_id=referrer_id,
            month_year=key,
            plan_id=tier,
            referral_count=qualifying,
            starts_at=starts_at,
            expires_at=starts_at + timedelta(days=settings.REFERRAL_REWARD_DAYS),
        )
        session.execute(
            insert(referral_rewards).values(
                id=reward.id,
                user_id=referrer_id,
                month_year=key,
                plan_id=tier.value,
                referral_count=qualifying,
                starts_at=reward.starts_at,
                expires_at=reward.expires_at,
                created_at=now,
            )
        )

    session.execute(
        update(referrals)
        .where(referrals.c.id == row.id)
        .values(reward_granted=True, reward_month_year=key, reward_plan_id=tier.value)
    )
    record_notification(
        session,
        referrer_id,
        NotificationKind.REFERRAL_REWARD,
        "Referral reward earned",
        f"Thanks for referring a friend! You've earned the {tier.display_name} as a referral reward.",
        now,
    )
    logger.info(
        "[referrals] reward granted",
        extra={
            "user_id": referrer_id,
            "referred_user_id": referred_user_id,
            "plan_id": tier.value,
            "month_year": key,
            "referral_count": qualifying,
        },
    )
    return reward


def _upgrade_paused_snapshot(session: Session, user_id: str, reward_id: str, tier: PlanTier) -> None:
    record = fetch_plan_record(session, user_id)
    if not record or not record.paused_reward or record.paused_reward.reward_id != reward_id:
        return
    upgraded = record.paused_reward.model_copy(update={"reward_plan_id": tier})
    session.execute(
        update(user_plans)
        .where(user_plans.c.user_id == user_id)
        .values(paused_referral_reward=serialize_paused_reward(upgraded))
    )


def referral_stats(user_id: str, clock: Optional[Clock] = None) -> ReferralStats:
    now = resolve_clock(clock).now()
    with get_db_session() as session:
        total = session.execute(
            select(func.count()).select_from(referrals).where(referrals.c.referrer_user_id == user_id)
        ).scalar() or 0
        qualifying = _count_qualifying(session, user_id, now)
        active = fetch_active_rewards(session, user_id, now)
    return ReferralStats(
        total_referrals=int(total),
        qualifying_referrals_this_month=qualifying,
        month_year=month_year(now),
        current_reward=active[0] if active else None,
    )


def list_referrals(referrer_user_id: str) -> List[Referral]:
    with get_db_session() as session:
        rows = session.execute(
            select(referrals)
            .where(referrals.c.referrer_user_id == referrer_user_id)
            .order_by(referrals.c.created_at.desc())
        ).all()
    return [_row_to_referral(row) for row in rows]
