"""Seed helpers shared by the entitlement tests."""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import insert

from legalinsight.core.clock import FixedClock, month_year
from legalinsight.core.database import get_db_session, referral_rewards
from legalinsight.features.billing.service import apply_purchase
from legalinsight.features.documents.service import record_document
from legalinsight.features.plans.service import write_plan_record
from legalinsight.models.plan import PausedReward, PlanTier
from legalinsight.models.purchase import PurchaseStatus


def give_plan(
    user_id: str,
    plan_id: PlanTier,
    *,
    started_at: datetime,
    expires_at: Optional[datetime] = None,
    paused_reward: Optional[PausedReward] = None,
):
    with get_db_session() as session:
        return write_plan_record(
            session,
            user_id,
            plan_id=plan_id,
            started_at=started_at,
            expires_at=expires_at,
            now=started_at,
            paused_reward=paused_reward,
        )


def add_documents(user_id: str, at: datetime, count: int = 1):
    clock = FixedClock(at)
    return [record_document(user_id, f"contract-{i}", clock=clock) for i in range(count)]


def grant_reward(user_id: str, plan_id: PlanTier, *, starts_at: datetime, expires_at: datetime) -> str:
    reward_id = str(uuid.uuid4())
    with get_db_session() as session:
        session.execute(
            insert(referral_rewards).values(
                id=reward_id,
                user_id=user_id,
                month_year=month_year(starts_at),
                plan_id=plan_id.value,
                referral_count=1 if plan_id is PlanTier.BASIC else 2,
                starts_at=starts_at,
                expires_at=expires_at,
                created_at=starts_at,
            )
        )
    return reward_id


def buy(
    user_id: str,
    plan_id: PlanTier,
    clock,
    *,
    order_id: Optional[str] = None,
    status: PurchaseStatus = PurchaseStatus.COMPLETED,
    expires_at: Optional[datetime] = None,
):
    return apply_purchase(
        user_id,
        plan_id,
        10.0 if plan_id is PlanTier.BASIC else 30.0,
        "USD",
        status,
        expires_at,
        order_id=order_id or f"order-{uuid.uuid4().hex[:8]}",
        product_id="test-product",
        clock=clock,
    )
