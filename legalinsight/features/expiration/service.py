"""
legalinsight/features/expiration/service.py

Expiration Sweeper.

A paid plan past its expiry is moved back to free, or to the referral
reward it paused, with the time that reward had left. The plan update is a
compare-and-swap on the observed (plan_id, expires_at): when several
sweepers race, exactly one wins, and only the winner restores the reward
and writes the notification. Everything happens in one transaction.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional
import json
import logging

from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError

from legalinsight.core.clock import Clock, resolve_clock
from legalinsight.core.config import settings
from legalinsight.core.database import get_db_session, plan_job_runs
from legalinsight.core.errors import AppError, InconsistentWriteError
from legalinsight.features.notifications.service import record_notification
from legalinsight.features.plans.service import (
    compare_and_swap_plan,
    fetch_plan_record,
    list_expired_plan_user_ids,
)
from legalinsight.features.referrals.service import restore_reward
from legalinsight.models.notification import NotificationKind
from legalinsight.models.plan import PlanTier


logger = logging.getLogger(__name__)

SWEEP_JOB_NAME = "plans.expiration_sweep"


class SweepOutcome(str, Enum):
    NOOP = "noop"
    REVERTED_TO_FREE = "reverted_to_free"
    REWARD_RESTORED = "reward_restored"
    LOST_RACE = "lost_race"


@dataclass(frozen=True)
class SweepResult:
    user_id: str
    outcome: SweepOutcome
    plan_id: Optional[PlanTier] = None
    expires_at: Optional[datetime] = None

    @property
    def changed(self) -> bool:
        return self.outcome in (SweepOutcome.REVERTED_TO_FREE, SweepOutcome.REWARD_RESTORED)


def sweep_user_plan(user_id: str, clock: Optional[Clock] = None) -> SweepResult:
    """
    Apply the expiry transition for one user if it is due.

    No-op when there is no record, the plan is free or non-expiring, or
    now <= expires_at. Safe to call repeatedly and concurrently.
    """
    now = resolve_clock(clock).now()
    try:
        with get_db_session() as session:
            record = fetch_plan_record(session, user_id)
            if (
                record is None
                or record.plan_id is PlanTier.FREE
                or record.expires_at is None
                or now <= record.expires_at
            ):
                return SweepResult(
                    user_id=user_id,
                    outcome=SweepOutcome.NOOP,
                    plan_id=record.plan_id if record else None,
                    expires_at=record.expires_at if record else None,
                )

            paused = record.paused_reward
            if paused is not None and paused.remaining_time_ms > 0:
                target = paused.reward_plan_id
                restored_expiry = now + timedelta(milliseconds=paused.remaining_time_ms)
            else:
                target = PlanTier.FREE
                restored_expiry = None

            won = compare_and_swap_plan(
                session,
                user_id,
                expected_plan_id=record.plan_id,
                expected_expires_at=record.expires_at,
                plan_id=target,
                started_at=now,
                expires_at=restored_expiry,
                now=now,
            )
            if not won:
                logger.info(
                    "[sweeper] plan already transitioned by another sweeper",
                    extra={"user_id": user_id, "plan_id": record.plan_id.value},
                )
                return SweepResult(user_id=user_id, outcome=SweepOutcome.LOST_RACE)

            if target is PlanTier.FREE:
                outcome = SweepOutcome.REVERTED_TO_FREE
                message = "Your subscription has expired. You've been moved to the free plan."
                kind = NotificationKind.PLAN_EXPIRED
            else:
                restored_expiry = restore_reward(session, user_id, paused, now)
                outcome = SweepOutcome.REWARD_RESTORED
                message = (
                    f"Your subscription has expired. You've been switched back to your "
                    f"{target.display_name} referral reward."
                )
                kind = NotificationKind.REWARD_RESTORED

            record_notification(session, user_id, kind, "Subscription expired", message, now)
    except SQLAlchemyError as exc:
        raise InconsistentWriteError(f"Expiration sweep for user {user_id} was rolled back") from exc

    logger.info(
        "[sweeper] plan expired",
        extra={
            "user_id": user_id,
            "previous_plan_id": record.plan_id.value,
            "plan_id": target.value,
            "outcome": outcome.value,
            "expires_at": restored_expiry.isoformat() if restored_expiry else None,
        },
    )
    return SweepResult(user_id=user_id, outcome=outcome, plan_id=target, expires_at=restored_expiry)


@dataclass
class SweepStats:
    candidates: int = 0
    reverted_to_free: int = 0
    reward_restored: int = 0
    lost_race: int = 0
    noop: int = 0
    errors: int = 0
    failed_user_ids: list = field(default_factory=list)

    def record(self, result: SweepResult) -> None:
        if result.outcome is SweepOutcome.REVERTED_TO_FREE:
            self.reverted_to_free += 1
        elif result.outcome is SweepOutcome.REWARD_RESTORED:
            self.reward_restored += 1
        elif result.outcome is SweepOutcome.LOST_RACE:
            self.lost_race += 1
        else:
            self.noop += 1

    def as_dict(self) -> Dict[str, Any]:
        return {
            "candidates": self.candidates,
            "reverted_to_free": self.reverted_to_free,
            "reward_restored": self.reward_restored,
            "lost_race": self.lost_race,
            "noop": self.noop,
            "errors": self.errors,
            "failed_user_ids": list(self.failed_user_ids),
        }


def sweep_expired_plans(clock: Optional[Clock] = None, limit: Optional[int] = None) -> Dict[str, Any]:
    """
    Server-side batch sweep over every plan past its expiry.

    A failure for one user is logged and counted; the batch continues.
    The run is recorded in plan_job_runs.
    """
    clock = resolve_clock(clock)
    started_at = clock.now()
    batch = limit if limit is not None else settings.EXPIRATION_SWEEP_BATCH_SIZE
    stats = SweepStats()

    user_ids = list_expired_plan_user_ids(started_at, batch)
    stats.candidates = len(user_ids)
    for user_id in user_ids:
        try:
            stats.record(sweep_user_plan(user_id, clock=clock))
        except AppError as exc:
            stats.errors += 1
            stats.failed_user_ids.append(user_id)
            logger.error(
                "[sweeper] sweep failed for user",
                extra={"user_id": user_id, "error_code": exc.code, "error": exc.message},
            )

    status = "success" if stats.errors == 0 else "partial"
    with get_db_session() as session:
        session.execute(
            insert(plan_job_runs).values(
                job_name=SWEEP_JOB_NAME,
                started_at=started_at,
                finished_at=clock.now(),
                status=status,
                stats_json=json.dumps(stats.as_dict()),
            )
        )

    logger.info("[sweeper] batch complete", extra={"status": status, **stats.as_dict()})
    return {"status": status, "timestamp": started_at.isoformat(), **stats.as_dict()}
