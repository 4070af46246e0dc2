"""
legalinsight/features/plans/service.py

Plan Store: the per-user plan record.

Handles:
- Plan catalog (tier names, prices, whether payment is required)
- Reading the plan record (with a last-known fallback on transient failures)
- Writing the plan record inside a caller-owned transaction
- Compare-and-swap updates used by the expiration sweeper
- Self-service plan selection (free only)
"""

from collections import OrderedDict
from datetime import datetime
from typing import Any, List, Optional
import logging

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from legalinsight.core.clock import Clock, ensure_utc, resolve_clock
from legalinsight.core.database import get_db_session, user_plans
from legalinsight.core.errors import ConflictError, TransientQueryError, ValidationError
from legalinsight.models.plan import PausedReward, PlanRecord, PlanTier


logger = logging.getLogger(__name__)


PLAN_CATALOG = {
    PlanTier.FREE: {"name": "Free Plan", "price": 0.0, "requires_payment": False},
    PlanTier.BASIC: {"name": "Basic Plan", "price": 10.0, "requires_payment": True},
    PlanTier.PREMIUM: {"name": "Premium Subscription", "price": 30.0, "requires_payment": True},
    PlanTier.PAY_PER_USE: {"name": "Pay Per Use", "price": 5.0, "requires_payment": True},
}

# Last successfully read record per user, served when the store is unreachable.
# Least recently read users are evicted past PLAN_CACHE_MAX_ENTRIES.
PLAN_CACHE_MAX_ENTRIES = 10_000
_last_known_plans: "OrderedDict[str, PlanRecord]" = OrderedDict()


def parse_plan_tier(plan_id: Any) -> PlanTier:
    """Coerce a loosely typed plan identifier into a PlanTier."""
    if isinstance(plan_id, PlanTier):
        return plan_id
    try:
        return PlanTier(str(plan_id).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown plan: {plan_id}")


def _parse_paused_reward(user_id: str, raw: Any) -> Optional[PausedReward]:
    if not raw:
        return None
    try:
        return PausedReward.model_validate(raw)
    except PydanticValidationError:
        logger.warning(
            "[plans] malformed paused reward ignored",
            extra={"user_id": user_id},
        )
        return None


def serialize_paused_reward(paused: Optional[PausedReward]) -> Optional[dict]:
    if paused is None:
        return None
    return paused.model_dump(mode="json")


def _row_to_record(row) -> PlanRecord:
    return PlanRecord(
        user_id=row.user_id,
        plan_id=PlanTier(row.plan_id),
        started_at=ensure_utc(row.started_at),
        expires_at=ensure_utc(row.expires_at),
        purchase_id=row.purchase_id,
        paused_reward=_parse_paused_reward(row.user_id, row.paused_referral_reward),
        user_email=row.user_email,
        updated_at=ensure_utc(row.updated_at),
    )


def fetch_plan_record(session: Session, user_id: str) -> Optional[PlanRecord]:
    """Read the plan record within an open session."""
    row = session.execute(
        select(user_plans).where(user_plans.c.user_id == user_id)
    ).first()
    if not row:
        return None
    return _row_to_record(row)


def get_plan_record(user_id: str) -> Optional[PlanRecord]:
    """
    Read a user's plan record.

    On a transient store failure the last known record is returned
    (stale-but-available); with nothing cached the failure is raised as
    TransientQueryError.
    """
    try:
        with get_db_session() as session:
            record = fetch_plan_record(session, user_id)
    except SQLAlchemyError as exc:
        cached = _last_known_plans.get(user_id)
        if cached is not None:
            logger.warning(
                "[plans] store unavailable, serving last known plan",
                extra={"user_id": user_id, "plan_id": cached.plan_id.value, "error": str(exc)},
            )
            return cached
        raise TransientQueryError(f"Failed to read plan for user {user_id}") from exc

    if record is None:
        _last_known_plans.pop(user_id, None)
        return record

    _last_known_plans[user_id] = record
    _last_known_plans.move_to_end(user_id)
    while len(_last_known_plans) > PLAN_CACHE_MAX_ENTRIES:
        _last_known_plans.popitem(last=False)
    return record


def write_plan_record(
    session: Session,
    user_id: str,
    *,
    plan_id: PlanTier,
    started_at: datetime,
    expires_at: Optional[datetime],
    now: datetime,
    purchase_id: Optional[str] = None,
    paused_reward: Optional[PausedReward] = None,
    user_email: Optional[str] = None,
) -> PlanRecord:
    """
    Overwrite (or create) the user's plan record within an open session.

    The caller owns the transaction; nothing is committed here.
    """
    started_at = ensure_utc(started_at)
    expires_at = ensure_utc(expires_at)
    if expires_at is not None and expires_at < started_at:
        raise ValidationError("Plan expiry must not precede its start")

    values = {
        "plan_id": plan_id.value,
        "started_at": started_at,
        "expires_at": expires_at,
        "purchase_id": purchase_id,
        "paused_referral_reward": serialize_paused_reward(paused_reward),
        "updated_at": now,
    }
    if user_email:
        values["user_email"] = user_email

    existing = session.execute(
        select(user_plans.c.user_email).where(user_plans.c.user_id == user_id)
    ).first()
    if existing:
        session.execute(
            update(user_plans).where(user_plans.c.user_id == user_id).values(**values)
        )
        email = user_email or existing.user_email
    else:
        session.execute(insert(user_plans).values(user_id=user_id, **values))
        email = user_email

    record = PlanRecord(
        user_id=user_id,
        plan_id=plan_id,
        started_at=started_at,
        expires_at=expires_at,
        purchase_id=purchase_id,
        paused_reward=paused_reward,
        user_email=email,
        updated_at=now,
    )
    _last_known_plans.pop(user_id, None)
    return record


def compare_and_swap_plan(
    session: Session,
    user_id: str,
    *,
    expected_plan_id: PlanTier,
    expected_expires_at: Optional[datetime],
    plan_id: PlanTier,
    started_at: datetime,
    expires_at: Optional[datetime],
    now: datetime,
) -> bool:
    """
    Conditionally overwrite the plan record.

    The update only applies if the row still holds the observed
    (plan_id, expires_at). Clears purchase_id and the paused reward.
    Returns True when this caller won the swap.
    """
    stmt = (
        update(user_plans)
        .where(user_plans.c.user_id == user_id)
        .where(user_plans.c.plan_id == expected_plan_id.value)
    )
    if expected_expires_at is None:
        stmt = stmt.where(user_plans.c.expires_at.is_(None))
    else:
        stmt = stmt.where(user_plans.c.expires_at == ensure_utc(expected_expires_at))

    result = session.execute(
        stmt.values(
            plan_id=plan_id.value,
            started_at=ensure_utc(started_at),
            expires_at=ensure_utc(expires_at),
            purchase_id=None,
            paused_referral_reward=None,
            updated_at=now,
        )
    )
    won = result.rowcount == 1
    if won:
        _last_known_plans.pop(user_id, None)
    return won


def ensure_plan_record(user_id: str, clock: Optional[Clock] = None) -> PlanRecord:
    """Return the user's plan record, creating a free one if missing."""
    existing = get_plan_record(user_id)
    if existing:
        return existing

    now = resolve_clock(clock).now()
    try:
        with get_db_session() as session:
            return write_plan_record(
                session,
                user_id,
                plan_id=PlanTier.FREE,
                started_at=now,
                expires_at=None,
                now=now,
            )
    except IntegrityError:
        # Another request created it first
        return get_plan_record(user_id)


def select_plan(user_id: str, plan_id: Any, clock: Optional[Clock] = None) -> PlanRecord:
    """
    Self-service plan selection.

    Only plans that do not require payment can be selected; paid tiers are
    set by purchase ingestion. An active paid plan is never replaced.
    """
    tier = parse_plan_tier(plan_id)
    if PLAN_CATALOG[tier]["requires_payment"]:
        raise ValidationError(f"{tier.display_name} can only be activated through a purchase")

    clock = resolve_clock(clock)
    now = clock.now()
    record = get_plan_record(user_id)

    if record and record.plan_id.is_paid and record.expires_at is not None and now > record.expires_at:
        from legalinsight.features.expiration.service import sweep_user_plan

        sweep_user_plan(user_id, clock=clock)
        record = get_plan_record(user_id)

    if record and record.plan_id.is_paid and (record.expires_at is None or now <= record.expires_at):
        raise ConflictError(f"An active {record.plan_id.display_name} cannot be replaced by {tier.display_name}")

    if record and record.plan_id is tier:
        return record

    with get_db_session() as session:
        written = write_plan_record(
            session,
            user_id,
            plan_id=tier,
            started_at=now,
            expires_at=None,
            now=now,
        )
    logger.info(
        "[plans] plan selected",
        extra={"user_id": user_id, "plan_id": tier.value},
    )
    return written


def list_expired_plan_user_ids(now: datetime, limit: int = 500) -> List[str]:
    """Users whose paid plan has passed its expiry, oldest first."""
    with get_db_session() as session:
        rows = session.execute(
            select(user_plans.c.user_id)
            .where(user_plans.c.plan_id != PlanTier.FREE.value)
            .where(user_plans.c.expires_at.is_not(None))
            .where(user_plans.c.expires_at < now)
            .order_by(user_plans.c.expires_at)
            .limit(limit)
        ).all()
    return [row.user_id for row in rows]


def clear_plan_cache() -> None:
    _last_known_plans.clear()
