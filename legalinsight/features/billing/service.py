"""
legalinsight/features/billing/service.py

Purchase ingestion.

Handles:
- apply_purchase(): the single write path for purchases
- Gumroad webhook processing with idempotency (billing_events)

Completed purchases pause any active referral reward and overwrite the plan
record; refunds revert to free immediately. Each purchase is applied in one
transaction.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import hashlib
import json
import logging

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from legalinsight.core.clock import Clock, ensure_utc, resolve_clock
from legalinsight.core.config import settings
from legalinsight.core.database import billing_events, get_db_session
from legalinsight.core.errors import AppError, InconsistentWriteError, InvalidMappingError, UnauthorizedError
from legalinsight.features.billing.gumroad import is_ping, map_product_to_plan, parse_sale
from legalinsight.features.notifications.service import record_notification
from legalinsight.features.plans.service import fetch_plan_record, write_plan_record
from legalinsight.features.purchases.service import upsert_purchase
from legalinsight.features.referrals.service import (
    defer_pending_rewards,
    mark_first_paid_purchase,
    pause_reward,
)
from legalinsight.features.users.service import find_user_id_by_email
from legalinsight.models.notification import NotificationKind
from legalinsight.models.plan import PausedReward, PlanRecord, PlanTier
from legalinsight.models.purchase import PurchaseRecord, PurchaseStatus


logger = logging.getLogger(__name__)


@dataclass
class PurchaseApplication:
    """Outcome of apply_purchase."""
    purchase: PurchaseRecord
    plan: Optional[PlanRecord]
    applied: bool
    paused_reward: Optional[PausedReward] = None


@dataclass
class BillingWebhookResult:
    """Result of processing a billing webhook."""
    event_key: Optional[str]
    event_type: str
    status: str  # processed, duplicate, ping
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    order_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "event_key": self.event_key,
            "event_type": self.event_type,
            "status": self.status,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "order_id": self.order_id,
        }


def purchase_expiry(plan_id: PlanTier, now: datetime) -> datetime:
    """Every paid tier runs for SUBSCRIPTION_TERM_DAYS from the purchase."""
    if plan_id is PlanTier.FREE:
        raise ValueError("free plan has no purchase term")
    return now + timedelta(days=settings.SUBSCRIPTION_TERM_DAYS)


def apply_purchase(
    user_id: str,
    plan_id: PlanTier,
    amount: float,
    currency: str,
    status: PurchaseStatus,
    expires_at: Optional[datetime],
    *,
    order_id: str,
    product_id: str,
    user_email: Optional[str] = None,
    clock: Optional[Clock] = None,
) -> PurchaseApplication:
    """
    Record a purchase and move the plan record accordingly.

    completed: pauses the active referral reward (if any), defers rewards
    that have not started yet, overwrites the plan record with the
    purchased tier and credits the user's referrer.
    refunded: reverts the plan record to free. A paused reward is forfeited.

    Redelivering a state that is already recorded changes nothing.

    Raises:
        InvalidMappingError: plan_id is free
        ConflictError: order belongs to another user or is already refunded
        InconsistentWriteError: the transaction failed and was rolled back
    """
    if not plan_id.is_paid:
        raise InvalidMappingError("Free plan cannot be purchased", product_id=product_id)

    now = resolve_clock(clock).now()
    expires_at = ensure_utc(expires_at)
    if status is PurchaseStatus.COMPLETED and expires_at is None:
        expires_at = purchase_expiry(plan_id, now)

    try:
        with get_db_session() as session:
            purchase, changed = upsert_purchase(
                session,
                user_id=user_id,
                order_id=order_id,
                product_id=product_id,
                plan_id=plan_id,
                amount=amount,
                currency=currency,
                status=status,
                started_at=now,
                expires_at=expires_at,
                now=now,
            )
            if not changed:
                return PurchaseApplication(purchase=purchase, plan=fetch_plan_record(session, user_id), applied=False)

            if status is PurchaseStatus.COMPLETED:
                current = fetch_plan_record(session, user_id)
                paused = pause_reward(session, user_id, now)
                if paused is None and current is not None:
                    # An earlier purchase may still be holding a paused reward
                    paused = current.paused_reward
                defer_pending_rewards(session, user_id, now, until=expires_at)
                plan = write_plan_record(
                    session,
                    user_id,
                    plan_id=plan_id,
                    started_at=now,
                    expires_at=expires_at,
                    now=now,
                    purchase_id=purchase.id,
                    paused_reward=paused,
                    user_email=user_email,
                )
                mark_first_paid_purchase(session, user_id, now)
                record_notification(
                    session,
                    user_id,
                    NotificationKind.PURCHASE_APPLIED,
                    "Purchase successful",
                    f"Your {plan_id.display_name} is now active.",
                    now,
                )
            else:
                paused = None
                plan = write_plan_record(
                    session,
                    user_id,
                    plan_id=PlanTier.FREE,
                    started_at=now,
                    expires_at=None,
                    now=now,
                    user_email=user_email,
                )
                record_notification(
                    session,
                    user_id,
                    NotificationKind.PURCHASE_REFUNDED,
                    "Purchase refunded",
                    f"Your {plan_id.display_name} purchase was refunded. You've been moved to the free plan.",
                    now,
                )
    except SQLAlchemyError as exc:
        raise InconsistentWriteError(f"Purchase {order_id} for user {user_id} was rolled back") from exc

    logger.info(
        "[billing] purchase applied",
        extra={
            "user_id": user_id,
            "order_id": order_id,
            "plan_id": plan.plan_id.value,
            "purchase_status": status.value,
            "expires_at": plan.expires_at.isoformat() if plan.expires_at else None,
            "paused_reward_plan_id": paused.reward_plan_id.value if paused else None,
        },
    )
    return PurchaseApplication(purchase=purchase, plan=plan, applied=True, paused_reward=paused)


def _payload_hash(payload: Dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _claim_event(event_key: str, event_type: str, payload_hash: str, now: datetime) -> bool:
    """
    Record the delivery. Returns False when it was already processed.

    A delivery that was recorded but failed earlier may be claimed again.
    """
    with get_db_session() as session:
        existing = session.execute(
            select(billing_events.c.processed).where(billing_events.c.event_key == event_key)
        ).first()
        if existing:
            return not existing.processed
    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_events).values(
                    event_key=event_key,
                    event_type=event_type,
                    received_at=now,
                    payload_hash=payload_hash,
                    processed=False,
                )
            )
    except IntegrityError:
        # Another delivery of the same event got there first
        return False
    return True


def _finish_event(event_key: str, now: datetime, error: Optional[str] = None) -> None:
    values = {"error": error} if error else {"processed": True, "processed_at": now, "error": None}
    with get_db_session() as session:
        session.execute(
            update(billing_events).where(billing_events.c.event_key == event_key).values(**values)
        )


def process_gumroad_webhook(payload: Dict[str, Any], clock: Optional[Clock] = None) -> BillingWebhookResult:
    """
    Process one Gumroad delivery (idempotent).

    1. Acknowledge pings
    2. Parse the sale and map it to a plan and a user
    3. Claim the event key "{order_id}:{completed|refunded}"
    4. Apply the purchase
    5. Mark the event processed

    Raises:
        ValidationError: required fields missing
        InvalidMappingError: product or user cannot be resolved
    """
    if is_ping(payload):
        logger.info("[billing] gumroad ping acknowledged")
        return BillingWebhookResult(event_key=None, event_type="ping", status="ping")

    clock = resolve_clock(clock)
    now = clock.now()
    sale = parse_sale(payload)

    try:
        plan_id = map_product_to_plan(sale)
    except InvalidMappingError:
        logger.warning(
            "[billing] unmappable product",
            extra={"order_id": sale.order_id, "product_id": sale.product_id, "amount": sale.amount},
        )
        raise

    user_id = sale.user_id or find_user_id_by_email(sale.email)
    if not user_id:
        logger.warning(
            "[billing] purchase for unknown user",
            extra={"order_id": sale.order_id, "product_id": sale.product_id},
        )
        raise InvalidMappingError("Missing required user or plan information", product_id=sale.product_id)

    if not _claim_event(sale.event_key, sale.event_type, _payload_hash(payload), now):
        logger.info(
            "[billing] duplicate delivery ignored",
            extra={"event_key": sale.event_key, "user_id": user_id},
        )
        return BillingWebhookResult(
            event_key=sale.event_key,
            event_type=sale.event_type,
            status="duplicate",
            user_id=user_id,
            plan_id=plan_id.value,
            order_id=sale.order_id,
        )

    status = PurchaseStatus.REFUNDED if sale.refunded else PurchaseStatus.COMPLETED
    try:
        apply_purchase(
            user_id,
            plan_id,
            sale.amount,
            sale.currency,
            status,
            purchase_expiry(plan_id, now) if status is PurchaseStatus.COMPLETED else None,
            order_id=sale.order_id,
            product_id=sale.product_id,
            user_email=sale.email,
            clock=clock,
        )
    except AppError as exc:
        _finish_event(sale.event_key, now, error=exc.message)
        raise

    _finish_event(sale.event_key, now)
    return BillingWebhookResult(
        event_key=sale.event_key,
        event_type=sale.event_type,
        status="processed",
        user_id=user_id,
        plan_id=plan_id.value,
        order_id=sale.order_id,
    )


def require_webhook_token(token: Optional[str]) -> None:
    """Check the ?token= shared secret when GUMROAD_WEBHOOK_TOKEN is set."""
    expected = settings.GUMROAD_WEBHOOK_TOKEN
    if expected and token != expected:
        raise UnauthorizedError("Invalid webhook token")
