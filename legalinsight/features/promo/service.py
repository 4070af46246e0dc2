"""
legalinsight/features/promo/service.py

Promo codes.

A redeemed code grants premium for validity_duration_days. The grant
starts after any unexpired paid plan and any active referral reward, so
redeeming never burns time the user already has.
"""

from datetime import datetime, timedelta
from typing import List, Optional
import logging
import uuid

from sqlalchemy import select, insert, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from legalinsight.core.clock import Clock, ensure_utc, resolve_clock
from legalinsight.core.database import get_db_session, promo_codes, promo_code_redemptions
from legalinsight.core.errors import ConflictError, NotFoundError, ValidationError
from legalinsight.features.notifications.service import record_notification
from legalinsight.features.plans.service import fetch_plan_record
from legalinsight.features.referrals.service import fetch_active_rewards
from legalinsight.models.notification import NotificationKind
from legalinsight.models.plan import PlanTier
from legalinsight.models.promo import PromoCode, PromoRedemption, PromoStatus


logger = logging.getLogger(__name__)

PROMO_PLAN = PlanTier.PREMIUM


def _normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def _row_to_code(row) -> PromoCode:
    return PromoCode(
        id=row.id,
        code=row.code,
        status=PromoStatus(row.status),
        max_usage=row.max_usage,
        current_usage=row.current_usage,
        expiry_date=ensure_utc(row.expiry_date),
        validity_duration_days=row.validity_duration_days,
    )


def _row_to_redemption(row) -> PromoRedemption:
    return PromoRedemption(
        id=row.id,
        promo_code_id=row.promo_code_id,
        user_id=row.user_id,
        plan_id=PlanTier(row.plan_id),
        starts_at=ensure_utc(row.starts_at),
        expires_at=ensure_utc(row.expires_at),
        validity_duration_days=row.validity_duration_days,
        redeemed_at=ensure_utc(row.redeemed_at),
    )


def create_promo_code(
    code: str,
    *,
    expiry_date: datetime,
    max_usage: int = 1,
    validity_duration_days: int = 30,
    status: PromoStatus = PromoStatus.ACTIVE,
    clock: Optional[Clock] = None,
) -> PromoCode:
    normalized = _normalize_code(code)
    if not normalized:
        raise ValidationError("Promo code is required")
    if max_usage < 1:
        raise ValidationError("max_usage must be at least 1")
    if validity_duration_days < 1:
        raise ValidationError("validity_duration_days must be at least 1")

    now = resolve_clock(clock).now()
    promo = PromoCode(
        id=str(uuid.uuid4()),
        code=normalized,
        status=status,
        max_usage=max_usage,
        current_usage=0,
        expiry_date=ensure_utc(expiry_date),
        validity_duration_days=validity_duration_days,
    )
    try:
        with get_db_session() as session:
            session.execute(
                insert(promo_codes).values(
                    id=promo.id,
                    code=promo.code,
                    status=promo.status.value,
                    max_usage=max_usage,
                    current_usage=0,
                    expiry_date=promo.expiry_date,
                    validity_duration_days=validity_duration_days,
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError:
        raise ConflictError(f"Promo code {normalized} already exists")
    return promo


def _grant_start(session: Session, user_id: str, now: datetime) -> datetime:
    start = now
    record = fetch_plan_record(session, user_id)
    if record and record.plan_id.is_paid and record.expires_at is not None and record.expires_at > start:
        start = record.expires_at
    active = fetch_active_rewards(session, user_id, now)
    if active and active[0].expires_at > start:
        start = active[0].expires_at
    return start


def redeem_promo_code(user_id: str, code: str, clock: Optional[Clock] = None) -> PromoRedemption:
    """
    Redeem a promo code for the user.

    Raises:
        ValidationError: missing, expired or inactive code, or usage limit reached
        NotFoundError: unknown code
        ConflictError: the user already redeemed this code
    """
    normalized = _normalize_code(code)
    if not normalized:
        raise ValidationError("Promo code is required")

    now = resolve_clock(clock).now()
    try:
        with get_db_session() as session:
            row = session.execute(
                select(promo_codes).where(func.upper(promo_codes.c.code) == normalized)
            ).first()
            if not row:
                logger.info("[promo] code not found", extra={"user_id": user_id, "code": normalized})
                raise NotFoundError("Invalid promo code")
            promo = _row_to_code(row)

            if promo.expiry_date < now:
                raise ValidationError("Promo code has expired")
            if promo.status is not PromoStatus.ACTIVE:
                raise ValidationError("Promo code is no longer active")
            if promo.current_usage >= promo.max_usage:
                raise ValidationError("Promo code usage limit reached")

            already = session.execute(
                select(promo_code_redemptions.c.id)
                .where(promo_code_redemptions.c.promo_code_id == promo.id)
                .where(promo_code_redemptions.c.user_id == user_id)
            ).first()
            if already:
                raise ConflictError("You have already redeemed this promo code")

            # Guarded increment: concurrent redeemers cannot exceed max_usage
            claimed = session.execute(
                update(promo_codes)
                .where(promo_codes.c.id == promo.id)
                .where(promo_codes.c.current_usage < promo_codes.c.max_usage)
                .values(current_usage=promo_codes.c.current_usage + 1, updated_at=now)
            )
            if claimed.rowcount != 1:
                raise ValidationError("Promo code usage limit reached")

            starts_at = _grant_start(session, user_id, now)
            redemption = PromoRedemption(
                id=str(uuid.uuid4()),
                promo_code_id=promo.id,
                user_id=user_id,
                plan_id=PROMO_PLAN,
                starts_at=starts_at,
                expires_at=starts_at + timedelta(days=promo.validity_duration_days),
                validity_duration_days=promo.validity_duration_days,
                redeemed_at=now,
            )
            session.execute(
                insert(promo_code_redemptions).values(
                    id=redemption.id,
                    promo_code_id=promo.id,
                    user_id=user_id,
                    plan_id=PROMO_PLAN.value,
                    starts_at=redemption.starts_at,
                    expires_at=redemption.expires_at,
                    validity_duration_days=redemption.validity_duration_days,
                    redeemed_at=now,
                )
            )
            record_notification(
                session,
                user_id,
                NotificationKind.PROMO_REDEEMED,
                "Promo code redeemed",
                f"Promo code {promo.code} unlocked {PROMO_PLAN.display_name} "
                f"for {promo.validity_duration_days} days starting {starts_at.date().isoformat()}.",
                now,
            )
    except IntegrityError:
        raise ConflictError("You have already redeemed this promo code")

    logger.info(
        "[promo] code redeemed",
        extra={
            "user_id": user_id,
            "code": normalized,
            "starts_at": redemption.starts_at.isoformat(),
            "expires_at": redemption.expires_at.isoformat(),
        },
    )
    return redemption


def fetch_active_redemptions(session: Session, user_id: str, now: datetime) -> List[PromoRedemption]:
    """Redemptions with starts_at <= now < expires_at, latest expiry first."""
    rows = session.execute(
        select(promo_code_redemptions)
        .where(promo_code_redemptions.c.user_id == user_id)
        .order_by(promo_code_redemptions.c.expires_at.desc())
    ).all()
    return [r for r in (_row_to_redemption(row) for row in rows) if r.is_active(now)]


def active_redemptions(user_id: str, now: datetime) -> List[PromoRedemption]:
    with get_db_session() as session:
        return fetch_active_redemptions(session, user_id, now)
