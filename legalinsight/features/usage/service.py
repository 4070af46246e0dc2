"""
legalinsight/features/usage/service.py

Usage Counter.

Handles:
- Metering window selection per plan tier
- Windowed document counts (fail open to 0 on store errors)
- Monthly credit limits and remaining credits
"""

from datetime import datetime
from typing import Optional, Tuple
import logging

from sqlalchemy.exc import SQLAlchemyError

from legalinsight.core.clock import ensure_utc, start_of_month, start_of_next_month
from legalinsight.core.config import settings
from legalinsight.features.documents.service import count_documents
from legalinsight.models.entitlement import UNLIMITED, Credits
from legalinsight.models.plan import PlanTier


logger = logging.getLogger(__name__)


def metering_window(
    plan_id: PlanTier,
    now: datetime,
    plan_started_at: Optional[datetime] = None,
) -> Tuple[datetime, datetime]:
    """
    Return the half-open window [start, end) usage is counted over.

    free and premium: the current UTC calendar month.
    basic and pay-per-use: from the later of the plan start and the start
    of the month, so usage resets on month boundaries and on mid-month
    (re)starts.
    """
    now = ensure_utc(now)
    month_start = start_of_month(now)
    window_end = start_of_next_month(now)

    if plan_id is PlanTier.FREE or plan_id is PlanTier.PREMIUM:
        return month_start, window_end
    if plan_id is PlanTier.BASIC or plan_id is PlanTier.PAY_PER_USE:
        started = ensure_utc(plan_started_at)
        if started is not None and started > month_start:
            return started, window_end
        return month_start, window_end
    raise ValueError(f"Unhandled plan tier: {plan_id}")


def count_usage(user_id: str, plan_id: PlanTier, window_start: datetime, window_end: datetime) -> int:
    """
    Count billable documents created in [window_start, window_end).

    premium is unmetered and always reports 0. A failed count query
    also reports 0 (fail open); the failure is logged.
    """
    if plan_id is PlanTier.PREMIUM:
        return 0

    try:
        return count_documents(
            user_id,
            window_start,
            window_end,
            include_deleted=settings.USAGE_COUNT_INCLUDES_DELETED,
        )
    except SQLAlchemyError as exc:
        logger.warning(
            "[usage] count failed, failing open to 0",
            extra={"user_id": user_id, "plan_id": plan_id.value, "error": str(exc)},
        )
        return 0


def monthly_credit_limit(plan_id: PlanTier, has_ever_paid: bool) -> Optional[int]:
    """Credits per metering window; None means unlimited."""
    if plan_id is PlanTier.PREMIUM:
        return None
    if plan_id is PlanTier.BASIC:
        return settings.BASIC_MONTHLY_CREDITS
    if plan_id is PlanTier.PAY_PER_USE:
        return settings.PAY_PER_USE_CREDITS
    if plan_id is PlanTier.FREE:
        # Free credits are a new-user incentive, not a fallback tier
        return 0 if has_ever_paid else settings.FREE_MONTHLY_CREDITS
    raise ValueError(f"Unhandled plan tier: {plan_id}")


def remaining_credits(plan_id: PlanTier, used: int, has_ever_paid: bool) -> Credits:
    limit = monthly_credit_limit(plan_id, has_ever_paid)
    if limit is None:
        return UNLIMITED
    return max(0, limit - used)
