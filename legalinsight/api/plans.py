"""
Plan API routes.

- GET  /v1/plan: effective plan, its source and expiry flags
- POST /v1/plan/select: self-service selection (free only)
- POST /v1/plan/expiration/check: sweep the caller's plan if it has expired
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from legalinsight.core.auth import get_current_user_id
from legalinsight.core.clock import Clock, get_clock
from legalinsight.features.entitlements.service import plan_overview
from legalinsight.features.expiration.service import sweep_user_plan
from legalinsight.features.plans.service import ensure_plan_record, select_plan


router = APIRouter(prefix="/v1/plan", tags=["plans"])


class SelectPlanRequest(BaseModel):
    plan_id: str = Field(..., min_length=1)


@router.get("")
def get_plan(user_id: str = Depends(get_current_user_id), clock: Clock = Depends(get_clock)):
    """Plan badge data for the caller. First contact creates a free plan record."""
    ensure_plan_record(user_id, clock=clock)
    return plan_overview(user_id, clock=clock)


@router.post("/select")
def post_select_plan(
    request: SelectPlanRequest,
    user_id: str = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    """
    Select a plan that does not require payment.

    Errors:
        400: unknown plan, or a paid plan (those come from purchases)
        409: an active paid plan is in place
    """
    record = select_plan(user_id, request.plan_id, clock=clock)
    return {"plan": record}


@router.post("/expiration/check")
def post_expiration_check(user_id: str = Depends(get_current_user_id), clock: Clock = Depends(get_clock)):
    """Cheap no-op unless the caller's paid plan is past its expiry."""
    result = sweep_user_plan(user_id, clock=clock)
    return {
        "outcome": result.outcome.value,
        "changed": result.changed,
        "plan_id": result.plan_id.value if result.plan_id else None,
        "expires_at": result.expires_at.isoformat() if result.expires_at else None,
    }
