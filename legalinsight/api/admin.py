"""
Admin API routes (X-Admin-Key).

- POST /v1/admin/plans/sweep: run (or enqueue) the expiration sweep
- POST /v1/admin/promo-codes: create a promo code
- POST /v1/admin/purchases: apply a purchase directly (manual fulfilment)
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from legalinsight.core.auth import verify_admin_key
from legalinsight.core.clock import Clock, get_clock
from legalinsight.features.billing.service import apply_purchase
from legalinsight.features.expiration.service import sweep_expired_plans
from legalinsight.features.plans.service import parse_plan_tier
from legalinsight.features.promo.service import create_promo_code
from legalinsight.models.promo import PromoStatus
from legalinsight.models.purchase import PurchaseStatus

logger = logging.getLogger("legalinsight")

router = APIRouter(prefix="/v1/admin", tags=["admin"], dependencies=[Depends(verify_admin_key)])


class CreatePromoRequest(BaseModel):
    code: str = Field(..., min_length=1)
    expiry_date: datetime
    max_usage: int = 1
    validity_duration_days: int = 30
    status: PromoStatus = PromoStatus.ACTIVE


class ApplyPurchaseRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    plan_id: str
    order_id: str = Field(..., min_length=1)
    product_id: str = "manual"
    amount: float = 0.0
    currency: str = "USD"
    status: PurchaseStatus = PurchaseStatus.COMPLETED
    expires_at: Optional[datetime] = None
    user_email: Optional[str] = None


@router.post("/plans/sweep")
def post_sweep(
    enqueue: bool = Query(False, description="Hand the sweep to the RQ worker instead of running inline"),
    limit: Optional[int] = Query(None, ge=1),
    clock: Clock = Depends(get_clock),
):
    if enqueue:
        from legalinsight.queue_client import enqueue_expiration_sweep

        job_id = enqueue_expiration_sweep()
        logger.info("[admin] expiration sweep enqueued", extra={"job_id": job_id})
        return {"status": "enqueued", "job_id": job_id}
    return sweep_expired_plans(clock=clock, limit=limit)


@router.post("/promo-codes", status_code=201)
def post_promo_code(request: CreatePromoRequest, clock: Clock = Depends(get_clock)):
    promo = create_promo_code(
        request.code,
        expiry_date=request.expiry_date,
        max_usage=request.max_usage,
        validity_duration_days=request.validity_duration_days,
        status=request.status,
        clock=clock,
    )
    return {"promo_code": promo}


@router.post("/purchases")
def post_purchase(request: ApplyPurchaseRequest, clock: Clock = Depends(get_clock)):
    result = apply_purchase(
        request.user_id,
        parse_plan_tier(request.plan_id),
        request.amount,
        request.currency,
        request.status,
        request.expires_at,
        order_id=request.order_id,
        product_id=request.product_id,
        user_email=request.user_email,
        clock=clock,
    )
    return {"applied": result.applied, "purchase": result.purchase, "plan": result.plan}
