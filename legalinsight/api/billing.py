"""
Billing API routes.

- POST /v1/billing/gumroad/webhook: Gumroad sale/refund pings
- GET  /v1/billing/purchases: caller's purchase history
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from legalinsight.core.auth import get_current_user_id
from legalinsight.core.clock import Clock, get_clock
from legalinsight.features.billing.gumroad import parse_body
from legalinsight.features.billing.service import process_gumroad_webhook, require_webhook_token
from legalinsight.features.purchases.service import list_purchases

router = APIRouter(prefix="/v1/billing", tags=["billing"])


@router.post("/gumroad/webhook")
async def gumroad_webhook(
    request: Request,
    token: Optional[str] = Query(None),
    clock: Clock = Depends(get_clock),
):
    """
    Handle Gumroad webhooks.

    Idempotent per (order, completed|refunded); redeliveries return
    status "duplicate" with 200.

    Errors:
        400: Missing sale_id/product_id or malformed body
        401: token does not match GUMROAD_WEBHOOK_TOKEN
        422: Product or user could not be mapped (no plan change)
    """
    require_webhook_token(token)
    body = await request.body()
    payload = parse_body(body, request.headers.get("content-type"))
    result = process_gumroad_webhook(payload, clock=clock)
    return {"received": True, **result.as_dict()}


@router.get("/purchases")
def get_purchases(user_id: str = Depends(get_current_user_id)):
    return {"purchases": list_purchases(user_id)}
