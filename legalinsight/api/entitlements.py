"""
Entitlement API routes.

- GET /v1/entitlements: decision for every feature
- GET /v1/entitlements/{feature}: decision for one feature
- GET /v1/usage: metering window, usage and remaining credits
"""
from fastapi import APIRouter, Depends

from legalinsight.core.auth import get_current_user_id
from legalinsight.core.clock import Clock, get_clock
from legalinsight.features.entitlements.service import check_feature, evaluate_all, usage_summary
from legalinsight.models.entitlement import Feature


router = APIRouter(tags=["entitlements"])


@router.get("/v1/entitlements")
def get_entitlements(user_id: str = Depends(get_current_user_id), clock: Clock = Depends(get_clock)):
    decisions = evaluate_all(user_id, clock=clock)
    return {"features": {feature.value: decision.as_dict() for feature, decision in decisions.items()}}


@router.get("/v1/entitlements/{feature}")
def get_entitlement(
    feature: Feature,
    user_id: str = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    """Never raises for a denial; denied decisions carry reason and message."""
    return check_feature(user_id, feature, clock=clock).as_dict()


@router.get("/v1/usage")
def get_usage(user_id: str = Depends(get_current_user_id), clock: Clock = Depends(get_clock)):
    return usage_summary(user_id, clock=clock)
