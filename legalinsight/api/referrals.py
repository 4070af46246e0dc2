from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from legalinsight.core.auth import get_current_user_id
from legalinsight.core.clock import Clock, get_clock
from legalinsight.core.errors import ValidationError
from legalinsight.features.referrals.service import list_referrals, record_referral, referral_stats
from legalinsight.features.users.service import get_user

router = APIRouter(prefix="/v1/referrals", tags=["referrals"])


class ReferralRequest(BaseModel):
    referrer_user_id: str = Field(..., min_length=1)
    referral_email: Optional[str] = None


@router.post("", status_code=201)
def post_referral(
    request: ReferralRequest,
    user_id: str = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    """Called for a newly signed-up user who arrived through a referral link."""
    email = request.referral_email
    if not email:
        user = get_user(user_id)
        email = user.email if user else None
    if not email:
        raise ValidationError("referral_email is required")
    referral = record_referral(request.referrer_user_id, user_id, email, clock=clock)
    return {"referral": referral}


@router.get("/stats")
def get_referral_stats(user_id: str = Depends(get_current_user_id), clock: Clock = Depends(get_clock)):
    return referral_stats(user_id, clock=clock)


@router.get("")
def get_referrals(user_id: str = Depends(get_current_user_id)):
    return {"referrals": list_referrals(user_id)}
