from fastapi import APIRouter, Depends
from pydantic import BaseModel

from legalinsight.core.auth import get_current_user_id
from legalinsight.core.clock import Clock, get_clock
from legalinsight.features.promo.service import redeem_promo_code

router = APIRouter(prefix="/v1/promo", tags=["promo"])


class RedeemRequest(BaseModel):
    code: str


@router.post("/redeem")
def redeem(request: RedeemRequest, user_id: str = Depends(get_current_user_id), clock: Clock = Depends(get_clock)):
    redemption = redeem_promo_code(user_id, request.code, clock=clock)
    return {"success": True, "redemption": redemption}
