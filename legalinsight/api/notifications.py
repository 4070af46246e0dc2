from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from legalinsight.core.auth import get_current_user_id
from legalinsight.core.clock import Clock, get_clock
from legalinsight.features.notifications.service import list_notifications, mark_notifications_read

router = APIRouter(prefix="/v1/notifications", tags=["notifications"])


class MarkReadRequest(BaseModel):
    ids: Optional[List[int]] = None


@router.get("")
def get_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
):
    return {"notifications": list_notifications(user_id, unread_only=unread_only, limit=limit)}


@router.post("/read")
def post_mark_read(
    request: MarkReadRequest,
    user_id: str = Depends(get_current_user_id),
    clock: Clock = Depends(get_clock),
):
    """Mark the given ids (or every unread notification) as read."""
    return {"updated": mark_notifications_read(user_id, request.ids, clock=clock)}
