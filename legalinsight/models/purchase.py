from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from legalinsight.models.plan import PlanTier


class PurchaseStatus(str, Enum):
    COMPLETED = "completed"
    REFUNDED = "refunded"


class PurchaseRecord(BaseModel):
    """One payment event. Only status may change (completed -> refunded)."""
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    order_id: str
    product_id: str
    plan_id: PlanTier
    amount: float
    currency: str = "USD"
    status: PurchaseStatus
    started_at: datetime
    expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
