from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    created_at: datetime
    email: Optional[str] = None
    display_name: Optional[str] = None
    status: str = "active"
