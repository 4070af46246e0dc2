from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class DocumentRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    title: Optional[str] = None
    created_at: datetime
    deleted: bool = False
    deleted_at: Optional[datetime] = None
