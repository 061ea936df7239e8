from pydantic import BaseModel, ConfigDict
from datetime import datetime
from typing import Optional


class NotificationBase(BaseModel):
    title: str
    body: str


class NotificationResponse(NotificationBase):
    id: str
    recipient_id: str
    read: bool
    link: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
