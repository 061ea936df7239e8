from pydantic import BaseModel, ConfigDict
from datetime import datetime


class MessageCreate(BaseModel):
    text: str


class MessageResponse(BaseModel):
    id: str
    request_id: str
    sender_id: str
    sender_name: str
    text: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
