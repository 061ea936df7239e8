from pydantic import BaseModel, EmailStr, field_validator, ConfigDict
from typing import Optional
from datetime import datetime


class UserSyncRequest(BaseModel):
    displayName: Optional[str] = None
    campus: str
    photoUrl: Optional[str] = None

    @field_validator('campus')
    def validate_campus(cls, v):
        if not v.strip():
            raise ValueError('Campus cannot be empty')
        return v.strip()


class UserUpdate(BaseModel):
    displayName: Optional[str] = None
    photoUrl: Optional[str] = None

    @field_validator('displayName')
    def validate_display_name(cls, v):
        if v is not None and not v.strip():
            raise ValueError('Display name cannot be empty')
        return v.strip() if v else v


class LocationUpdate(BaseModel):
    latitude: float
    longitude: float


class PushTokenRequest(BaseModel):
    push_token: str


class UserResponse(BaseModel):
    id: str
    email: EmailStr
    display_name: Optional[str] = None
    campus: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    photo_url: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserStats(BaseModel):
    requests: int
    fulfilled: int
