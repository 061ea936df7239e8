from pydantic import BaseModel, ConfigDict, field_validator
from typing import Literal, Optional
from datetime import datetime

Category = Literal["Academic", "Tech", "Household", "Transport", "Other"]


class LocationSnapshot(BaseModel):
    latitude: float
    longitude: float
    address: Optional[str] = None


class RequestCreate(BaseModel):
    title: str
    category: Category = "Other"
    description: str = ""
    duration: str = ""
    location: Optional[LocationSnapshot] = None


class RequestResponse(BaseModel):
    id: str
    title: str
    description: str
    category: str
    duration: str
    owner_id: str
    owner_email: Optional[str] = None
    created_at: datetime
    status: Literal["open", "accepted", "fulfilled"]
    accepted_by: Optional[str] = None
    location: Optional[LocationSnapshot] = None
    distance_meters: Optional[float] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator('description', mode='before')
    def default_description(cls, v):
        return v or "No details provided."

    @field_validator('duration', mode='before')
    def default_duration(cls, v):
        return v or "Flexible"

    @classmethod
    def from_document(cls, document: dict, distance_meters: Optional[float] = None) -> "RequestResponse":
        location = None
        if document.get("latitude") is not None and document.get("longitude") is not None:
            location = LocationSnapshot(
                latitude=document["latitude"],
                longitude=document["longitude"],
                address=document.get("address"),
            )
        return cls(**{k: v for k, v in document.items() if k in cls.model_fields},
                   location=location, distance_meters=distance_meters)


class RequestPosted(BaseModel):
    request: RequestResponse
    notified: int
    message: str
