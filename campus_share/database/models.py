from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import Column, String, Text, Boolean, Float, DateTime, Index
import uuid

from campus_share.utils.time_utils import get_utc_now


def new_id() -> str:
    return uuid.uuid4().hex


# Base class for all models
class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    id = Column(String(32), primary_key=True, default=new_id)
    firebase_uid = Column(String(255), unique=True, index=True, nullable=False)
    email = Column(Text, unique=True, nullable=False, index=True)
    display_name = Column(String(255), nullable=True)
    campus = Column(String(255), nullable=True, index=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    photo_url = Column(Text, nullable=True)
    push_token = Column(Text, nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), default=get_utc_now, nullable=False)


class Campus(Base):
    __tablename__ = "campuses"
    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(255), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=get_utc_now, nullable=False)


class Request(Base):
    __tablename__ = "requests"
    id = Column(String(32), primary_key=True, default=new_id)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(50), nullable=False, default="Other")
    duration = Column(String(255), nullable=True)
    owner_id = Column(String(32), nullable=False, index=True)
    owner_email = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=get_utc_now, nullable=False)
    status = Column(String(20), nullable=False, default="open")
    accepted_by = Column(String(32), nullable=True, index=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    address = Column(Text, nullable=True)


class Message(Base):
    __tablename__ = "messages"
    id = Column(String(32), primary_key=True, default=new_id)
    request_id = Column(String(32), nullable=False)
    sender_id = Column(String(32), nullable=False)
    sender_name = Column(String(255), nullable=False)
    text = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=get_utc_now, nullable=False)
    __table_args__ = (Index("ix_messages_thread", "request_id", "created_at"),)


class Notification(Base):
    __tablename__ = "notifications"
    id = Column(String(32), primary_key=True, default=new_id)
    recipient_id = Column(String(32), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)
    read = Column(Boolean, default=False, nullable=False)
    link = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=get_utc_now, nullable=False)


# Collection name -> model, as addressed by the document store.
COLLECTIONS = {
    "users": User,
    "campuses": Campus,
    "requests": Request,
    "messages": Message,
    "notifications": Notification,
}
