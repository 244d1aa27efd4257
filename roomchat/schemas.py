"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation (rooms, messages, replies, users)
- Response models for API responses
- Fan-out event payloads shared by the live sessions
"""

import re
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


ROOM_NAME_PATTERN = re.compile(r"^[a-z0-9-]+$")


# =============================================================================
# Pydantic Request Models
# =============================================================================

class UserCreate(BaseModel):
    """Request body for registering a chat user."""
    email: str = Field(..., max_length=160, description="User email, the display name is derived from it")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip().lower()
        local, _, domain = v.partition("@")
        if not local or not domain or " " in v:
            raise ValueError("must have the @ sign and no spaces")
        return v


class RoomCreate(BaseModel):
    """
    Pydantic model for validating room attributes.

    Validates:
    - name: required, lowercase letters, numbers and dashes, at most 80 characters
    - topic: optional, at most 200 characters
    """
    name: str = Field(..., max_length=80, description="Unique room name")
    topic: Optional[str] = Field(None, max_length=200, description="Room topic")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("can't be blank")
        if not ROOM_NAME_PATTERN.match(v):
            raise ValueError("can only contain lowercase letters, numbers and dashes")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [{"name": "general-chat", "topic": "Anything goes"}]
        }
    }


class MessageCreate(BaseModel):
    """Body of a message or a reply."""
    body: str = Field(..., description="Message text")

    @field_validator("body")
    @classmethod
    def validate_body(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("can't be blank")
        return v


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class ValidationErrorResponse(BaseModel):
    """Field-level validation failure."""
    detail: str = Field(default="validation failed")
    errors: Dict[str, List[str]] = Field(default_factory=dict)


class FormResponse(BaseModel):
    """Result of validating a form without persisting it."""
    valid: bool
    errors: Dict[str, List[str]] = Field(default_factory=dict)


class UserOut(BaseModel):
    id: int
    email: str
    username: str

    model_config = {"from_attributes": True}


class RoomOut(BaseModel):
    id: int
    name: str
    topic: Optional[str] = None

    model_config = {"from_attributes": True}


class RoomWithJoined(BaseModel):
    room: RoomOut
    joined: bool


class RoomPage(BaseModel):
    data: List[RoomWithJoined] = Field(default_factory=list)
    page: int = Field(..., ge=1)
    page_size: int = Field(..., ge=1)


class RoomUnread(BaseModel):
    room: RoomOut
    unread_count: int = Field(..., ge=0)


class MembershipResponse(BaseModel):
    room_id: int
    joined: bool


def as_utc(value: datetime) -> datetime:
    # Stored times are UTC; SQLite hands them back without an offset
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ReplyOut(BaseModel):
    id: int
    message_id: int
    user_id: int
    body: str
    inserted_at: datetime
    user: UserOut

    model_config = {"from_attributes": True}

    @field_validator("inserted_at")
    @classmethod
    def inserted_at_utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class MessageOut(BaseModel):
    """A message with its author and its thread of replies."""
    id: int
    room_id: int
    user_id: int
    body: str
    inserted_at: datetime
    user: UserOut
    replies: List[ReplyOut] = Field(default_factory=list)

    model_config = {"from_attributes": True}

    @field_validator("inserted_at")
    @classmethod
    def inserted_at_utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class RoomDetail(BaseModel):
    """A room together with its message stream."""
    room: RoomOut
    messages: List[MessageOut] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# Fan-out Events
# =============================================================================

EventName = Literal["new_message", "message_deleted", "new_reply", "deleted_reply"]


class RoomEvent(BaseModel):
    """
    Event broadcast on a room topic.

    new_message and message_deleted carry the message itself; new_reply and
    deleted_reply carry the parent message reloaded with all of its replies.
    """
    event: EventName
    message: MessageOut
