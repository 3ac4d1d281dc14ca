"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the engagement API.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config.settings import settings


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes from clients are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ── Profile ───────────────────────────────────────────────────

class ProfileSummary(BaseSchema):
    id: uuid.UUID
    full_name: str
    avatar_url: Optional[str]
    role: str


# ── Connection ────────────────────────────────────────────────

class ConnectionDecision(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


class ConnectionCreateRequest(BaseSchema):
    tutor_id: uuid.UUID
    message: Optional[str] = Field(None, max_length=2000)


class ConnectionRespondRequest(BaseSchema):
    decision: ConnectionDecision


class ConnectionResponse(BaseSchema):
    id: uuid.UUID
    student_id: uuid.UUID
    tutor_id: uuid.UUID
    status: str
    message: Optional[str]
    responded_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class ConnectionStatusResponse(BaseSchema):
    student_id: uuid.UUID
    tutor_id: uuid.UUID
    status: str


# ── Session ───────────────────────────────────────────────────

class SessionListFilter(str, Enum):
    UPCOMING = "upcoming"
    COMPLETED = "completed"
    PENDING = "pending"
    ALL = "all"


class SessionDecision(str, Enum):
    CONFIRM = "confirm"
    REJECT = "reject"


class SessionInitiator(str, Enum):
    STUDENT = "student"
    TUTOR = "tutor"


class SessionCreateRequest(BaseSchema):
    """
    The counterpart is the student when a tutor books, and the tutor when
    a student requests. The caller's own id fills the other side.
    initiator_role is only needed for profiles that are both tutor and student.
    """
    counterpart_id: uuid.UUID
    initiator_role: Optional[SessionInitiator] = None
    subject: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = Field(None, max_length=2000)
    scheduled_at: datetime
    duration_minutes: int = Field(60, gt=0)

    @field_validator("scheduled_at")
    @classmethod
    def normalize_scheduled_at(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @field_validator("subject")
    @classmethod
    def strip_subject(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Subject is required")
        return v


class SessionRespondRequest(BaseSchema):
    decision: SessionDecision


class SessionCancelRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class SessionResponse(BaseSchema):
    id: uuid.UUID
    tutor_id: uuid.UUID
    student_id: uuid.UUID
    subject: str
    description: Optional[str]
    scheduled_at: datetime
    duration_minutes: int
    status: str
    created_by_id: uuid.UUID
    cancellation_reason: Optional[str]
    confirmed_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    created_at: datetime


# ── Task ──────────────────────────────────────────────────────

class TaskCreateRequest(BaseSchema):
    student_id: uuid.UUID
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    due_date: datetime

    @field_validator("due_date")
    @classmethod
    def normalize_due_date(cls, v: datetime) -> datetime:
        return _as_utc(v)


class TaskCompletionRequest(BaseSchema):
    completed: bool


class TaskResponse(BaseSchema):
    id: uuid.UUID
    tutor_id: uuid.UUID
    student_id: uuid.UUID
    title: str
    description: Optional[str]
    due_date: datetime
    is_completed: bool
    completed_at: Optional[datetime]
    created_at: datetime


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: str
    title: str
    message: str
    related_id: Optional[str]
    action_url: Optional[str]
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime


class NotificationListResponse(BaseSchema):
    items: List[NotificationResponse]
    total: int
    page: int
    page_size: int


class UnreadCountResponse(BaseSchema):
    unread: int


class MarkedReadResponse(BaseSchema):
    updated: int


# ── Messaging ─────────────────────────────────────────────────

class MessageKind(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


class MessageSendRequest(BaseSchema):
    kind: MessageKind = MessageKind.DIRECT
    target_id: uuid.UUID = Field(..., description="recipient id (direct) or group id (group)")
    content: str = Field(..., min_length=1)

    @field_validator("content")
    @classmethod
    def check_content(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Message body cannot be empty")
        if len(v) > settings.MESSAGE_MAX_LENGTH:
            raise ValueError(f"Message body exceeds {settings.MESSAGE_MAX_LENGTH} characters")
        return v


class ChatMessageResponse(BaseSchema):
    id: uuid.UUID
    sender_id: uuid.UUID
    recipient_id: Optional[uuid.UUID]
    group_id: Optional[uuid.UUID]
    content: str
    message_type: str
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime


class ConversationResponse(BaseSchema):
    counterparty: ProfileSummary
    last_message: ChatMessageResponse
    unread_count: int


# ── Study Group ───────────────────────────────────────────────

class GroupCreateRequest(BaseSchema):
    name: str = Field(..., min_length=2, max_length=120)
    subject: Optional[str] = Field(None, max_length=120)
    description: Optional[str] = None
    max_members: int = Field(20, ge=2, le=200)


class GroupInviteRequest(BaseSchema):
    user_id: uuid.UUID


class GroupResponse(BaseSchema):
    id: uuid.UUID
    name: str
    subject: Optional[str]
    description: Optional[str]
    creator_id: uuid.UUID
    max_members: int
    created_at: datetime


# ── Review ────────────────────────────────────────────────────

class ReviewCreateRequest(BaseSchema):
    session_id: uuid.UUID
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class ReviewResponse(BaseSchema):
    id: uuid.UUID
    session_id: uuid.UUID
    student_id: uuid.UUID
    tutor_id: uuid.UUID
    rating: int
    comment: Optional[str]
    created_at: datetime


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True

