"""
shared/models/models.py
All SQLAlchemy ORM models for the tutoring engagement platform.
UUID primary keys throughout; every timestamp passes through UTCDateTime.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetimes in and out of every backend.
    Naive values are taken to be UTC; SQLite hands back naive values,
    so results are re-tagged here rather than in calling code.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ── Enumerations ──────────────────────────────────────────────

class ProfileRole(str, PyEnum):
    STUDENT = "STUDENT"
    TUTOR = "TUTOR"
    BOTH = "BOTH"

    @property
    def can_tutor(self) -> bool:
        return self in (ProfileRole.TUTOR, ProfileRole.BOTH)

    @property
    def can_study(self) -> bool:
        return self in (ProfileRole.STUDENT, ProfileRole.BOTH)


class ConnectionStatus(str, PyEnum):
    NONE = "NONE"           # never persisted; reported when no row exists
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class SessionStatus(str, PyEnum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


class NotificationType(str, PyEnum):
    CONNECTION_REQUEST = "CONNECTION_REQUEST"
    CONNECTION_ACCEPTED = "CONNECTION_ACCEPTED"
    CONNECTION_REJECTED = "CONNECTION_REJECTED"
    SESSION_REQUEST = "SESSION_REQUEST"
    SESSION_SCHEDULED = "SESSION_SCHEDULED"
    SESSION_CONFIRMED = "SESSION_CONFIRMED"
    SESSION_REJECTED = "SESSION_REJECTED"
    SESSION_CANCELLED = "SESSION_CANCELLED"
    SESSION_COMPLETED = "SESSION_COMPLETED"
    TASK_ASSIGNED = "TASK_ASSIGNED"
    NEW_MESSAGE = "NEW_MESSAGE"
    GROUP_INVITE = "GROUP_INVITE"
    REVIEW_RECEIVED = "REVIEW_RECEIVED"


class MessageType(str, PyEnum):
    DIRECT = "DIRECT"
    GROUP = "GROUP"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False
    )


# ── Models ────────────────────────────────────────────────────

class Profile(TimestampMixin, Base):
    """A platform member. The auth collaborator owns the id."""
    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    bio: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    role: Mapped[ProfileRole] = mapped_column(
        Enum(ProfileRole), nullable=False, default=ProfileRole.STUDENT
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Tutor-facing
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Aggregates (denormalized; recomputation happens elsewhere)
    rating_avg: Mapped[float] = mapped_column(Numeric(3, 2), default=0)
    session_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    notifications: Mapped[List["Notification"]] = relationship(back_populates="recipient")

    __table_args__ = (Index("ix_profiles_role", "role"),)

    def __repr__(self) -> str:
        return f"<Profile {self.email} ({self.role})>"


class ConnectionRequest(TimestampMixin, Base):
    """
    The one relationship record between a student and a tutor.
    Re-requesting after rejection updates this row; it is never duplicated.
    """
    __tablename__ = "connection_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    tutor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[ConnectionStatus] = mapped_column(
        Enum(ConnectionStatus), nullable=False, default=ConnectionStatus.PENDING
    )
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    responded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        UniqueConstraint("student_id", "tutor_id", name="uq_connection_student_tutor"),
        Index("ix_connection_requests_tutor_status", "tutor_id", "status"),
    )


class TutoringSession(TimestampMixin, Base):
    """
    A scheduled lesson between one student and one tutor.
    PENDING → CONFIRMED | REJECTED; CONFIRMED → COMPLETED;
    PENDING | CONFIRMED → CANCELLED.
    """
    __tablename__ = "tutoring_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tutor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False
    )
    student_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False
    )
    subject: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus), nullable=False, default=SessionStatus.PENDING
    )
    created_by_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    confirmed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    review: Mapped[Optional["Review"]] = relationship(back_populates="session", uselist=False)

    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="ck_session_duration_positive"),
        Index("ix_sessions_tutor_id", "tutor_id"),
        Index("ix_sessions_student_id", "student_id"),
        Index("ix_sessions_status_scheduled", "status", "scheduled_at"),
    )


class Task(TimestampMixin, Base):
    """Homework or quiz item assigned by a tutor. Binary completion flag."""
    __tablename__ = "tasks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tutor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False
    )
    student_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    due_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    __table_args__ = (Index("ix_tasks_pair_due", "tutor_id", "student_id", "due_date"),)


class Notification(TimestampMixin, Base):
    """In-app notification. Only is_read/read_at ever change after insert."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False
    )
    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    related_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    recipient: Mapped["Profile"] = relationship(back_populates="notifications")

    __table_args__ = (Index("ix_notifications_user_id_read", "user_id", "is_read"),)


class StudyGroup(TimestampMixin, Base):
    """A study group. Its members may post to the group thread."""
    __tablename__ = "study_groups"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    creator_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False
    )
    max_members: Mapped[int] = mapped_column(Integer, default=20, nullable=False)

    members: Mapped[List["StudyGroupMember"]] = relationship(
        back_populates="group", cascade="all, delete-orphan"
    )


class StudyGroupMember(Base):
    __tablename__ = "study_group_members"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    group_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("study_groups.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    joined_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    group: Mapped["StudyGroup"] = relationship(back_populates="members")

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_member"),
    )


class Message(TimestampMixin, Base):
    """
    Direct (sender → recipient) or group (sender → group) message.
    Only direct messages carry read state.
    """
    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    sender_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False
    )
    recipient_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=True
    )
    group_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("study_groups.id", ondelete="CASCADE"), nullable=True
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    message_type: Mapped[MessageType] = mapped_column(Enum(MessageType), nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime())

    __table_args__ = (
        CheckConstraint(
            "(message_type = 'DIRECT' AND recipient_id IS NOT NULL AND group_id IS NULL) OR "
            "(message_type = 'GROUP' AND group_id IS NOT NULL AND recipient_id IS NULL)",
            name="ck_message_target",
        ),
        Index("ix_messages_recipient_read", "recipient_id", "is_read"),
        Index("ix_messages_group_created", "group_id", "created_at"),
    )


class Review(TimestampMixin, Base):
    """Post-session review. One per session (enforced by unique constraint)."""
    __tablename__ = "reviews"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tutoring_sessions.id"), unique=True, nullable=False
    )
    student_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False
    )
    tutor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), nullable=False
    )
    rating: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    session: Mapped["TutoringSession"] = relationship(back_populates="review")

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating_range"),
        Index("ix_reviews_tutor_id", "tutor_id"),
    )


def row_to_dict(obj: Base) -> dict:
    """Plain column → value mapping, used for change-feed payloads."""
    return {col.name: getattr(obj, col.key) for col in obj.__table__.columns}
