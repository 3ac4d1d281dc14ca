"""
services/session/service.py
Session Scheduler: tutoring-session records gated by an ACCEPTED connection.
States: PENDING → CONFIRMED | REJECTED
        CONFIRMED → COMPLETED
        PENDING | CONFIRMED → CANCELLED

A tutor booking starts CONFIRMED with no approval step; a student request
starts PENDING and waits for the tutor.
"""

import logging
import uuid
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.connection.service import get_active_profile, require_accepted
from services.notification.service import dispatch_notification, format_when
from shared.exceptions import NotFound, PermissionDenied, StateConflict, ValidationFailed
from shared.models.models import (
    NotificationType,
    Profile,
    SessionStatus,
    TutoringSession,
    row_to_dict,
    utcnow,
)
from shared.realtime.feed import ChangeAction, publish_change
from shared.schemas.schemas import SessionDecision, SessionInitiator, SessionListFilter
from shared.utils.store import best_effort, commit

logger = logging.getLogger(__name__)


# ── Helpers ───────────────────────────────────────────────────

async def _get_session_or_404(db: AsyncSession, session_id: uuid.UUID) -> TutoringSession:
    result = await db.execute(
        select(TutoringSession)
        .where(TutoringSession.id == session_id)
        .execution_options(populate_existing=True)
    )
    session = result.scalar_one_or_none()
    if not session:
        raise NotFound("Session not found")
    return session


async def _transition(
    db: AsyncSession,
    session: TutoringSession,
    from_statuses: Iterable[SessionStatus],
    operation: str,
    **values,
) -> TutoringSession:
    """
    Guarded status change: UPDATE ... WHERE status IN (from_statuses).
    Zero rows means someone else moved the session first.
    """
    from_statuses = tuple(from_statuses)
    values.setdefault("updated_at", utcnow())
    result = await db.execute(
        update(TutoringSession)
        .where(TutoringSession.id == session.id, TutoringSession.status.in_(from_statuses))
        .values(**values)
        .returning(TutoringSession.id)
        .execution_options(synchronize_session=False)
    )
    if result.scalar_one_or_none() is None:
        current = await _get_session_or_404(db, session.id)
        raise StateConflict(
            f"Cannot {operation} a session in '{current.status.value}' state",
            current_status=current.status.value,
        )

    await commit(db, f"{operation} session")
    return await _get_session_or_404(db, session.id)


def _resolve_initiator(initiator: Profile, requested: Optional[str]) -> SessionInitiator:
    if requested is not None:
        try:
            role = SessionInitiator(requested)
        except ValueError:
            raise ValidationFailed(f"Unknown initiator_role '{requested}'")
    elif initiator.role.can_tutor and not initiator.role.can_study:
        role = SessionInitiator.TUTOR
    elif initiator.role.can_study and not initiator.role.can_tutor:
        role = SessionInitiator.STUDENT
    else:
        raise ValidationFailed("initiator_role is required for profiles that both tutor and study")

    if role == SessionInitiator.TUTOR and not initiator.role.can_tutor:
        raise PermissionDenied("Only tutors can book sessions as tutor")
    if role == SessionInitiator.STUDENT and not initiator.role.can_study:
        raise PermissionDenied("Only students can request sessions as student")
    return role


def _sessions_url(profile_id: uuid.UUID, session: TutoringSession) -> str:
    side = "tutor" if profile_id == session.tutor_id else "student"
    return f"/dashboard/{side}/sessions"


# ── Creation ──────────────────────────────────────────────────

async def request_session(
    db: AsyncSession,
    initiator: Profile,
    counterpart_id: uuid.UUID,
    subject: str,
    scheduled_at: datetime,
    duration_minutes: int = 60,
    description: Optional[str] = None,
    initiator_role: Optional[str] = None,
) -> TutoringSession:
    """
    Create a session on an ACCEPTED relationship.
    Tutor-initiated → CONFIRMED, student notified (SESSION_SCHEDULED).
    Student-initiated → PENDING, tutor notified (SESSION_REQUEST).
    """
    role = _resolve_initiator(initiator, initiator_role)

    subject = (subject or "").strip()
    if not subject:
        raise ValidationFailed("Subject is required")
    if scheduled_at is None:
        raise ValidationFailed("scheduled_at is required")
    if scheduled_at.tzinfo is None:
        raise ValidationFailed("scheduled_at must be timezone-aware")
    now = utcnow()
    if scheduled_at <= now:
        raise ValidationFailed("Cannot schedule a session in the past")
    if not settings.SESSION_MIN_DURATION_MINUTES <= duration_minutes <= settings.SESSION_MAX_DURATION_MINUTES:
        raise ValidationFailed(
            f"Duration must be between {settings.SESSION_MIN_DURATION_MINUTES} "
            f"and {settings.SESSION_MAX_DURATION_MINUTES} minutes"
        )
    if counterpart_id == initiator.id:
        raise ValidationFailed("Cannot schedule a session with yourself")

    counterpart = await get_active_profile(db, counterpart_id)
    if role == SessionInitiator.TUTOR:
        tutor, student = initiator, counterpart
    else:
        tutor, student = counterpart, initiator

    await require_accepted(db, student.id, tutor.id)

    tutor_booked = role == SessionInitiator.TUTOR
    session = TutoringSession(
        tutor_id=tutor.id,
        student_id=student.id,
        subject=subject,
        description=description,
        scheduled_at=scheduled_at,
        duration_minutes=duration_minutes,
        status=SessionStatus.CONFIRMED if tutor_booked else SessionStatus.PENDING,
        confirmed_at=now if tutor_booked else None,
        created_by_id=initiator.id,
    )
    db.add(session)
    await commit(db, "request session")
    logger.info(
        "Session %s created by %s (%s) status=%s",
        session.id, initiator.id, role.value, session.status.value,
    )

    await publish_change("tutoring_sessions", ChangeAction.INSERT, row_to_dict(session))
    await dispatch_notification(
        db,
        counterpart.id,
        NotificationType.SESSION_SCHEDULED if tutor_booked else NotificationType.SESSION_REQUEST,
        related_id=str(session.id),
        subject=session.subject,
        scheduled_at=format_when(session.scheduled_at),
    )
    return session


# ── Transitions ───────────────────────────────────────────────

async def respond_to_session(
    db: AsyncSession,
    tutor: Profile,
    session_id: uuid.UUID,
    decision: SessionDecision,
) -> TutoringSession:
    """Session's tutor confirms or rejects a PENDING request."""
    session = await _get_session_or_404(db, session_id)
    if session.tutor_id != tutor.id:
        raise PermissionDenied("Not authorized to respond to this session")

    try:
        decision = SessionDecision(decision)
    except ValueError:
        raise ValidationFailed(f"Unknown decision '{decision}'; expected confirm or reject")

    now = utcnow()
    if decision == SessionDecision.CONFIRM:
        session = await _transition(
            db, session, [SessionStatus.PENDING], "confirm",
            status=SessionStatus.CONFIRMED, confirmed_at=now,
        )
        notification_type = NotificationType.SESSION_CONFIRMED
    else:
        session = await _transition(
            db, session, [SessionStatus.PENDING], "reject",
            status=SessionStatus.REJECTED,
        )
        notification_type = NotificationType.SESSION_REJECTED

    logger.info("Session %s → %s by tutor %s", session.id, session.status.value, tutor.id)
    await publish_change("tutoring_sessions", ChangeAction.UPDATE, row_to_dict(session))
    await dispatch_notification(
        db,
        session.student_id,
        notification_type,
        related_id=str(session.id),
        scheduled_at=format_when(session.scheduled_at),
    )
    return session


async def complete_session(db: AsyncSession, tutor: Profile, session_id: uuid.UUID) -> TutoringSession:
    """CONFIRMED → COMPLETED, by the session's tutor. Bumps the tutor's session_count."""
    session = await _get_session_or_404(db, session_id)
    if session.tutor_id != tutor.id:
        raise PermissionDenied("Only the session's tutor can complete it")

    session = await _transition(
        db, session, [SessionStatus.CONFIRMED], "complete",
        status=SessionStatus.COMPLETED, completed_at=utcnow(),
    )
    logger.info("Session %s completed", session.id)
    await publish_change("tutoring_sessions", ChangeAction.UPDATE, row_to_dict(session))

    async def _bump_session_count():
        await db.execute(
            update(Profile)
            .where(Profile.id == session.tutor_id)
            .values(session_count=Profile.session_count + 1)
            .execution_options(synchronize_session=False)
        )

    await best_effort(db, f"session_count for tutor {session.tutor_id}", _bump_session_count)
    await dispatch_notification(
        db,
        session.student_id,
        NotificationType.SESSION_COMPLETED,
        related_id=str(session.id),
        subject=session.subject,
    )
    return session


async def cancel_session(
    db: AsyncSession,
    user: Profile,
    session_id: uuid.UUID,
    reason: Optional[str] = None,
) -> TutoringSession:
    """Either party cancels a PENDING or CONFIRMED session; the other party is notified."""
    session = await _get_session_or_404(db, session_id)
    if user.id not in (session.tutor_id, session.student_id):
        raise PermissionDenied("Not authorized to cancel this session")

    session = await _transition(
        db, session, [SessionStatus.PENDING, SessionStatus.CONFIRMED], "cancel",
        status=SessionStatus.CANCELLED, cancelled_at=utcnow(), cancellation_reason=reason,
    )
    logger.info("Session %s cancelled by %s", session.id, user.id)
    await publish_change("tutoring_sessions", ChangeAction.UPDATE, row_to_dict(session))

    other_party = session.student_id if user.id == session.tutor_id else session.tutor_id
    await dispatch_notification(
        db,
        other_party,
        NotificationType.SESSION_CANCELLED,
        related_id=str(session.id),
        subject=session.subject,
        scheduled_at=format_when(session.scheduled_at),
        sessions_url=_sessions_url(other_party, session),
    )
    return session


# ── Queries ───────────────────────────────────────────────────

async def get_session(db: AsyncSession, user: Profile, session_id: uuid.UUID) -> TutoringSession:
    session = await _get_session_or_404(db, session_id)
    if user.id not in (session.tutor_id, session.student_id):
        raise PermissionDenied("Not authorized to view this session")
    return session


async def list_sessions(
    db: AsyncSession,
    user: Profile,
    role: str,
    session_filter: SessionListFilter = SessionListFilter.ALL,
    now: Optional[datetime] = None,
) -> List[TutoringSession]:
    """
    upcoming:  CONFIRMED and scheduled_at > now, soonest first
    completed: COMPLETED, most recent first
    pending:   PENDING, soonest first
    all:       every status, most recent first
    """
    now = now or utcnow()
    column = TutoringSession.tutor_id if role == "tutor" else TutoringSession.student_id
    query = select(TutoringSession).where(column == user.id)

    session_filter = SessionListFilter(session_filter)
    if session_filter == SessionListFilter.UPCOMING:
        query = query.where(
            TutoringSession.status == SessionStatus.CONFIRMED,
            TutoringSession.scheduled_at > now,
        ).order_by(TutoringSession.scheduled_at.asc())
    elif session_filter == SessionListFilter.COMPLETED:
        query = query.where(TutoringSession.status == SessionStatus.COMPLETED).order_by(
            TutoringSession.scheduled_at.desc()
        )
    elif session_filter == SessionListFilter.PENDING:
        query = query.where(TutoringSession.status == SessionStatus.PENDING).order_by(
            TutoringSession.scheduled_at.asc()
        )
    else:
        query = query.order_by(TutoringSession.scheduled_at.desc())

    result = await db.execute(query)
    return list(result.scalars())