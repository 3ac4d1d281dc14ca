"""
services/session/router.py
HTTP surface for tutoring-session scheduling.
"""

from typing import Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.session import service
from shared.middleware.auth import get_current_user, require_tutor
from shared.models.models import Profile
from shared.schemas.schemas import (
    SessionCancelRequest,
    SessionCreateRequest,
    SessionListFilter,
    SessionRespondRequest,
    SessionResponse,
)

router = APIRouter(prefix="/sessions", tags=["Sessions"])


@router.post("", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def request_session(
    data: SessionCreateRequest,
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Tutors book (CONFIRMED immediately); students request (PENDING until the
    tutor responds). Either way an ACCEPTED connection must already exist.
    """
    session = await service.request_session(
        db,
        current_user,
        counterpart_id=data.counterpart_id,
        subject=data.subject,
        scheduled_at=data.scheduled_at,
        duration_minutes=data.duration_minutes,
        description=data.description,
        initiator_role=data.initiator_role,
    )
    return SessionResponse.model_validate(session)


@router.get("", response_model=list[SessionResponse])
async def list_sessions(
    role: Literal["student", "tutor"] = Query("student"),
    session_filter: SessionListFilter = Query(SessionListFilter.ALL, alias="filter"),
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    sessions = await service.list_sessions(db, current_user, role, session_filter)
    return [SessionResponse.model_validate(s) for s in sessions]


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: UUID,
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    session = await service.get_session(db, current_user, session_id)
    return SessionResponse.model_validate(session)


@router.post("/{session_id}/respond", response_model=SessionResponse)
async def respond_to_session(
    session_id: UUID,
    data: SessionRespondRequest,
    current_user: Profile = Depends(require_tutor),
    db: AsyncSession = Depends(get_db),
):
    """Tutor confirms or rejects a PENDING request."""
    session = await service.respond_to_session(db, current_user, session_id, data.decision)
    return SessionResponse.model_validate(session)


@router.post("/{session_id}/complete", response_model=SessionResponse)
async def complete_session(
    session_id: UUID,
    current_user: Profile = Depends(require_tutor),
    db: AsyncSession = Depends(get_db),
):
    session = await service.complete_session(db, current_user, session_id)
    return SessionResponse.model_validate(session)


@router.post("/{session_id}/cancel", response_model=SessionResponse)
async def cancel_session(
    session_id: UUID,
    data: Optional[SessionCancelRequest] = None,
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    reason = data.reason if data else None
    session = await service.cancel_session(db, current_user, session_id, reason)
    return SessionResponse.model_validate(session)
