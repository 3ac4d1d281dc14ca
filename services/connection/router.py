"""
services/connection/router.py
HTTP surface for the student ↔ tutor connection lifecycle.
"""

from typing import Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.connection import service
from shared.exceptions import PermissionDenied
from shared.middleware.auth import get_current_user, require_student, require_tutor
from shared.models.models import ConnectionStatus, Profile
from shared.schemas.schemas import (
    ConnectionCreateRequest,
    ConnectionRespondRequest,
    ConnectionResponse,
    ConnectionStatusResponse,
    MessageResponse,
)

router = APIRouter(prefix="/connections", tags=["Connections"])


@router.post("", response_model=ConnectionResponse, status_code=status.HTTP_201_CREATED)
async def request_connection(
    data: ConnectionCreateRequest,
    current_user: Profile = Depends(require_student),
    db: AsyncSession = Depends(get_db),
):
    """
    Ask a tutor to connect. 409 when a pending or accepted request already
    exists; a previously rejected request is re-opened in place.
    """
    connection = await service.request_connection(db, current_user, data.tutor_id, data.message)
    return ConnectionResponse.model_validate(connection)


@router.get("", response_model=list[ConnectionResponse])
async def list_connections(
    as_role: Literal["student", "tutor"] = Query("student"),
    status_filter: Optional[ConnectionStatus] = Query(None, alias="status"),
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    connections = await service.list_connections(db, current_user, as_role, status_filter)
    return [ConnectionResponse.model_validate(c) for c in connections]


@router.get("/incoming", response_model=list[ConnectionResponse])
async def list_incoming_requests(
    current_user: Profile = Depends(require_tutor),
    db: AsyncSession = Depends(get_db),
):
    """Pending requests waiting on this tutor."""
    connections = await service.list_incoming_requests(db, current_user)
    return [ConnectionResponse.model_validate(c) for c in connections]


@router.get("/status", response_model=ConnectionStatusResponse)
async def get_connection_status(
    student_id: UUID = Query(...),
    tutor_id: UUID = Query(...),
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if current_user.id not in (student_id, tutor_id):
        raise PermissionDenied("You can only view your own connections")
    current = await service.query_status(db, student_id, tutor_id)
    return ConnectionStatusResponse(student_id=student_id, tutor_id=tutor_id, status=current.value)


@router.post("/{student_id}/respond", response_model=ConnectionResponse)
async def respond_to_connection(
    student_id: UUID,
    data: ConnectionRespondRequest,
    current_user: Profile = Depends(require_tutor),
    db: AsyncSession = Depends(get_db),
):
    """Tutor accepts or rejects a pending request. PENDING → ACCEPTED | REJECTED."""
    connection = await service.respond_to_connection(db, current_user, student_id, data.decision)
    return ConnectionResponse.model_validate(connection)


@router.delete("/{tutor_id}", response_model=MessageResponse)
async def disconnect(
    tutor_id: UUID,
    current_user: Profile = Depends(require_student),
    db: AsyncSession = Depends(get_db),
):
    await service.disconnect(db, current_user, tutor_id)
    return MessageResponse(message="Disconnected from tutor")
