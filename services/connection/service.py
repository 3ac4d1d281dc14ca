"""
services/connection/service.py
Connection Lifecycle Manager.
States: NONE → PENDING → ACCEPTED | REJECTED;  REJECTED → PENDING (re-request)

ConnectionRequest is the single relationship record between a student and
a tutor. Session scheduling and task assignment call require_accepted()
before writing anything.
"""

import logging
import uuid
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.notification.service import dispatch_notification, mark_related_read
from shared.exceptions import NotFound, PermissionDenied, StateConflict, ValidationFailed
from shared.models.models import (
    ConnectionRequest,
    ConnectionStatus,
    NotificationType,
    Profile,
    row_to_dict,
    utcnow,
)
from shared.realtime.feed import ChangeAction, publish_change
from shared.schemas.schemas import ConnectionDecision
from shared.utils.store import commit

logger = logging.getLogger(__name__)


# ── Helpers ───────────────────────────────────────────────────

def _insert_for(db: AsyncSession):
    """Dialect-specific INSERT, needed for ON CONFLICT support."""
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


async def _get_connection(db: AsyncSession, connection_id: uuid.UUID) -> ConnectionRequest:
    result = await db.execute(
        select(ConnectionRequest)
        .where(ConnectionRequest.id == connection_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def get_active_profile(db: AsyncSession, profile_id: uuid.UUID) -> Profile:
    result = await db.execute(select(Profile).where(Profile.id == profile_id))
    profile = result.scalar_one_or_none()
    if not profile or not profile.is_active:
        raise NotFound("Profile not found")
    return profile


# ── Guards ────────────────────────────────────────────────────

async def query_status(
    db: AsyncSession, student_id: uuid.UUID, tutor_id: uuid.UUID
) -> ConnectionStatus:
    """Read-only. NONE when the pair has no row."""
    result = await db.execute(
        select(ConnectionRequest.status).where(
            ConnectionRequest.student_id == student_id,
            ConnectionRequest.tutor_id == tutor_id,
        )
    )
    return result.scalar_one_or_none() or ConnectionStatus.NONE


async def require_accepted(db: AsyncSession, student_id: uuid.UUID, tutor_id: uuid.UUID) -> None:
    current = await query_status(db, student_id, tutor_id)
    if current != ConnectionStatus.ACCEPTED:
        raise StateConflict(
            "No accepted connection between this student and tutor",
            current_status=current.value,
        )


# ── Transitions ───────────────────────────────────────────────

async def request_connection(
    db: AsyncSession,
    student: Profile,
    tutor_id: uuid.UUID,
    message: Optional[str] = None,
) -> ConnectionRequest:
    """
    Student asks a tutor to connect.
    Fresh pair → insert PENDING. REJECTED → same row back to PENDING.
    PENDING or ACCEPTED → StateConflict, nothing written.
    """
    if not student.role.can_study:
        raise PermissionDenied("Only students can request a connection")
    if tutor_id == student.id:
        raise ValidationFailed("Cannot connect with yourself")

    tutor = await get_active_profile(db, tutor_id)
    if not tutor.role.can_tutor:
        raise ValidationFailed("Selected profile is not a tutor")

    now = utcnow()
    insert = _insert_for(db)
    stmt = (
        insert(ConnectionRequest)
        .values(
            id=uuid.uuid4(),
            student_id=student.id,
            tutor_id=tutor.id,
            status=ConnectionStatus.PENDING,
            message=message,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_update(
            index_elements=["student_id", "tutor_id"],
            set_={
                "status": ConnectionStatus.PENDING,
                "message": message,
                "responded_at": None,
                "updated_at": now,
            },
            where=ConnectionRequest.status == ConnectionStatus.REJECTED,
        )
        .returning(ConnectionRequest.id)
    )
    result = await db.execute(stmt)
    connection_id = result.scalar_one_or_none()

    if connection_id is None:
        current = await query_status(db, student.id, tutor.id)
        raise StateConflict(
            f"A {current.value.lower()} connection already exists with this tutor",
            current_status=current.value,
        )

    await commit(db, "request connection")
    connection = await _get_connection(db, connection_id)
    reopened = connection.created_at != connection.updated_at
    logger.info(
        "Connection %s %s: student=%s tutor=%s",
        connection.id, "re-opened" if reopened else "requested", student.id, tutor.id,
    )

    await publish_change(
        "connection_requests",
        ChangeAction.UPDATE if reopened else ChangeAction.INSERT,
        row_to_dict(connection),
    )
    await dispatch_notification(
        db,
        tutor.id,
        NotificationType.CONNECTION_REQUEST,
        related_id=str(connection.id),
        student_name=student.full_name,
    )
    return connection


async def respond_to_connection(
    db: AsyncSession,
    tutor: Profile,
    student_id: uuid.UUID,
    decision: ConnectionDecision,
) -> ConnectionRequest:
    """Addressed tutor accepts or rejects. Only valid while PENDING."""
    if not tutor.role.can_tutor:
        raise PermissionDenied("Only tutors can respond to connection requests")

    try:
        decision = ConnectionDecision(decision)
    except ValueError:
        raise ValidationFailed(f"Unknown decision '{decision}'; expected accept or reject")
    new_status = (
        ConnectionStatus.ACCEPTED if decision == ConnectionDecision.ACCEPT else ConnectionStatus.REJECTED
    )
    now = utcnow()

    # Guarded single-row transition; the WHERE clause is the state check
    result = await db.execute(
        update(ConnectionRequest)
        .where(
            ConnectionRequest.student_id == student_id,
            ConnectionRequest.tutor_id == tutor.id,
            ConnectionRequest.status == ConnectionStatus.PENDING,
        )
        .values(status=new_status, responded_at=now, updated_at=now)
        .returning(ConnectionRequest.id)
        .execution_options(synchronize_session=False)
    )
    connection_id = result.scalar_one_or_none()

    if connection_id is None:
        current = await query_status(db, student_id, tutor.id)
        if current == ConnectionStatus.NONE:
            raise NotFound("No connection request from this student")
        raise StateConflict(
            f"Connection request is already {current.value.lower()}",
            current_status=current.value,
        )

    await commit(db, "respond to connection")
    connection = await _get_connection(db, connection_id)
    logger.info("Connection %s %s by tutor %s", connection.id, new_status.value, tutor.id)

    await publish_change("connection_requests", ChangeAction.UPDATE, row_to_dict(connection))
    await mark_related_read(db, tutor.id, NotificationType.CONNECTION_REQUEST, str(connection.id))

    if new_status == ConnectionStatus.ACCEPTED:
        await dispatch_notification(
            db,
            student_id,
            NotificationType.CONNECTION_ACCEPTED,
            related_id=str(connection.id),
            tutor_name=tutor.full_name,
            tutor_id=tutor.id,
        )
    elif settings.NOTIFY_ON_CONNECTION_REJECTED:
        await dispatch_notification(
            db,
            student_id,
            NotificationType.CONNECTION_REJECTED,
            related_id=str(connection.id),
            tutor_name=tutor.full_name,
        )
    return connection


async def disconnect(db: AsyncSession, student: Profile, tutor_id: uuid.UUID) -> None:
    """Student-side only. Deletes the pair's row whatever its state."""
    if not student.role.can_study:
        raise PermissionDenied("Only the student side can disconnect")

    result = await db.execute(
        delete(ConnectionRequest)
        .where(
            ConnectionRequest.student_id == student.id,
            ConnectionRequest.tutor_id == tutor_id,
        )
        .returning(ConnectionRequest.id)
        .execution_options(synchronize_session=False)
    )
    connection_id = result.scalar_one_or_none()
    if connection_id is None:
        raise NotFound("No connection with this tutor")

    await commit(db, "disconnect")
    logger.info("Connection %s removed by student %s", connection_id, student.id)
    await publish_change(
        "connection_requests",
        ChangeAction.DELETE,
        {"id": connection_id, "student_id": student.id, "tutor_id": tutor_id},
    )


# ── Listings ──────────────────────────────────────────────────

async def list_connections(
    db: AsyncSession,
    user: Profile,
    as_role: str = "student",
    status: Optional[ConnectionStatus] = None,
) -> List[ConnectionRequest]:
    if as_role == "tutor":
        conditions = [ConnectionRequest.tutor_id == user.id]
    else:
        conditions = [ConnectionRequest.student_id == user.id]
    if status is not None:
        conditions.append(ConnectionRequest.status == status)

    result = await db.execute(
        select(ConnectionRequest)
        .where(*conditions)
        .order_by(ConnectionRequest.updated_at.desc())
    )
    return list(result.scalars())


async def list_incoming_requests(db: AsyncSession, tutor: Profile) -> List[ConnectionRequest]:
    """Pending requests addressed to this tutor, oldest first."""
    result = await db.execute(
        select(ConnectionRequest)
        .where(
            ConnectionRequest.tutor_id == tutor.id,
            ConnectionRequest.status == ConnectionStatus.PENDING,
        )
        .order_by(ConnectionRequest.created_at.asc())
    )
    return list(result.scalars())
