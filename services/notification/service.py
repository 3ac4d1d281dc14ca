"""
services/notification/service.py
Notification Dispatcher: best-effort append of in-app notifications, and
read/unread tracking for the badge counters.

notify() is always phase two of a lifecycle transition: the triggering
entity is already committed, so a failure here is logged and swallowed.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import NotFound, PermissionDenied
from shared.models.models import Notification, NotificationType, Profile, row_to_dict
from shared.realtime.feed import ChangeAction, publish_change
from shared.utils.store import best_effort, commit

logger = logging.getLogger(__name__)


# ── Notification Templates ────────────────────────────────────

TEMPLATES = {
    NotificationType.CONNECTION_REQUEST: {
        "title": "New Student Request",
        "message": "{student_name} wants to learn with you!",
        "action_url": "/dashboard/tutor/students",
    },
    NotificationType.CONNECTION_ACCEPTED: {
        "title": "Request Accepted!",
        "message": "{tutor_name} has accepted your request. You can now book sessions.",
        "action_url": "/dashboard/student/tutors/{tutor_id}",
    },
    NotificationType.CONNECTION_REJECTED: {
        "title": "Request Declined",
        "message": "{tutor_name} is unable to take you on right now.",
        "action_url": "/dashboard/student/tutors",
    },
    NotificationType.SESSION_SCHEDULED: {
        "title": "New Session Scheduled",
        "message": "Your tutor scheduled a {subject} session for {scheduled_at}.",
        "action_url": "/dashboard/student/sessions",
    },
    NotificationType.SESSION_REQUEST: {
        "title": "New Session Request",
        "message": "A student requested a {subject} session for {scheduled_at}.",
        "action_url": "/dashboard/tutor/sessions",
    },
    NotificationType.SESSION_CONFIRMED: {
        "title": "Session Request Accepted",
        "message": "Your tutor accepted the session for {scheduled_at}.",
        "action_url": "/dashboard/student/sessions",
    },
    NotificationType.SESSION_REJECTED: {
        "title": "Session Request Declined",
        "message": "Your tutor was unable to accept the session request.",
        "action_url": "/dashboard/student/sessions",
    },
    NotificationType.SESSION_CANCELLED: {
        "title": "Session Cancelled",
        "message": "The {subject} session on {scheduled_at} was cancelled.",
        "action_url": "{sessions_url}",
    },
    NotificationType.SESSION_COMPLETED: {
        "title": "Session Completed",
        "message": "Your {subject} session is complete. Leave a review for your tutor.",
        "action_url": "/dashboard/student/reviews",
    },
    NotificationType.TASK_ASSIGNED: {
        "title": "New Task Assigned",
        "message": "{tutor_name} assigned \"{title}\", due {due_date}.",
        "action_url": "/dashboard/student/progress",
    },
    NotificationType.GROUP_INVITE: {
        "title": "Study Group Invitation",
        "message": "{inviter_name} invited you to join {group_name}.",
        "action_url": "/dashboard/student/study-groups/{group_id}",
    },
    NotificationType.REVIEW_RECEIVED: {
        "title": "New Review",
        "message": "You received a {rating}-star review.",
        "action_url": "/dashboard/tutor/reviews",
    },
}


def format_when(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%d %b %Y %H:%M UTC")


def render(notification_type: NotificationType, **template_vars) -> dict:
    template = TEMPLATES.get(notification_type, {})
    return {
        "title": template.get("title", "Notification").format(**template_vars),
        "message": template.get("message", "").format(**template_vars),
        "action_url": template.get("action_url", "").format(**template_vars) or None,
    }


# ── Dispatch ──────────────────────────────────────────────────

async def notify(
    db: AsyncSession,
    recipient_id: uuid.UUID,
    notification_type: NotificationType,
    title: str,
    message: str,
    related_id: Optional[str] = None,
    action_url: Optional[str] = None,
) -> Optional[Notification]:
    """
    Append one notification. Never raises: returns None when the insert
    fails. No deduplication, so a repeated trigger yields a repeated row.
    """
    async def _insert() -> Notification:
        notif = Notification(
            user_id=recipient_id,
            type=notification_type,
            title=title,
            message=message,
            related_id=str(related_id) if related_id is not None else None,
            action_url=action_url,
        )
        db.add(notif)
        await db.flush()
        return notif

    notif = await best_effort(
        db, f"{notification_type.value} notification to {recipient_id}", _insert
    )
    if notif is not None:
        await publish_change("notifications", ChangeAction.INSERT, row_to_dict(notif))
    return notif


async def dispatch_notification(
    db: AsyncSession,
    recipient_id: uuid.UUID,
    notification_type: NotificationType,
    related_id: Optional[str] = None,
    message: Optional[str] = None,
    **template_vars,
) -> Optional[Notification]:
    """Render the template for this type and notify(). A caller-supplied message wins."""
    try:
        rendered = render(notification_type, **template_vars)
    except (KeyError, IndexError):
        logger.warning("Template variables missing for %s", notification_type.value, exc_info=True)
        return None
    return await notify(
        db,
        recipient_id,
        notification_type,
        title=rendered["title"],
        message=message or rendered["message"],
        related_id=related_id,
        action_url=rendered["action_url"],
    )


# ── Read tracking ─────────────────────────────────────────────

async def list_notifications(
    db: AsyncSession,
    user: Profile,
    unread_only: bool = False,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[Notification], int]:
    """Newest first."""
    conditions = [Notification.user_id == user.id]
    if unread_only:
        conditions.append(Notification.is_read.is_(False))

    total = await db.scalar(select(func.count(Notification.id)).where(*conditions))
    result = await db.execute(
        select(Notification)
        .where(*conditions)
        .order_by(Notification.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars()), total or 0


async def mark_read(db: AsyncSession, user: Profile, notification_id: uuid.UUID) -> Notification:
    result = await db.execute(select(Notification).where(Notification.id == notification_id))
    notif = result.scalar_one_or_none()
    if not notif:
        raise NotFound("Notification not found")
    if notif.user_id != user.id:
        raise PermissionDenied("Not authorized to modify this notification")
    if notif.is_read:
        return notif

    notif.is_read = True
    notif.read_at = datetime.now(timezone.utc)
    await commit(db, "mark notification read")
    await publish_change("notifications", ChangeAction.UPDATE, row_to_dict(notif))
    return notif


async def _publish_read(user_id: uuid.UUID, notification_ids: List[uuid.UUID], read_at: datetime) -> None:
    for notification_id in notification_ids:
        await publish_change(
            "notifications",
            ChangeAction.UPDATE,
            {"id": notification_id, "user_id": user_id, "is_read": True, "read_at": read_at},
        )


async def mark_all_read(db: AsyncSession, user: Profile) -> int:
    """Flip every unread notification of the user. Returns how many changed."""
    read_at = datetime.now(timezone.utc)
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user.id, Notification.is_read.is_(False))
        .values(is_read=True, read_at=read_at)
        .returning(Notification.id)
        .execution_options(synchronize_session=False)
    )
    updated_ids = list(result.scalars())
    await commit(db, "mark all notifications read")

    await _publish_read(user.id, updated_ids, read_at)
    return len(updated_ids)


async def mark_related_read(
    db: AsyncSession,
    user_id: uuid.UUID,
    notification_type: NotificationType,
    related_id: str,
) -> int:
    """
    Clear the badge for notifications about an entity the user has acted on.
    Best-effort: runs after the caller's primary commit and never raises.
    Each flipped row is published as an UPDATE once committed.
    """
    read_at = datetime.now(timezone.utc)

    async def _flip() -> List[uuid.UUID]:
        result = await db.execute(
            update(Notification)
            .where(
                Notification.user_id == user_id,
                Notification.type == notification_type,
                Notification.related_id == str(related_id),
                Notification.is_read.is_(False),
            )
            .values(is_read=True, read_at=read_at)
            .returning(Notification.id)
            .execution_options(synchronize_session=False)
        )
        return list(result.scalars())

    updated_ids = await best_effort(
        db, f"clear {notification_type.value} notifications for {related_id}", _flip
    )
    if not updated_ids:
        return 0
    await _publish_read(user_id, updated_ids, read_at)
    return len(updated_ids)


async def count_unread(db: AsyncSession, user: Profile) -> int:
    count = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == user.id,
            Notification.is_read.is_(False),
        )
    )
    return count or 0
