"""
services/notification/router.py
In-app notifications: listing, read tracking, the unread badge and the
live /ws/notifications feed.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, WebSocket
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.notification import service
from shared.middleware.auth import get_current_user
from shared.models.models import Profile
from shared.realtime.feed import ChangeAction, ChangeFilter, get_change_feed
from shared.realtime.websocket import authenticate_websocket, stream_to_websocket
from shared.schemas.schemas import (
    MarkedReadResponse,
    NotificationListResponse,
    NotificationResponse,
    UnreadCountResponse,
)

router = APIRouter(prefix="/notifications", tags=["Notifications"])
ws_router = APIRouter(tags=["Realtime"])


# ── REST Endpoints ────────────────────────────────────────────

@router.get("", response_model=NotificationListResponse)
async def get_my_notifications(
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get the caller's in-app notifications, newest first."""
    items, total = await service.list_notifications(db, current_user, unread_only, page, page_size)
    return NotificationListResponse(
        items=[NotificationResponse.model_validate(n) for n in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return UnreadCountResponse(unread=await service.count_unread(db, current_user))


@router.post("/read-all", response_model=MarkedReadResponse)
async def mark_all_read(
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return MarkedReadResponse(updated=await service.mark_all_read(db, current_user))


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: UUID,
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    notif = await service.mark_read(db, current_user, notification_id)
    return NotificationResponse.model_validate(notif)


# ── WebSocket ─────────────────────────────────────────────────

@ws_router.websocket("/ws/notifications")
async def notifications_socket(websocket: WebSocket, db: AsyncSession = Depends(get_db)):
    """Pushes the caller's notification inserts and read-state updates."""
    user = await authenticate_websocket(websocket, db)
    if user is None:
        return
    await websocket.accept()

    async def events():
        subscription = await get_change_feed().subscribe(
            "notifications",
            ChangeFilter({"user_id": user.id}, actions=[ChangeAction.INSERT, ChangeAction.UPDATE]),
        )
        async with subscription:
            async for event in subscription:
                yield event

    await stream_to_websocket(websocket, user, events())
