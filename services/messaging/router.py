"""
services/messaging/router.py
Direct and group messaging, plus the live thread WebSockets.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, WebSocket, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.messaging import service
from shared.exceptions import EngagementError
from shared.middleware.auth import get_current_user
from shared.models.models import Profile
from shared.realtime.websocket import authenticate_websocket, stream_to_websocket
from shared.schemas.schemas import (
    ChatMessageResponse,
    ConversationResponse,
    MarkedReadResponse,
    MessageKind,
    MessageSendRequest,
    UnreadCountResponse,
)

router = APIRouter(prefix="/messages", tags=["Messages"])
ws_router = APIRouter(tags=["Realtime"])


@router.post("", response_model=ChatMessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    data: MessageSendRequest,
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    message = await service.send_message(db, current_user, data.target_id, data.content, data.kind)
    return ChatMessageResponse.model_validate(message)


@router.get("/conversations", response_model=list[ConversationResponse])
async def list_conversations(
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    conversations = await service.list_conversations(db, current_user)
    return [ConversationResponse.model_validate(c) for c in conversations]


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return UnreadCountResponse(unread=await service.count_unread_messages(db, current_user))


@router.get("/direct/{counterparty_id}", response_model=list[ChatMessageResponse])
async def fetch_direct_thread(
    counterparty_id: UUID,
    limit: Optional[int] = Query(None, ge=1, le=500),
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    messages = await service.fetch_thread(db, current_user, counterparty_id, MessageKind.DIRECT, limit)
    return [ChatMessageResponse.model_validate(m) for m in messages]


@router.post("/direct/{counterparty_id}/read", response_model=MarkedReadResponse)
async def mark_thread_read(
    counterparty_id: UUID,
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return MarkedReadResponse(updated=await service.mark_thread_read(db, current_user, counterparty_id))


@router.get("/groups/{group_id}", response_model=list[ChatMessageResponse])
async def fetch_group_thread(
    group_id: UUID,
    limit: Optional[int] = Query(None, ge=1, le=500),
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    messages = await service.fetch_thread(db, current_user, group_id, MessageKind.GROUP, limit)
    return [ChatMessageResponse.model_validate(m) for m in messages]


# ── WebSockets ────────────────────────────────────────────────

@ws_router.websocket("/ws/messages/{counterparty_id}")
async def direct_thread_socket(
    websocket: WebSocket,
    counterparty_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    """Live direct thread. Incoming messages from the counterparty are marked read."""
    user = await authenticate_websocket(websocket, db)
    if user is None:
        return
    await websocket.accept()
    await stream_to_websocket(websocket, user, service.watch_direct_thread(db, user, counterparty_id))


@ws_router.websocket("/ws/groups/{group_id}")
async def group_thread_socket(
    websocket: WebSocket,
    group_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    user = await authenticate_websocket(websocket, db)
    if user is None:
        return
    try:
        await service.require_group_member(db, group_id, user.id)
    except EngagementError as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.detail)
        return
    await websocket.accept()
    await stream_to_websocket(websocket, user, service.watch_group_thread(db, user, group_id))
