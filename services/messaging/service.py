"""
services/messaging/service.py
Messaging Channel: direct (1:1) and study-group threads.

Conversations are not stored objects; they are grouped out of Message rows
at query time. Only direct messages carry read state.
"""

import logging
import uuid
from typing import AsyncIterator, Dict, List, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.connection.service import get_active_profile
from services.group.service import get_group_or_404, is_active_member
from shared.exceptions import EngagementError, PermissionDenied, ValidationFailed
from shared.models.models import Message, MessageType, Profile, row_to_dict, utcnow
from shared.realtime.feed import (
    ChangeAction,
    ChangeEvent,
    ChangeFilter,
    get_change_feed,
    publish_change,
)
from shared.schemas.schemas import MessageKind
from shared.utils.store import commit

logger = logging.getLogger(__name__)


def _direct_thread(a: uuid.UUID, b: uuid.UUID):
    return or_(
        and_(Message.sender_id == a, Message.recipient_id == b),
        and_(Message.sender_id == b, Message.recipient_id == a),
    )


async def require_group_member(db: AsyncSession, group_id: uuid.UUID, user_id: uuid.UUID) -> None:
    await get_group_or_404(db, group_id)
    if not await is_active_member(db, group_id, user_id):
        raise PermissionDenied("Only active group members can access this thread")


# ── Send ──────────────────────────────────────────────────────

async def send_message(
    db: AsyncSession,
    sender: Profile,
    target_id: uuid.UUID,
    content: str,
    kind: MessageKind = MessageKind.DIRECT,
) -> Message:
    """target_id is the recipient for direct messages and the group for group messages."""
    if not content or not content.strip():
        raise ValidationFailed("Message body cannot be empty")
    if len(content) > settings.MESSAGE_MAX_LENGTH:
        raise ValidationFailed(f"Message body exceeds {settings.MESSAGE_MAX_LENGTH} characters")

    if MessageKind(kind) == MessageKind.GROUP:
        await require_group_member(db, target_id, sender.id)
        message = Message(
            sender_id=sender.id,
            group_id=target_id,
            content=content,
            message_type=MessageType.GROUP,
        )
    else:
        if target_id == sender.id:
            raise ValidationFailed("Cannot message yourself")
        recipient = await get_active_profile(db, target_id)
        message = Message(
            sender_id=sender.id,
            recipient_id=recipient.id,
            content=content,
            message_type=MessageType.DIRECT,
            is_read=False,
        )

    db.add(message)
    await commit(db, "send message")
    await publish_change("messages", ChangeAction.INSERT, row_to_dict(message))
    return message


# ── Threads ───────────────────────────────────────────────────

async def fetch_thread(
    db: AsyncSession,
    user: Profile,
    other_id: uuid.UUID,
    kind: MessageKind = MessageKind.DIRECT,
    limit: Optional[int] = None,
) -> List[Message]:
    """Oldest first. other_id is the counterparty (direct) or the group (group)."""
    if MessageKind(kind) == MessageKind.GROUP:
        await require_group_member(db, other_id, user.id)
        condition = Message.group_id == other_id
    else:
        condition = and_(Message.message_type == MessageType.DIRECT, _direct_thread(user.id, other_id))

    query = select(Message).where(condition).order_by(Message.created_at.asc(), Message.id.asc())
    if limit:
        # Latest `limit` messages, still returned oldest first
        inner = (
            select(Message.id)
            .where(condition)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
        )
        query = query.where(Message.id.in_(inner))
    result = await db.execute(query)
    return list(result.scalars())


async def _mark_read_between(db: AsyncSession, recipient_id: uuid.UUID, sender_id: uuid.UUID) -> int:
    read_at = utcnow()
    result = await db.execute(
        update(Message)
        .where(
            Message.message_type == MessageType.DIRECT,
            Message.recipient_id == recipient_id,
            Message.sender_id == sender_id,
            Message.is_read.is_(False),
        )
        .values(is_read=True, read_at=read_at, updated_at=read_at)
        .returning(Message.id)
        .execution_options(synchronize_session=False)
    )
    updated_ids = list(result.scalars())
    await commit(db, "mark thread read")

    for message_id in updated_ids:
        await publish_change(
            "messages",
            ChangeAction.UPDATE,
            {
                "id": message_id,
                "sender_id": sender_id,
                "recipient_id": recipient_id,
                "message_type": MessageType.DIRECT,
                "is_read": True,
                "read_at": read_at,
            },
        )
    return len(updated_ids)


async def mark_thread_read(db: AsyncSession, user: Profile, counterparty_id: uuid.UUID) -> int:
    """
    Read every unread direct message sent to user by counterparty.
    Messages from anyone else are untouched. Returns the number flipped.
    """
    return await _mark_read_between(db, user.id, counterparty_id)


async def count_unread_messages(db: AsyncSession, user: Profile) -> int:
    count = await db.scalar(
        select(func.count(Message.id)).where(
            Message.message_type == MessageType.DIRECT,
            Message.recipient_id == user.id,
            Message.is_read.is_(False),
        )
    )
    return count or 0


async def list_conversations(db: AsyncSession, user: Profile) -> List[Dict]:
    """
    One entry per direct counterparty: last message and how many of their
    messages are unread. Most recently active first.
    """
    result = await db.execute(
        select(Message)
        .where(
            Message.message_type == MessageType.DIRECT,
            or_(Message.sender_id == user.id, Message.recipient_id == user.id),
        )
        .order_by(Message.created_at.desc(), Message.id.desc())
    )

    conversations: Dict[uuid.UUID, Dict] = {}
    for message in result.scalars():
        counterparty_id = message.recipient_id if message.sender_id == user.id else message.sender_id
        entry = conversations.setdefault(
            counterparty_id, {"last_message": message, "unread_count": 0}
        )
        if message.recipient_id == user.id and not message.is_read:
            entry["unread_count"] += 1

    if not conversations:
        return []

    profiles = await db.execute(select(Profile).where(Profile.id.in_(list(conversations))))
    by_id = {p.id: p for p in profiles.scalars()}
    return [
        {"counterparty": by_id[cid], **entry}
        for cid, entry in conversations.items()
        if cid in by_id
    ]


# ── Live streams ──────────────────────────────────────────────

async def watch_direct_thread(
    db: AsyncSession,
    user: Profile,
    counterparty_id: uuid.UUID,
    feed=None,
) -> AsyncIterator[ChangeEvent]:
    """
    Push every new message in the user ↔ counterparty thread.
    Messages from the counterparty are marked read before they are yielded,
    as the thread is open on the user's side. Closing the generator
    closes the subscription.
    """
    user_id = user.id
    feed = feed or get_change_feed()
    participants = {user_id, counterparty_id}
    subscription = await feed.subscribe(
        "messages",
        ChangeFilter(
            {"message_type": MessageType.DIRECT, "sender_id": participants, "recipient_id": participants},
            actions=[ChangeAction.INSERT],
        ),
    )
    async with subscription:
        async for event in subscription:
            if event.row.get("sender_id") == str(counterparty_id):
                try:
                    await _mark_read_between(db, user_id, counterparty_id)
                    event.row["is_read"] = True
                except (EngagementError, SQLAlchemyError):
                    await db.rollback()
                    logger.warning(
                        "Auto-read failed for thread %s ← %s", user_id, counterparty_id, exc_info=True
                    )
            yield event


async def watch_group_thread(
    db: AsyncSession,
    user: Profile,
    group_id: uuid.UUID,
    feed=None,
) -> AsyncIterator[ChangeEvent]:
    """Push every new message posted to the group. Membership is checked once, up front."""
    await require_group_member(db, group_id, user.id)
    feed = feed or get_change_feed()
    subscription = await feed.subscribe(
        "messages",
        ChangeFilter({"group_id": group_id}, actions=[ChangeAction.INSERT]),
    )
    async with subscription:
        async for event in subscription:
            yield event
