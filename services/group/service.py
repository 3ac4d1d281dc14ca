"""
services/group/service.py
Study groups: the membership source the Messaging Channel checks before
accepting or streaming group messages.
"""

import logging
import uuid
from typing import List

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.connection.service import get_active_profile
from services.notification.service import dispatch_notification
from shared.exceptions import NotFound, PermissionDenied, StateConflict, ValidationFailed
from shared.models.models import (
    NotificationType,
    Profile,
    StudyGroup,
    StudyGroupMember,
    row_to_dict,
    utcnow,
)
from shared.realtime.feed import ChangeAction, publish_change
from shared.utils.store import commit

logger = logging.getLogger(__name__)


async def get_group_or_404(db: AsyncSession, group_id: uuid.UUID, lock: bool = False) -> StudyGroup:
    query = select(StudyGroup).where(StudyGroup.id == group_id)
    if lock:
        # Serialises joins on the group row (no-op on SQLite)
        query = query.with_for_update()
    result = await db.execute(query)
    group = result.scalar_one_or_none()
    if not group:
        raise NotFound("Study group not found")
    return group


async def _get_membership(db: AsyncSession, group_id: uuid.UUID, user_id: uuid.UUID):
    result = await db.execute(
        select(StudyGroupMember).where(
            StudyGroupMember.group_id == group_id,
            StudyGroupMember.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def is_active_member(db: AsyncSession, group_id: uuid.UUID, user_id: uuid.UUID) -> bool:
    membership = await _get_membership(db, group_id, user_id)
    return membership is not None and membership.is_active


async def _active_member_count(db: AsyncSession, group_id: uuid.UUID) -> int:
    count = await db.scalar(
        select(func.count(StudyGroupMember.id)).where(
            StudyGroupMember.group_id == group_id,
            StudyGroupMember.is_active.is_(True),
        )
    )
    return count or 0


async def create_group(
    db: AsyncSession,
    creator: Profile,
    name: str,
    subject: str = None,
    description: str = None,
    max_members: int = 20,
) -> StudyGroup:
    """The creator becomes the first active member."""
    name = (name or "").strip()
    if not name:
        raise ValidationFailed("Group name is required")

    group = StudyGroup(
        name=name,
        subject=subject,
        description=description,
        creator_id=creator.id,
        max_members=max_members,
    )
    group.members.append(StudyGroupMember(user_id=creator.id))
    db.add(group)
    await commit(db, "create study group")
    logger.info("Study group %s created by %s", group.id, creator.id)

    await publish_change("study_groups", ChangeAction.INSERT, row_to_dict(group))
    return group


async def join_group(db: AsyncSession, user: Profile, group_id: uuid.UUID) -> StudyGroupMember:
    """
    Capacity is checked under a row lock on the group and re-checked after
    the membership is flushed; a join that would overflow is rolled back.
    """
    group = await get_group_or_404(db, group_id, lock=True)
    membership = await _get_membership(db, group.id, user.id)
    if membership is not None and membership.is_active:
        raise StateConflict("Already a member of this group")
    if await _active_member_count(db, group.id) >= group.max_members:
        raise StateConflict("Study group is full")

    if membership is None:
        membership = StudyGroupMember(group_id=group.id, user_id=user.id)
        db.add(membership)
        action = ChangeAction.INSERT
    else:
        membership.is_active = True
        membership.joined_at = utcnow()
        action = ChangeAction.UPDATE

    await db.flush()
    if await _active_member_count(db, group.id) > group.max_members:
        await db.rollback()
        raise StateConflict("Study group is full")

    await commit(db, "join study group")
    await publish_change("study_group_members", action, row_to_dict(membership))
    return membership


async def leave_group(db: AsyncSession, user: Profile, group_id: uuid.UUID) -> None:
    membership = await _get_membership(db, group_id, user.id)
    if membership is None or not membership.is_active:
        raise NotFound("Not a member of this group")

    membership.is_active = False
    await commit(db, "leave study group")
    await publish_change("study_group_members", ChangeAction.UPDATE, row_to_dict(membership))


async def invite_to_group(
    db: AsyncSession,
    inviter: Profile,
    group_id: uuid.UUID,
    invitee_id: uuid.UUID,
) -> None:
    """Members invite others. The invitation is only a GROUP_INVITE notification."""
    group = await get_group_or_404(db, group_id)
    if not await is_active_member(db, group.id, inviter.id):
        raise PermissionDenied("Only group members can invite")
    invitee = await get_active_profile(db, invitee_id)
    if await is_active_member(db, group.id, invitee.id):
        raise StateConflict("User is already a member of this group")

    await dispatch_notification(
        db,
        invitee.id,
        NotificationType.GROUP_INVITE,
        related_id=str(group.id),
        inviter_name=inviter.full_name,
        group_name=group.name,
        group_id=group.id,
    )


async def list_my_groups(db: AsyncSession, user: Profile) -> List[StudyGroup]:
    result = await db.execute(
        select(StudyGroup)
        .join(StudyGroupMember, StudyGroupMember.group_id == StudyGroup.id)
        .where(StudyGroupMember.user_id == user.id, StudyGroupMember.is_active.is_(True))
        .order_by(StudyGroup.created_at.desc())
    )
    return list(result.scalars())
