"""
services/group/router.py
Study-group membership endpoints.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.group import service
from shared.middleware.auth import get_current_user
from shared.models.models import Profile
from shared.schemas.schemas import (
    GroupCreateRequest,
    GroupInviteRequest,
    GroupResponse,
    MessageResponse,
)

router = APIRouter(prefix="/groups", tags=["Study Groups"])


@router.post("", response_model=GroupResponse, status_code=status.HTTP_201_CREATED)
async def create_group(
    data: GroupCreateRequest,
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    group = await service.create_group(
        db,
        current_user,
        name=data.name,
        subject=data.subject,
        description=data.description,
        max_members=data.max_members,
    )
    return GroupResponse.model_validate(group)


@router.get("/mine", response_model=list[GroupResponse])
async def list_my_groups(
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    groups = await service.list_my_groups(db, current_user)
    return [GroupResponse.model_validate(g) for g in groups]


@router.post("/{group_id}/join", response_model=MessageResponse)
async def join_group(
    group_id: UUID,
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await service.join_group(db, current_user, group_id)
    return MessageResponse(message="Joined study group")


@router.post("/{group_id}/leave", response_model=MessageResponse)
async def leave_group(
    group_id: UUID,
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await service.leave_group(db, current_user, group_id)
    return MessageResponse(message="Left study group")


@router.post("/{group_id}/invite", response_model=MessageResponse)
async def invite_to_group(
    group_id: UUID,
    data: GroupInviteRequest,
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await service.invite_to_group(db, current_user, group_id, data.user_id)
    return MessageResponse(message="Invitation sent")
