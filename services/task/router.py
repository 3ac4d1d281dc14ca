"""
services/task/router.py
HTTP surface for homework / quiz tasks.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.task import service
from shared.middleware.auth import get_current_user, require_tutor
from shared.models.models import Profile
from shared.schemas.schemas import (
    MessageResponse,
    TaskCompletionRequest,
    TaskCreateRequest,
    TaskResponse,
)

router = APIRouter(prefix="/tasks", tags=["Tasks"])


@router.post("", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def assign_task(
    data: TaskCreateRequest,
    current_user: Profile = Depends(require_tutor),
    db: AsyncSession = Depends(get_db),
):
    """Requires an ACCEPTED connection with the student (409 otherwise)."""
    task = await service.assign_task(
        db,
        current_user,
        student_id=data.student_id,
        title=data.title,
        due_date=data.due_date,
        description=data.description,
    )
    return TaskResponse.model_validate(task)


@router.get("", response_model=list[TaskResponse])
async def list_tasks(
    tutor_id: UUID = Query(...),
    student_id: UUID = Query(...),
    completed: Optional[bool] = Query(None),
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    tasks = await service.list_tasks(db, current_user, tutor_id, student_id, completed)
    return [TaskResponse.model_validate(t) for t in tasks]


@router.patch("/{task_id}/completion", response_model=TaskResponse)
async def set_completion(
    task_id: UUID,
    data: TaskCompletionRequest,
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    task = await service.set_completion(db, current_user, task_id, data.completed)
    return TaskResponse.model_validate(task)


@router.delete("/{task_id}", response_model=MessageResponse)
async def delete_task(
    task_id: UUID,
    current_user: Profile = Depends(require_tutor),
    db: AsyncSession = Depends(get_db),
):
    await service.delete_task(db, current_user, task_id)
    return MessageResponse(message="Task deleted")
