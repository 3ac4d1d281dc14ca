"""
services/task/service.py
Task Tracker: homework and quiz items a tutor assigns to a connected student.
Completion is a plain boolean; either side of the pair may flip it.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.connection.service import require_accepted
from services.notification.service import dispatch_notification
from shared.exceptions import NotFound, PermissionDenied, ValidationFailed
from shared.models.models import NotificationType, Profile, Task, row_to_dict, utcnow
from shared.realtime.feed import ChangeAction, publish_change
from shared.utils.store import commit

logger = logging.getLogger(__name__)


async def _get_task_or_404(db: AsyncSession, task_id: uuid.UUID) -> Task:
    result = await db.execute(select(Task).where(Task.id == task_id))
    task = result.scalar_one_or_none()
    if not task:
        raise NotFound("Task not found")
    return task


async def assign_task(
    db: AsyncSession,
    tutor: Profile,
    student_id: uuid.UUID,
    title: str,
    due_date: datetime,
    description: Optional[str] = None,
) -> Task:
    if not tutor.role.can_tutor:
        raise PermissionDenied("Only tutors can assign tasks")
    title = (title or "").strip()
    if not title:
        raise ValidationFailed("Title is required")
    if due_date is None:
        raise ValidationFailed("due_date is required")

    await require_accepted(db, student_id, tutor.id)

    task = Task(
        tutor_id=tutor.id,
        student_id=student_id,
        title=title,
        description=description,
        due_date=due_date,
        is_completed=False,
    )
    db.add(task)
    await commit(db, "assign task")
    logger.info("Task %s assigned by tutor %s to student %s", task.id, tutor.id, student_id)

    await publish_change("tasks", ChangeAction.INSERT, row_to_dict(task))
    await dispatch_notification(
        db,
        student_id,
        NotificationType.TASK_ASSIGNED,
        related_id=str(task.id),
        tutor_name=tutor.full_name,
        title=task.title,
        due_date=task.due_date.strftime("%d %b %Y"),
    )
    return task


async def set_completion(db: AsyncSession, user: Profile, task_id: uuid.UUID, completed: bool) -> Task:
    """Idempotent: setting the flag to its current value writes nothing."""
    task = await _get_task_or_404(db, task_id)
    if user.id not in (task.tutor_id, task.student_id):
        raise PermissionDenied("Not authorized to update this task")
    if task.is_completed == completed:
        return task

    task.is_completed = completed
    task.completed_at = utcnow() if completed else None
    await commit(db, "set task completion")
    await publish_change("tasks", ChangeAction.UPDATE, row_to_dict(task))
    return task


async def delete_task(db: AsyncSession, tutor: Profile, task_id: uuid.UUID) -> None:
    task = await _get_task_or_404(db, task_id)
    if task.tutor_id != tutor.id:
        raise PermissionDenied("Only the assigning tutor can delete a task")

    row = row_to_dict(task)
    await db.delete(task)
    await commit(db, "delete task")
    logger.info("Task %s deleted by tutor %s", task_id, tutor.id)
    await publish_change("tasks", ChangeAction.DELETE, row)


async def list_tasks(
    db: AsyncSession,
    user: Profile,
    tutor_id: uuid.UUID,
    student_id: uuid.UUID,
    completed: Optional[bool] = None,
) -> List[Task]:
    """Tasks for one (tutor, student) pair, earliest due date first."""
    if user.id not in (tutor_id, student_id):
        raise PermissionDenied("You can only list your own tasks")

    query = select(Task).where(Task.tutor_id == tutor_id, Task.student_id == student_id)
    if completed is not None:
        query = query.where(Task.is_completed.is_(completed))
    result = await db.execute(query.order_by(Task.due_date.asc()))
    return list(result.scalars())
