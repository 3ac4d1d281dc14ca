"""
services/review/service.py
Post-session reviews. One per completed session, written by its student.
Aggregate rating recomputation is not done here.
"""

import logging
import uuid
from typing import List

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.notification.service import dispatch_notification
from shared.exceptions import NotFound, PermissionDenied, StateConflict
from shared.models.models import (
    NotificationType,
    Profile,
    Review,
    SessionStatus,
    TutoringSession,
    row_to_dict,
)
from shared.realtime.feed import ChangeAction, publish_change
from shared.utils.store import commit

logger = logging.getLogger(__name__)


async def create_review(
    db: AsyncSession,
    student: Profile,
    session_id: uuid.UUID,
    rating: int,
    comment: str = None,
) -> Review:
    result = await db.execute(select(TutoringSession).where(TutoringSession.id == session_id))
    session = result.scalar_one_or_none()

    if not session:
        raise NotFound("Session not found")
    if session.student_id != student.id:
        raise PermissionDenied("You can only review your own sessions")
    if session.status != SessionStatus.COMPLETED:
        raise StateConflict(
            "Session must be completed before reviewing", current_status=session.status.value
        )

    # Unique constraint on session_id is the real guard; this gives a clean 409
    existing = await db.execute(select(Review.id).where(Review.session_id == session_id))
    if existing.scalar_one_or_none():
        raise StateConflict("You have already reviewed this session")

    review = Review(
        session_id=session.id,
        student_id=student.id,
        tutor_id=session.tutor_id,
        rating=rating,
        comment=comment,
    )
    db.add(review)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise StateConflict("You have already reviewed this session")

    await commit(db, "create review")
    logger.info("Review %s for session %s (rating=%s)", review.id, session.id, rating)

    await publish_change("reviews", ChangeAction.INSERT, row_to_dict(review))
    await dispatch_notification(
        db,
        review.tutor_id,
        NotificationType.REVIEW_RECEIVED,
        related_id=str(review.id),
        rating=rating,
    )
    return review


async def list_tutor_reviews(
    db: AsyncSession, tutor_id: uuid.UUID, page: int = 1, page_size: int = 20
) -> List[Review]:
    result = await db.execute(
        select(Review)
        .where(Review.tutor_id == tutor_id)
        .order_by(Review.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars())
