"""
services/review/router.py
Rating and review management.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.review import service
from shared.middleware.auth import get_current_user, require_student
from shared.models.models import Profile
from shared.schemas.schemas import ReviewCreateRequest, ReviewResponse

router = APIRouter(prefix="/reviews", tags=["Reviews"])


@router.post("", response_model=ReviewResponse, status_code=status.HTTP_201_CREATED)
async def create_review(
    data: ReviewCreateRequest,
    current_user: Profile = Depends(require_student),
    db: AsyncSession = Depends(get_db),
):
    """
    Submit a review for a completed session.
    - One review per session (enforced by DB unique constraint)
    - Session must be in COMPLETED status
    - Only the session's student can review
    """
    review = await service.create_review(db, current_user, data.session_id, data.rating, data.comment)
    return ReviewResponse.model_validate(review)


@router.get("/tutor/{tutor_id}", response_model=list[ReviewResponse])
async def get_tutor_reviews(
    tutor_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    reviews = await service.list_tutor_reviews(db, tutor_id, page, page_size)
    return [ReviewResponse.model_validate(r) for r in reviews]
