"""
Post-event rating endpoints.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from activity_booking.api.deps import get_payment_gateway
from activity_booking.core.security import Caller, get_current_caller, require_admin
from activity_booking.db.session import get_db
from activity_booking.infrastructure.payment_gateway import PaymentGateway
from activity_booking.schemas.rating import (
    CommunityRatingResponse,
    EventRatingStatsResponse,
    RatingCreate,
    RatingModeration,
    RatingResponse,
    RatingStatusResponse,
)
from activity_booking.services import rating_service
from activity_booking.services.rating_service import ParticipantScore

router = APIRouter(prefix="/ratings", tags=["Ratings"])


@router.post("/", response_model=RatingResponse, status_code=status.HTTP_201_CREATED)
async def submit_rating(
    body: RatingCreate,
    caller: Caller = Depends(get_current_caller),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
):
    """Rate an attended event, its partner and at least min(2, others) participants."""
    return await rating_service.submit_rating(
        db,
        gateway,
        rater_id=caller.user_id,
        event_id=body.event_id,
        participant_ratings=[
            ParticipantScore(participant_id=p.participant_id, rating=p.rating, comment=p.comment)
            for p in body.participant_ratings
        ],
        event_rating=body.event_rating,
        partner_rating=body.partner_rating,
        feedback=body.feedback,
    )


@router.get("/status/{event_id}", response_model=RatingStatusResponse)
async def rating_status(
    event_id: str,
    caller: Caller = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
):
    return await rating_service.check_rating_status(db, caller.user_id, event_id)


@router.get("/community/{user_id}", response_model=CommunityRatingResponse)
async def community_rating(
    user_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Average and 1-5 histogram of the ratings a user received. Cached in Redis."""
    return await rating_service.get_community_rating(db, user_id)


@router.get("/events/{event_id}/stats", response_model=EventRatingStatsResponse)
async def event_rating_stats(
    event_id: str,
    db: AsyncSession = Depends(get_db),
):
    return await rating_service.get_event_rating_stats(db, event_id)


@router.patch("/{rating_id}/moderation", response_model=RatingResponse)
async def moderate_rating(
    rating_id: int,
    body: RatingModeration,
    admin: Caller = Depends(require_admin),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
):
    return await rating_service.moderate_rating(db, gateway, admin, rating_id, body.status)
