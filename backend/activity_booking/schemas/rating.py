"""
Pydantic schemas for ratings.

Score ranges are checked by the rating service, after eligibility, so that
an ineligible rater gets NotAttended rather than a field error.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


class ParticipantRatingIn(BaseModel):
    participant_id: str = Field(..., min_length=1, max_length=64)
    rating: int
    comment: Optional[str] = Field(None, max_length=500)


class RatingCreate(BaseModel):
    event_id: str = Field(..., min_length=1, max_length=64)
    participant_ratings: list[ParticipantRatingIn] = []
    event_rating: int
    partner_rating: int
    feedback: Optional[str] = Field(None, max_length=2000)


class ParticipantRatingResponse(BaseModel):
    participant_id: str
    rating: int
    comment: Optional[str]

    model_config = {"from_attributes": True}


class RatingResponse(BaseModel):
    id: int
    rater_id: str
    event_id: str
    event_rating: int
    partner_rating: int
    feedback: Optional[str]
    status: str
    submitted_at: datetime
    participant_ratings: list[ParticipantRatingResponse]

    model_config = {"from_attributes": True}


class RatingStatusResponse(BaseModel):
    event_id: str
    needs_rating: bool
    already_rated: bool
    other_participants: list[str]
    min_ratings_required: int


class CommunityRatingResponse(BaseModel):
    user_id: str
    average_rating: float
    total_ratings: int
    distribution: dict[str, int]
    last_updated: Optional[datetime] = None


class EventRatingStatsResponse(BaseModel):
    event_id: str
    total_ratings: int
    average_event_rating: float
    average_partner_rating: float


class RatingModeration(BaseModel):
    status: Literal["submitted", "verified", "flagged"]
