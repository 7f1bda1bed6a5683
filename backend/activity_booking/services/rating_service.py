"""
Post-event ratings and community rating aggregates.

An "event" is an activity: attendees are the users holding a confirmed or
completed booking for it.

Submission checks, in order:
  1. rater holds a confirmed/completed booking        -> NotAttended
  2. rater has not rated this event yet               -> AlreadyRated
  3. every rated participant attended (not the rater) -> InvalidParticipant
  4. at least min(2, other attendees) distinct ratings -> InsufficientParticipants
  5. every score is within 1..5                       -> OutOfRange

The community aggregate of each rated participant is rebuilt from all
non-flagged ratings after the rating commits (outbox).
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from activity_booking.core import clock
from activity_booking.core.exceptions import (
    AlreadyRatedError,
    InsufficientParticipantsError,
    InvalidParticipantError,
    NotAttendedError,
    NotFoundError,
    OutOfRangeError,
    ValidationError,
)
from activity_booking.core.logging import get_logger
from activity_booking.core.metrics import ratings_submitted
from activity_booking.core.security import Caller
from activity_booking.models.booking import Booking, BookingStatus
from activity_booking.models.rating import CommunityRating, ParticipantRating, Rating, RatingStatus
from activity_booking.services import cache_service, outbox_service

logger = get_logger(__name__)

MIN_SCORE = 1
MAX_SCORE = 5
MIN_PARTICIPANT_RATINGS = 2
TWO_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class ParticipantScore:
    participant_id: str
    rating: int
    comment: Optional[str] = None


def required_participant_ratings(other_attendees: int) -> int:
    return min(MIN_PARTICIPANT_RATINGS, other_attendees)


def round_average(total: int, count: int) -> float:
    if count == 0:
        return 0.0
    return float((Decimal(total) / Decimal(count)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP))


def empty_distribution() -> dict[str, int]:
    return {str(score): 0 for score in range(MIN_SCORE, MAX_SCORE + 1)}


async def _has_booking(db: AsyncSession, user_id: str, event_id: str, statuses: Sequence[str]) -> bool:
    result = await db.execute(
        select(Booking.id)
        .where(
            Booking.user_id == user_id,
            Booking.activity_id == event_id,
            Booking.status.in_(statuses),
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def _attendees(db: AsyncSession, event_id: str) -> set[str]:
    result = await db.execute(
        select(Booking.user_id)
        .where(
            Booking.activity_id == event_id,
            Booking.status.in_(BookingStatus.ATTENDED),
        )
        .distinct()
    )
    return set(result.scalars().all())


async def _existing_rating(db: AsyncSession, rater_id: str, event_id: str) -> Optional[Rating]:
    result = await db.execute(
        select(Rating).where(Rating.rater_id == rater_id, Rating.event_id == event_id)
    )
    return result.scalar_one_or_none()


def _check_range(name: str, value: int) -> None:
    if not MIN_SCORE <= value <= MAX_SCORE:
        raise OutOfRangeError(
            f"{name} must be between {MIN_SCORE} and {MAX_SCORE}",
            details={"field": name, "value": value},
        )


async def submit_rating(
    db: AsyncSession,
    gateway,
    rater_id: str,
    event_id: str,
    participant_ratings: Sequence[ParticipantScore],
    event_rating: int,
    partner_rating: int,
    feedback: Optional[str] = None,
) -> Rating:
    if not await _has_booking(db, rater_id, event_id, BookingStatus.ATTENDED):
        raise NotAttendedError("You can only rate events you attended")

    if await _existing_rating(db, rater_id, event_id) is not None:
        raise AlreadyRatedError("You have already rated this event")

    others = await _attendees(db, event_id)
    others.discard(rater_id)

    seen: set[str] = set()
    for score in participant_ratings:
        if score.participant_id == rater_id or score.participant_id not in others:
            raise InvalidParticipantError(
                f"{score.participant_id} did not attend this event",
                details={"participant_id": score.participant_id},
            )
        if score.participant_id in seen:
            raise InvalidParticipantError(
                f"{score.participant_id} is rated more than once",
                details={"participant_id": score.participant_id},
            )
        seen.add(score.participant_id)

    required = required_participant_ratings(len(others))
    if len(seen) < required:
        raise InsufficientParticipantsError(
            f"Rate at least {required} other participant(s)",
            details={"required": required, "provided": len(seen)},
        )

    _check_range("event_rating", event_rating)
    _check_range("partner_rating", partner_rating)
    for score in participant_ratings:
        _check_range("participant_rating", score.rating)

    rating = Rating(
        rater_id=rater_id,
        event_id=event_id,
        event_rating=event_rating,
        partner_rating=partner_rating,
        feedback=feedback,
        status=RatingStatus.SUBMITTED,
        submitted_at=clock.utcnow(),
        participant_ratings=[
            ParticipantRating(participant_id=s.participant_id, rating=s.rating, comment=s.comment)
            for s in participant_ratings
        ],
    )
    db.add(rating)
    try:
        await db.flush()
        if seen:
            await outbox_service.enqueue(
                db,
                outbox_service.COMMUNITY_RATING_RECOMPUTE,
                aggregate_id=f"rating:{rating.id}",
                payload={"user_ids": sorted(seen)},
                idempotency_key=f"community:rating:{rating.id}:submitted",
            )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        outbox_service.discard_uncommitted(db)
        ratings_submitted.labels(result="duplicate").inc()
        raise AlreadyRatedError("You have already rated this event")

    ratings_submitted.labels(result="ok").inc()
    logger.info(
        "rating_submitted",
        rating_id=rating.id,
        rater_id=rater_id,
        event_id=event_id,
        participants=len(seen),
    )
    await outbox_service.dispatch_committed(db, gateway, rating)
    return rating


async def check_rating_status(db: AsyncSession, user_id: str, event_id: str) -> dict:
    completed = await _has_booking(db, user_id, event_id, (BookingStatus.COMPLETED,))
    already_rated = await _existing_rating(db, user_id, event_id) is not None
    others = await _attendees(db, event_id)
    others.discard(user_id)
    return {
        "event_id": event_id,
        "needs_rating": completed and not already_rated,
        "already_rated": already_rated,
        "other_participants": sorted(others),
        "min_ratings_required": required_participant_ratings(len(others)),
    }


async def recompute_community_ratings(db: AsyncSession, user_ids: Iterable[str]) -> list[CommunityRating]:
    """Rebuild each user's aggregate from every non-flagged rating of them."""
    updated = []
    now = clock.utcnow()
    for user_id in user_ids:
        result = await db.execute(
            select(ParticipantRating.rating, func.count())
            .join(Rating, ParticipantRating.rating_id == Rating.id)
            .where(
                ParticipantRating.participant_id == user_id,
                Rating.status != RatingStatus.FLAGGED,
            )
            .group_by(ParticipantRating.rating)
        )
        distribution = empty_distribution()
        for score, count in result.all():
            distribution[str(score)] = count
        total_ratings = sum(distribution.values())
        total_score = sum(int(score) * count for score, count in distribution.items())

        aggregate = await db.get(CommunityRating, user_id)
        if aggregate is None:
            aggregate = CommunityRating(user_id=user_id)
            db.add(aggregate)
        aggregate.average_rating = round_average(total_score, total_ratings)
        aggregate.total_ratings = total_ratings
        aggregate.distribution = distribution
        aggregate.last_updated = now
        updated.append(aggregate)

        logger.info(
            "community_rating_recomputed",
            user_id=user_id,
            average=aggregate.average_rating,
            total=total_ratings,
        )
    return updated


def _community_payload(user_id: str, aggregate: Optional[CommunityRating]) -> dict:
    if aggregate is None:
        return {
            "user_id": user_id,
            "average_rating": 0.0,
            "total_ratings": 0,
            "distribution": empty_distribution(),
            "last_updated": None,
        }
    return {
        "user_id": user_id,
        "average_rating": aggregate.average_rating,
        "total_ratings": aggregate.total_ratings,
        "distribution": {**empty_distribution(), **(aggregate.distribution or {})},
        "last_updated": aggregate.last_updated.isoformat() if aggregate.last_updated else None,
    }


async def get_community_rating(db: AsyncSession, user_id: str) -> dict:
    cached = await cache_service.get_cached_community_rating(user_id)
    if cached:
        return cached

    aggregate = await db.get(CommunityRating, user_id)
    data = _community_payload(user_id, aggregate)
    await cache_service.set_cached_community_rating(user_id, data)
    return data


async def get_event_rating_stats(db: AsyncSession, event_id: str) -> dict:
    result = await db.execute(
        select(
            func.count(Rating.id),
            func.coalesce(func.sum(Rating.event_rating), 0),
            func.coalesce(func.sum(Rating.partner_rating), 0),
        ).where(Rating.event_id == event_id, Rating.status != RatingStatus.FLAGGED)
    )
    count, event_total, partner_total = result.one()
    return {
        "event_id": event_id,
        "total_ratings": count,
        "average_event_rating": round_average(int(event_total), count),
        "average_partner_rating": round_average(int(partner_total), count),
    }


async def moderate_rating(db: AsyncSession, gateway, caller: Caller, rating_id: int, new_status: str) -> Rating:
    if new_status not in RatingStatus.ALL:
        raise ValidationError(f"Unknown rating status '{new_status}'", code="InvalidRatingStatus")

    rating = await db.get(Rating, rating_id)
    if rating is None:
        raise NotFoundError(f"Rating {rating_id} not found")

    previous = rating.status
    rating.status = new_status
    rating.moderated_by = caller.user_id

    participant_ids = sorted({p.participant_id for p in rating.participant_ratings})
    if participant_ids and previous != new_status:
        await outbox_service.enqueue(
            db,
            outbox_service.COMMUNITY_RATING_RECOMPUTE,
            aggregate_id=f"rating:{rating.id}",
            payload={"user_ids": participant_ids},
            idempotency_key=f"community:rating:{rating.id}:{new_status}:{clock.utcnow().isoformat()}",
        )
    await db.commit()
    logger.info("rating_moderated", rating_id=rating_id, previous=previous, status=new_status, moderator=caller.user_id)
    await outbox_service.dispatch_committed(db, gateway, rating)
    return rating
