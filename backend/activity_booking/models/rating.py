"""
Post-event ratings and the per-user community aggregate.

Key design decisions:
- Unique (rater_id, event_id): one rating per user per event
- Participant ratings are child rows so aggregates can be recomputed by query
- CommunityRating is a derived table, rebuilt from ratings after each commit
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from activity_booking.db.base import Base, TimestampMixin, UTCDateTime


class RatingStatus:
    SUBMITTED = "submitted"
    VERIFIED = "verified"
    FLAGGED = "flagged"

    ALL = (SUBMITTED, VERIFIED, FLAGGED)


class Rating(Base, TimestampMixin):
    __tablename__ = "ratings"

    id = Column(Integer, primary_key=True, index=True)
    rater_id = Column(String(64), nullable=False, index=True)
    event_id = Column(String(64), nullable=False, index=True)
    event_rating = Column(Integer, nullable=False)
    partner_rating = Column(Integer, nullable=False)
    feedback = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=RatingStatus.SUBMITTED)
    submitted_at = Column(UTCDateTime(), nullable=False)
    moderated_by = Column(String(64), nullable=True)

    participant_ratings = relationship(
        "ParticipantRating",
        back_populates="parent",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="ParticipantRating.id",
    )

    __table_args__ = (
        UniqueConstraint("rater_id", "event_id", name="uq_rating_rater_event"),
        CheckConstraint("event_rating BETWEEN 1 AND 5", name="check_rating_event_range"),
        CheckConstraint("partner_rating BETWEEN 1 AND 5", name="check_rating_partner_range"),
    )

    def __repr__(self) -> str:
        return f"<Rating(id={self.id}, rater={self.rater_id}, event={self.event_id})>"


class ParticipantRating(Base):
    __tablename__ = "participant_ratings"

    id = Column(Integer, primary_key=True, index=True)
    rating_id = Column(Integer, ForeignKey("ratings.id"), nullable=False, index=True)
    participant_id = Column(String(64), nullable=False, index=True)
    rating = Column(Integer, nullable=False)
    comment = Column(String(500), nullable=True)

    parent = relationship("Rating", back_populates="participant_ratings")

    __table_args__ = (
        UniqueConstraint("rating_id", "participant_id", name="uq_participant_rating"),
        CheckConstraint("rating BETWEEN 1 AND 5", name="check_participant_rating_range"),
    )


class CommunityRating(Base):
    __tablename__ = "community_ratings"

    user_id = Column(String(64), primary_key=True)
    average_rating = Column(Float, nullable=False, default=0.0)
    total_ratings = Column(Integer, nullable=False, default=0)
    distribution = Column(JSON, nullable=False, default=dict)
    last_updated = Column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return f"<CommunityRating(user={self.user_id}, avg={self.average_rating}, n={self.total_ratings})>"
