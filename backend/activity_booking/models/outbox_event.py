"""
Transactional outbox for post-commit side effects.

Rows are inserted in the same transaction as the state change that caused
them and applied after commit, in insertion order.
"""

from sqlalchemy import Column, Index, Integer, JSON, String, Text

from activity_booking.db.base import Base, TimestampMixin, UTCDateTime


class OutboxStatus:
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class OutboxEvent(Base, TimestampMixin):
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String(64), nullable=False)
    aggregate_id = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    idempotency_key = Column(String(160), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default=OutboxStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_attempt_at = Column(UTCDateTime(), nullable=False)
    processed_at = Column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_outbox_events_status_next_attempt", "status", "next_attempt_at"),
    )

    def __repr__(self) -> str:
        return f"<OutboxEvent(id={self.id}, type={self.event_type}, status={self.status})>"
