"""
Ledger of inbound payment notifications.

One row per gateway event id. The unique constraint is what makes replays
no-ops; `status` tracks where the event is in reconciliation.
"""

from sqlalchemy import Column, Index, Integer, JSON, String, Text

from activity_booking.db.base import Base, TimestampMixin, UTCDateTime


class PaymentEventStatus:
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    RETRYING = "retrying"
    DEAD_LETTERED = "dead_lettered"

    FINAL = (PROCESSED, IGNORED, DEAD_LETTERED)


class PaymentEvent(Base, TimestampMixin):
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(128), nullable=False, unique=True)
    event_type = Column(String(64), nullable=False)
    gateway_payment_id = Column(String(64), nullable=True, index=True)
    payment_status = Column(String(32), nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default=PaymentEventStatus.RECEIVED)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    booking_reference = Column(String(32), nullable=True)
    received_at = Column(UTCDateTime(), nullable=False)
    next_attempt_at = Column(UTCDateTime(), nullable=True)
    processed_at = Column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_payment_events_status_next_attempt", "status", "next_attempt_at"),
    )

    def __repr__(self) -> str:
        return f"<PaymentEvent(event_id={self.event_id}, type={self.event_type}, status={self.status})>"
