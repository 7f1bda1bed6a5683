"""
Booking model: the central record of a user's reservation of an activity slot.

Key design decisions:
- `reference` is the human-readable identity (BK-...), immutable once assigned
- user/activity/vendor ids are opaque keys owned by the identity and catalog services
- Pricing columns are a snapshot frozen at creation; later writes raise
- `version` is the ORM version counter: concurrent writers (ledger and
  reconciliation) get StaleDataError instead of silently losing an update
- Rows are never deleted; cancelled/completed bookings are the refund and rating audit trail
"""

import secrets
import string
import time

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    inspect,
)
from sqlalchemy.orm import validates

from activity_booking.core.exceptions import IntegrityViolation
from activity_booking.db.base import Base, TimestampMixin, UTCDateTime


class BookingStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"

    ALL = (PENDING, CONFIRMED, IN_PROGRESS, COMPLETED, CANCELLED, NO_SHOW)
    TERMINAL = (COMPLETED, CANCELLED, NO_SHOW)
    # Statuses that hold slot capacity and count as attendance
    ACTIVE = (PENDING, CONFIRMED, IN_PROGRESS)
    ATTENDED = (CONFIRMED, COMPLETED)


class PaymentStatus:
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"

    ALL = (PENDING, PAID, FAILED, REFUNDED)


PRICING_FIELDS = (
    "base_price",
    "gross_amount",
    "discount_amount",
    "discount_reason",
    "subtotal",
    "tax_rate",
    "tax_amount",
    "platform_fee",
    "processing_fee",
    "total_price",
    "currency",
)

_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_booking_reference() -> str:
    stamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(5))
    return f"BK-{stamp}-{suffix}"


class Booking(Base, TimestampMixin):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(32), nullable=False, unique=True, default=generate_booking_reference)

    # External references
    user_id = Column(String(64), nullable=False, index=True)
    activity_id = Column(String(64), nullable=False, index=True)
    vendor_id = Column(String(64), nullable=False, index=True)

    # Slot
    booking_date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)  # HH:MM
    end_time = Column(String(5), nullable=False)
    starts_at = Column(UTCDateTime(), nullable=False)

    # Participants and contact
    participant_count = Column(Integer, nullable=False)
    participant_details = Column(JSON, nullable=False, default=list)
    contact_info = Column(JSON, nullable=False, default=dict)
    special_requests = Column(Text, nullable=True)

    # Pricing snapshot (minor currency units)
    currency = Column(String(3), nullable=False)
    base_price = Column(Integer, nullable=False)
    gross_amount = Column(Integer, nullable=False)
    discount_amount = Column(Integer, nullable=False, default=0)
    discount_reason = Column(String(255), nullable=True)
    subtotal = Column(Integer, nullable=False)
    tax_rate = Column(Numeric(6, 4), nullable=False)
    tax_amount = Column(Integer, nullable=False, default=0)
    platform_fee = Column(Integer, nullable=False, default=0)
    processing_fee = Column(Integer, nullable=False, default=0)
    total_price = Column(Integer, nullable=False)

    # Payment sub-record, written only by reconciliation
    gateway_payment_id = Column(String(64), nullable=True, unique=True)
    payment_method = Column(String(20), nullable=True)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING)
    payment_brand = Column(String(50), nullable=True)
    payment_last4 = Column(String(4), nullable=True)
    payment_attempt = Column(Integer, nullable=False, default=0)
    payment_attempt_key = Column(String(64), nullable=True)
    paid_at = Column(UTCDateTime(), nullable=True)
    refunded_at = Column(UTCDateTime(), nullable=True)
    refund_amount = Column(Integer, nullable=True)

    status = Column(String(20), nullable=False, default=BookingStatus.PENDING)

    # Cancellation sub-record
    cancelled_at = Column(UTCDateTime(), nullable=True)
    cancelled_by = Column(String(64), nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    cancellation_refund_amount = Column(Integer, nullable=True)
    refund_processed = Column(Boolean, nullable=False, default=False)
    refund_id = Column(String(64), nullable=True)

    # Review sub-record
    review_rating = Column(Integer, nullable=True)
    review_comment = Column(Text, nullable=True)
    review_submitted_at = Column(UTCDateTime(), nullable=True)

    vendor_notes = Column(Text, nullable=True)
    admin_notes = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("participant_count > 0", name="check_booking_participants_positive"),
        CheckConstraint("total_price >= 0", name="check_booking_total_non_negative"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'in_progress', 'completed', 'cancelled', 'no_show')",
            name="check_booking_status",
        ),
        CheckConstraint(
            "payment_status IN ('pending', 'paid', 'failed', 'refunded')",
            name="check_booking_payment_status",
        ),
        CheckConstraint(
            "review_rating IS NULL OR (review_rating BETWEEN 1 AND 5 AND status = 'completed')",
            name="check_booking_review_completed",
        ),
        # Slot occupancy lookups (attendee sets, capacity audits)
        Index("ix_bookings_slot", "activity_id", "booking_date", "start_time", "status"),
    )

    @validates(*PRICING_FIELDS)
    def _freeze_pricing(self, key, value):
        state = inspect(self)
        if state.persistent or state.detached:
            current = getattr(self, key)
            if current is not None and current != value:
                raise IntegrityViolation(
                    f"Pricing snapshot of booking {self.reference} is immutable",
                    code="PricingSnapshotImmutable",
                )
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status in BookingStatus.TERMINAL

    def __repr__(self) -> str:
        return f"<Booking(ref={self.reference}, activity={self.activity_id}, status={self.status})>"
