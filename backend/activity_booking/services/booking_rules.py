"""
Booking lifecycle rules: the status state machine and the cancellation policy.

State machine:

    pending ──> confirmed ──> in_progress ──> completed
       │            │ └──────────────────────────^
       │            ├──> no_show
       └────────────┴──> cancelled

completed, cancelled and no_show are terminal.

Cancellation policy (hours before the slot starts, evaluated at request time):

    Δ > 48        cancellable, 100% refund
    24 < Δ <= 48  cancellable, 50% refund
    Δ <= 24       not cancellable

The activity's cancellation policy text is informational only; these tiers
are authoritative.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from activity_booking.core.clock import ensure_aware
from activity_booking.core.exceptions import (
    AlreadyTerminalError,
    InvalidTransitionError,
    NotCancellableError,
)
from activity_booking.models.booking import BookingStatus
from activity_booking.services.pricing import round_half_up

FULL_REFUND_HOURS = 48
PARTIAL_REFUND_HOURS = 24
PARTIAL_REFUND_PERCENT = 50

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({
        BookingStatus.IN_PROGRESS,
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
    }),
    BookingStatus.IN_PROGRESS: frozenset({BookingStatus.COMPLETED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.NO_SHOW: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot move booking from '{current}' to '{target}'",
            details={"from": current, "to": target},
        )


@dataclass(frozen=True)
class RefundDecision:
    hours_before_start: float
    refund_percent: int
    refund_amount: int


def hours_before_start(starts_at: datetime, now: datetime) -> float:
    return (ensure_aware(starts_at) - ensure_aware(now)).total_seconds() / 3600


def refund_percent_for(hours: float) -> int:
    if hours > FULL_REFUND_HOURS:
        return 100
    if hours > PARTIAL_REFUND_HOURS:
        return PARTIAL_REFUND_PERCENT
    raise NotCancellableError(
        f"Bookings cannot be cancelled within {PARTIAL_REFUND_HOURS} hours of the start time",
        details={"hours_before_start": round(hours, 2)},
    )


def compute_refund(total_price: int, hours: float) -> int:
    """Refund owed for cancelling ``hours`` before start. Pure."""
    percent = refund_percent_for(hours)
    return round_half_up(Decimal(total_price) * percent / 100)


def evaluate_cancellation(status: str, total_price: int, starts_at: datetime, now: datetime) -> RefundDecision:
    """
    Decide whether a booking in ``status`` can be cancelled at ``now``.

    Raises AlreadyTerminalError for terminal bookings and NotCancellableError
    when the booking is in progress or inside the 24 hour window.
    """
    if status in BookingStatus.TERMINAL:
        raise AlreadyTerminalError(
            f"Booking is already {status}",
            details={"status": status},
        )
    if not can_transition(status, BookingStatus.CANCELLED):
        raise NotCancellableError(
            f"Bookings that are {status} cannot be cancelled",
            details={"status": status},
        )

    hours = hours_before_start(starts_at, now)
    percent = refund_percent_for(hours)
    return RefundDecision(
        hours_before_start=hours,
        refund_percent=percent,
        refund_amount=round_half_up(Decimal(total_price) * percent / 100),
    )
