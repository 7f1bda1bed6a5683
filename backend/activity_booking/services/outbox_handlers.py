"""
Handlers for outbox rows, keyed by event type.

Each handler runs inside the dispatcher's session after the row is claimed;
the dispatcher commits on success and records the failure otherwise.
"""

from sqlalchemy import select

from activity_booking.core.exceptions import IntegrityViolation
from activity_booking.core.logging import get_logger
from activity_booking.models.booking import Booking
from activity_booking.services import cache_service, rating_service, reconciliation_service
from activity_booking.services.outbox_service import COMMUNITY_RATING_RECOMPUTE, REFUND_REQUESTED

logger = get_logger(__name__)


async def handle_refund_requested(db, event, *, gateway) -> None:
    payload = event.payload
    reference = payload["booking_reference"]
    result = await db.execute(
        select(Booking)
        .where(Booking.reference == reference)
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if booking is None:
        raise IntegrityViolation(f"Refund requested for unknown booking {reference}", code="UnknownBooking")

    refund = await gateway.refund(
        payload["payment_id"],
        int(payload["amount"]),
        reason=payload.get("reason") or "Booking cancellation refund",
        idempotency_key=event.idempotency_key,
    )
    reconciliation_service.apply_refund_result(booking, refund)


async def handle_community_rating_recompute(db, event, *, gateway) -> None:
    user_ids = list(dict.fromkeys(event.payload.get("user_ids", [])))
    await rating_service.recompute_community_ratings(db, user_ids)
    await db.flush()
    await cache_service.invalidate_community_rating(*user_ids)


HANDLERS = {
    REFUND_REQUESTED: handle_refund_requested,
    COMMUNITY_RATING_RECOMPUTE: handle_community_rating_recompute,
}
