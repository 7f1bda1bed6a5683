"""
Booking ledger: creation, lookup, cancellation, status updates and reviews.

CREATION FLOW
=============

  1. Catalog lookup: activity and vendor exist and are active
  2. Slot start (in the activity's timezone) is in the future
  3. Static availability checks (blackout, schedule, capacity range)
  4. Price computed once and frozen on the booking
  5. Under the per-slot lock: reserve capacity, insert booking, commit

Steps 1-4 never write. Step 5 is one transaction: the conditional capacity
update and the booking insert commit together or not at all, so two
concurrent requests can never jointly exceed a slot's capacity.

Cancellation releases capacity and, when the booking was paid, enqueues the
policy refund on the outbox. Booking rows are never deleted.
"""

import time
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from activity_booking.core import clock
from activity_booking.core.config import get_settings
from activity_booking.core.exceptions import (
    AlreadyReviewedError,
    AuthorizationError,
    BookingEngineError,
    ConcurrentModificationError,
    InactiveError,
    InvalidTransitionError,
    NotFoundError,
    OutOfRangeError,
    PastDateError,
    ValidationError,
)
from activity_booking.core.logging import get_logger
from activity_booking.core.metrics import booking_latency, record_booking_attempt, record_transition
from activity_booking.core.security import Caller
from activity_booking.models.booking import Booking, BookingStatus, PaymentStatus
from activity_booking.schemas.booking import BookingCreate
from activity_booking.services import availability_service, outbox_service
from activity_booking.services.booking_rules import ensure_transition, evaluate_cancellation
from activity_booking.services.interfaces.catalog import CatalogProvider
from activity_booking.services.pricing import calculate_price, select_group_discount

logger = get_logger(__name__)
settings = get_settings()

# Status updates that only make sense once the slot has started
POST_START_STATUSES = (BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED, BookingStatus.NO_SHOW)


async def create_booking(
    db: AsyncSession,
    catalog: CatalogProvider,
    caller: Caller,
    data: BookingCreate,
) -> Booking:
    start = time.perf_counter()
    try:
        booking = await _create_booking(db, catalog, caller, data)
    except BookingEngineError as e:
        record_booking_attempt(e.code)
        raise
    finally:
        booking_latency.observe(time.perf_counter() - start)
    record_booking_attempt("success")
    return booking


async def _create_booking(
    db: AsyncSession,
    catalog: CatalogProvider,
    caller: Caller,
    data: BookingCreate,
) -> Booking:
    activity = await catalog.get_activity(data.activity_id)
    if activity is None:
        raise NotFoundError(f"Activity {data.activity_id} not found")
    if not activity.is_active:
        raise InactiveError(f"Activity {data.activity_id} is not available for booking")

    vendor = await catalog.get_vendor(activity.vendor_id)
    if vendor is None:
        raise NotFoundError(f"Vendor {activity.vendor_id} not found")
    if not vendor.is_active:
        raise InactiveError(f"Vendor {activity.vendor_id} is not accepting bookings")

    starts_at = availability_service.slot_start(activity, data.booking_date, data.start_time)
    if starts_at <= clock.utcnow():
        raise PastDateError(
            "Bookings must be for a future date and time",
            details={"starts_at": starts_at.isoformat()},
        )

    participants = len(data.participants)
    slot = availability_service.validate_request(
        activity, data.booking_date, data.start_time, data.end_time, participants
    )

    price = calculate_price(
        activity.pricing.base_price,
        participants,
        tax_rate=settings.TAX_RATE,
        discount=select_group_discount(activity.pricing.group_discounts, participants),
        platform_fee=settings.PLATFORM_FEE,
        processing_fee=settings.PROCESSING_FEE,
        currency=activity.pricing.currency,
    )

    lock = availability_service.slot_lock(activity.id, data.booking_date, data.start_time, data.end_time)
    async with lock:
        try:
            inventory = await availability_service.reserve_capacity(db, slot, participants)
            booking = Booking(
                user_id=caller.user_id,
                activity_id=activity.id,
                vendor_id=activity.vendor_id,
                booking_date=data.booking_date,
                start_time=data.start_time,
                end_time=data.end_time,
                starts_at=starts_at,
                participant_count=participants,
                participant_details=[p.model_dump(mode="json") for p in data.participants],
                contact_info=data.contact_info.model_dump(mode="json"),
                special_requests=data.special_requests,
                status=BookingStatus.PENDING,
                payment_status=PaymentStatus.PENDING,
                **price.as_snapshot(),
            )
            db.add(booking)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    logger.info(
        "booking_created",
        booking_reference=booking.reference,
        user_id=caller.user_id,
        activity_id=activity.id,
        date=data.booking_date.isoformat(),
        start_time=data.start_time,
        participants=participants,
        total_price=booking.total_price,
        slot_remaining=inventory.remaining,
    )
    return booking


async def _get_by_reference(db: AsyncSession, reference: str) -> Booking:
    result = await db.execute(
        select(Booking)
        .where(Booking.reference == reference)
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if booking is None:
        raise NotFoundError(f"Booking {reference} not found")
    return booking


async def _is_vendor_owner(catalog: CatalogProvider, caller: Caller, booking: Booking) -> bool:
    vendor = await catalog.get_vendor(booking.vendor_id)
    return vendor is not None and vendor.owner_id is not None and vendor.owner_id == caller.user_id


async def get_booking(db: AsyncSession, catalog: CatalogProvider, caller: Caller, reference: str) -> Booking:
    booking = await _get_by_reference(db, reference)
    if caller.is_admin or booking.user_id == caller.user_id:
        return booking
    if await _is_vendor_owner(catalog, caller, booking):
        return booking
    raise AuthorizationError("You do not have access to this booking")


async def list_bookings(
    db: AsyncSession,
    caller: Caller,
    status: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Booking], int]:
    """List the caller's bookings, newest first."""
    query = select(Booking).where(Booking.user_id == caller.user_id)
    if status:
        query = query.where(Booking.status == status)

    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar()

    result = await db.execute(
        query
        .order_by(Booking.created_at.desc(), Booking.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars().all()), total


async def cancel_booking(
    db: AsyncSession,
    catalog: CatalogProvider,
    gateway,
    caller: Caller,
    reference: str,
    reason: Optional[str] = None,
) -> tuple[Booking, int]:
    """
    Cancel a booking if the policy allows it right now.
    Returns the booking and the refund amount owed (0 when nothing was paid).
    """
    booking = await _get_by_reference(db, reference)
    if not (caller.is_admin or booking.user_id == caller.user_id or await _is_vendor_owner(catalog, caller, booking)):
        raise AuthorizationError("You cannot cancel this booking")

    decision = evaluate_cancellation(booking.status, booking.total_price, booking.starts_at, clock.utcnow())
    refund_amount = decision.refund_amount if booking.payment_status == PaymentStatus.PAID else 0

    previous = booking.status
    ensure_transition(previous, BookingStatus.CANCELLED)
    booking.status = BookingStatus.CANCELLED
    booking.cancelled_at = clock.utcnow()
    booking.cancelled_by = caller.user_id
    booking.cancellation_reason = reason
    booking.cancellation_refund_amount = refund_amount
    booking.refund_processed = False

    try:
        await availability_service.release_capacity(
            db,
            booking.activity_id,
            booking.booking_date,
            booking.start_time,
            booking.end_time,
            booking.participant_count,
        )
        if refund_amount > 0:
            await outbox_service.enqueue(
                db,
                outbox_service.REFUND_REQUESTED,
                aggregate_id=booking.reference,
                payload={
                    "booking_reference": booking.reference,
                    "payment_id": booking.gateway_payment_id,
                    "amount": refund_amount,
                    "reason": reason or "Booking cancellation refund",
                },
                idempotency_key=f"refund:{booking.reference}:cancellation",
            )
        await db.commit()
    except StaleDataError:
        await db.rollback()
        outbox_service.discard_uncommitted(db)
        raise ConcurrentModificationError(
            "Booking was updated while cancelling. Please try again.",
            details={"booking_reference": reference},
        )

    record_transition(previous, BookingStatus.CANCELLED)
    logger.info(
        "booking_cancelled",
        booking_reference=booking.reference,
        cancelled_by=caller.user_id,
        hours_before_start=round(decision.hours_before_start, 2),
        refund_percent=decision.refund_percent,
        refund_amount=refund_amount,
    )
    await outbox_service.dispatch_committed(db, gateway, booking)
    return booking, refund_amount


async def update_status(
    db: AsyncSession,
    catalog: CatalogProvider,
    caller: Caller,
    reference: str,
    new_status: str,
    notes: Optional[str] = None,
) -> Booking:
    """Vendor/admin status changes. Cancellation has its own path."""
    booking = await _get_by_reference(db, reference)
    is_vendor = await _is_vendor_owner(catalog, caller, booking)
    if not (caller.is_admin or is_vendor):
        raise AuthorizationError("Only the vendor or an admin can update booking status")

    if new_status == BookingStatus.CANCELLED:
        raise InvalidTransitionError(
            "Use the cancellation endpoint to cancel a booking",
            details={"from": booking.status, "to": new_status},
        )
    if new_status not in BookingStatus.ALL:
        raise InvalidTransitionError(f"Unknown booking status '{new_status}'")

    previous = booking.status
    ensure_transition(previous, new_status)

    if new_status == BookingStatus.CONFIRMED and booking.payment_status != PaymentStatus.PAID:
        raise InvalidTransitionError(
            "A booking is confirmed only once its payment is paid",
            details={"payment_status": booking.payment_status},
        )
    if new_status in POST_START_STATUSES and clock.utcnow() < booking.starts_at:
        raise InvalidTransitionError(
            f"Cannot mark a booking {new_status} before the activity starts",
            details={"starts_at": booking.starts_at.isoformat()},
        )

    booking.status = new_status
    if notes:
        if caller.is_admin:
            booking.admin_notes = notes
        else:
            booking.vendor_notes = notes

    try:
        await db.commit()
    except StaleDataError:
        await db.rollback()
        raise ConcurrentModificationError(
            "Booking was updated concurrently. Please try again.",
            details={"booking_reference": reference},
        )

    record_transition(previous, new_status)
    logger.info(
        "booking_status_updated",
        booking_reference=booking.reference,
        from_status=previous,
        to_status=new_status,
        updated_by=caller.user_id,
    )
    return booking


async def add_review(
    db: AsyncSession,
    caller: Caller,
    reference: str,
    rating: int,
    comment: Optional[str] = None,
) -> Booking:
    booking = await _get_by_reference(db, reference)
    if booking.user_id != caller.user_id:
        raise AuthorizationError("Only the customer who booked can review it")
    if booking.status != BookingStatus.COMPLETED:
        raise ValidationError("Only completed bookings can be reviewed", code="BookingNotCompleted")
    if booking.review_rating is not None:
        raise AlreadyReviewedError("This booking has already been reviewed")
    if not 1 <= rating <= 5:
        raise OutOfRangeError("rating must be between 1 and 5", details={"value": rating})

    booking.review_rating = rating
    booking.review_comment = comment
    booking.review_submitted_at = clock.utcnow()
    try:
        await db.commit()
    except StaleDataError:
        await db.rollback()
        raise ConcurrentModificationError("Booking was updated concurrently. Please try again.")

    logger.info("booking_reviewed", booking_reference=booking.reference, rating=rating)
    return booking


def parse_status_filter(status: Optional[str]) -> Optional[str]:
    if status is None:
        return None
    if status not in BookingStatus.ALL:
        raise ValidationError(f"Unknown booking status '{status}'", code="InvalidStatusFilter")
    return status
