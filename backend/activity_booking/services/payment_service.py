"""
Payment initiation and status refresh.

Every attempt is recorded (with its idempotency key `<reference>-<attempt>`)
and committed before the processor is called, so a timeout leaves a
well-defined state: the booking stays pending, the key is kept, and a retry
by the caller is deduplicated by the processor. The processor's answer is
applied through the reconciliation service, never written here.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from activity_booking.core.exceptions import (
    AuthorizationError,
    BookingNotPendingError,
    ConcurrentModificationError,
    DeclinedError,
    GatewayTimeoutError,
    InvalidSourceError,
    NotFoundError,
    PaymentInProgressError,
    ValidationError,
)
from activity_booking.core.logging import get_logger
from activity_booking.core.security import Caller
from activity_booking.infrastructure.payment_gateway import (
    PaymentGateway,
    PaymentSource,
    check_method_source,
)
from activity_booking.models.booking import Booking, BookingStatus, PaymentStatus
from activity_booking.services import reconciliation_service
from activity_booking.services.reconciliation_service import PaymentUpdate

logger = get_logger(__name__)


@dataclass(frozen=True)
class PaymentResult:
    booking: Booking
    gateway_payment_id: Optional[str]
    status: str
    transaction_url: Optional[str] = None


async def _load(db: AsyncSession, reference: str) -> Booking:
    result = await db.execute(
        select(Booking)
        .where(Booking.reference == reference)
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if booking is None:
        raise NotFoundError(f"Booking {reference} not found")
    return booking


async def initiate_payment(
    db: AsyncSession,
    gateway: PaymentGateway,
    caller: Caller,
    reference: str,
    method: str,
    source: PaymentSource,
) -> PaymentResult:
    booking = await _load(db, reference)
    if booking.user_id != caller.user_id:
        raise AuthorizationError("Only the customer who booked can pay for it")
    if booking.status != BookingStatus.PENDING or booking.payment_status == PaymentStatus.PAID:
        raise BookingNotPendingError(
            f"Booking is {booking.status}; only pending bookings can be paid",
            details={"status": booking.status, "payment_status": booking.payment_status},
        )
    if booking.gateway_payment_id and booking.payment_status == PaymentStatus.PENDING:
        raise PaymentInProgressError(
            "A payment for this booking is already in progress",
            details={"gateway_payment_id": booking.gateway_payment_id},
        )

    check_method_source(method, source)

    idempotency_key = reconciliation_service.start_attempt(booking, method)
    try:
        await db.commit()
    except StaleDataError:
        await db.rollback()
        raise ConcurrentModificationError("Booking was updated concurrently. Please try again.")

    log = logger.bind(booking_reference=reference, attempt=booking.payment_attempt, method=method)
    log.info("payment_initiated")

    try:
        payment = await gateway.create_payment(
            amount=booking.total_price,
            description=f"Booking {booking.reference}",
            source=source,
            idempotency_key=idempotency_key,
            metadata={
                "booking_reference": booking.reference,
                "user_id": booking.user_id,
                "activity_id": booking.activity_id,
            },
        )
    except GatewayTimeoutError:
        # Outcome unknown: keep the key, the webhook or a retry will settle it
        log.warning("payment_outcome_unknown")
        raise
    except InvalidSourceError:
        await _abandon_attempt(db, reference)
        log.info("payment_source_rejected")
        raise

    def record_method(b: Booking) -> None:
        b.payment_method = method
        if payment.status == PaymentStatus.FAILED:
            reconciliation_service.abandon_attempt(b)

    booking, outcome = await reconciliation_service.apply_and_commit(
        db,
        gateway,
        reference,
        PaymentUpdate.from_gateway(payment),
        source="sync",
        before=record_method,
    )
    log.info("payment_response_applied", payment_id=payment.payment_id, status=payment.status, outcome=outcome)

    if payment.status == PaymentStatus.FAILED:
        raise DeclinedError(details={"booking_reference": reference, "retry_allowed": True})

    return PaymentResult(
        booking=booking,
        gateway_payment_id=payment.payment_id,
        status=booking.payment_status,
        transaction_url=payment.transaction_url,
    )


async def _abandon_attempt(db: AsyncSession, reference: str) -> None:
    booking = await _load(db, reference)
    reconciliation_service.abandon_attempt(booking)
    try:
        await db.commit()
    except StaleDataError:
        await db.rollback()
        logger.info("payment_abandon_conflict", booking_reference=reference)


async def refresh_payment(
    db: AsyncSession,
    gateway: PaymentGateway,
    caller: Caller,
    reference: str,
) -> PaymentResult:
    """Poll the processor for the recorded payment and reconcile."""
    booking = await _load(db, reference)
    if not (caller.is_admin or booking.user_id == caller.user_id):
        raise AuthorizationError("You do not have access to this booking")
    if not booking.gateway_payment_id:
        raise ValidationError("No payment has been recorded for this booking yet", code="NoPayment")

    payment = await gateway.retrieve_payment(booking.gateway_payment_id)
    booking, outcome = await reconciliation_service.apply_and_commit(
        db,
        gateway,
        reference,
        PaymentUpdate.from_gateway(payment),
        source="poll",
    )
    logger.info(
        "payment_status_refreshed",
        booking_reference=reference,
        payment_id=payment.payment_id,
        status=payment.status,
        outcome=outcome,
    )
    return PaymentResult(
        booking=booking,
        gateway_payment_id=booking.gateway_payment_id,
        status=booking.payment_status,
        transaction_url=payment.transaction_url,
    )
