"""
Payment reconciliation: the only writer of a booking's payment sub-record.

Payment states reach a booking from three places: the synchronous response
to a payment creation, a status poll, and signed webhooks. All of them go
through apply_payment_update(), which enforces a monotonic rule:

    pending -> paid | failed | refunded
    paid    -> refunded
    failed  -> pending          (only when a new attempt starts)

Anything else (a `paid` after `refunded`, a replayed `failed` after `paid`)
is discarded. `paid` on a pending booking confirms it; `paid` on a cancelled
booking enqueues a full refund instead of reviving it.

WEBHOOK LEDGER
==============

Each verified notification is first committed to `payment_events` keyed by
the gateway event id, then processed in its own transaction. Replays of a
finished event are acknowledged without touching the booking. Events for a
payment no booking knows about yet are retried by the background worker
every WEBHOOK_RETRY_INTERVAL_SECONDS, then dead-lettered once
WEBHOOK_RETRY_WINDOW_SECONDS or WEBHOOK_MAX_ATTEMPTS is exceeded.

Booking rows carry a version counter; when a cancellation and a payment
update race, the loser gets StaleDataError, reloads and reapplies.
"""

import json
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from activity_booking.core import clock
from activity_booking.core.config import get_settings
from activity_booking.core.exceptions import (
    BadPayloadError,
    BadSignatureError,
    ConcurrentModificationError,
    NotFoundError,
)
from activity_booking.core.logging import get_logger
from activity_booking.core.metrics import record_transition, record_webhook, refunds_issued
from activity_booking.infrastructure.payment_gateway import (
    SIGNATURE_HEADER,
    GatewayPayment,
    GatewayRefund,
    PaymentGateway,
    normalize_status,
)
from activity_booking.models.booking import Booking, BookingStatus, PaymentStatus
from activity_booking.models.payment_event import PaymentEvent, PaymentEventStatus
from activity_booking.services import outbox_service
from activity_booking.services.booking_rules import ensure_transition

logger = get_logger(__name__)
settings = get_settings()

MAX_APPLY_ATTEMPTS = 3

PAYMENT_TRANSITIONS: dict[str, frozenset[str]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.REFUNDED}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

EVENT_STATUSES = {
    "payment_paid": PaymentStatus.PAID,
    "payment_captured": PaymentStatus.PAID,
    "payment_failed": PaymentStatus.FAILED,
    "payment_voided": PaymentStatus.FAILED,
    "payment_refunded": PaymentStatus.REFUNDED,
}

APPLIED = "applied"
DUPLICATE = "duplicate"
DISCARDED = "discarded"


@dataclass(frozen=True)
class PaymentUpdate:
    payment_id: str
    status: str
    amount: Optional[int] = None
    refunded_amount: Optional[int] = None
    brand: Optional[str] = None
    last4: Optional[str] = None

    @classmethod
    def from_gateway(cls, payment: GatewayPayment) -> "PaymentUpdate":
        return cls(
            payment_id=payment.payment_id,
            status=payment.status,
            amount=payment.amount,
            brand=payment.brand,
            last4=payment.last4,
        )


def can_apply(current: str, target: str) -> bool:
    return target in PAYMENT_TRANSITIONS.get(current, frozenset())


# --- payment attempts -----------------------------------------------------------

def start_attempt(booking: Booking, method: str) -> str:
    """
    Record a payment attempt and return its idempotency key.

    A timed-out attempt (key recorded, no gateway id yet) keeps its key so
    the caller's retry is deduplicated by the processor.
    """
    if (
        booking.payment_attempt_key
        and booking.gateway_payment_id is None
        and booking.payment_status == PaymentStatus.PENDING
    ):
        return booking.payment_attempt_key

    booking.payment_attempt = (booking.payment_attempt or 0) + 1
    booking.payment_attempt_key = f"{booking.reference}-{booking.payment_attempt}"
    booking.payment_method = method
    booking.gateway_payment_id = None
    booking.payment_brand = None
    booking.payment_last4 = None
    if booking.payment_status == PaymentStatus.FAILED:
        booking.payment_status = PaymentStatus.PENDING
    return booking.payment_attempt_key


def abandon_attempt(booking: Booking) -> None:
    """The processor definitively rejected the attempt; the next one gets a new key."""
    booking.payment_attempt_key = None


# --- applying updates -------------------------------------------------------------

async def _enqueue_refund(db: AsyncSession, booking: Booking, payment_id: str, amount: int, reason: str, key: str) -> None:
    await outbox_service.enqueue(
        db,
        outbox_service.REFUND_REQUESTED,
        aggregate_id=booking.reference,
        payload={
            "booking_reference": booking.reference,
            "payment_id": payment_id,
            "amount": amount,
            "reason": reason,
        },
        idempotency_key=key,
    )


async def apply_payment_update(db: AsyncSession, booking: Booking, update: PaymentUpdate, *, source: str) -> str:
    """Apply one payment state to a booking in the caller's transaction."""
    now = clock.utcnow()
    current = booking.payment_status
    target = update.status
    log = logger.bind(
        booking_reference=booking.reference,
        payment_id=update.payment_id,
        source=source,
        current=current,
        target=target,
    )

    if booking.gateway_payment_id and booking.gateway_payment_id != update.payment_id:
        # Update for an earlier attempt than the one the booking now tracks
        if target == PaymentStatus.PAID and update.amount:
            log.error("superseded_attempt_paid", tracked_payment_id=booking.gateway_payment_id)
            await _enqueue_refund(
                db,
                booking,
                update.payment_id,
                update.amount,
                "Superseded payment attempt",
                key=f"refund:{update.payment_id}:superseded",
            )
        else:
            log.info("payment_update_superseded", tracked_payment_id=booking.gateway_payment_id)
        return DISCARDED

    if booking.gateway_payment_id is None:
        booking.gateway_payment_id = update.payment_id
    if update.brand:
        booking.payment_brand = update.brand
    if update.last4:
        booking.payment_last4 = update.last4

    if target == current:
        return DUPLICATE
    if not can_apply(current, target):
        log.info("payment_update_discarded")
        return DISCARDED

    booking.payment_status = target

    if target == PaymentStatus.PAID:
        booking.paid_at = now
        if booking.status == BookingStatus.PENDING:
            ensure_transition(booking.status, BookingStatus.CONFIRMED)
            booking.status = BookingStatus.CONFIRMED
            record_transition(BookingStatus.PENDING, BookingStatus.CONFIRMED)
            log.info("booking_confirmed")
        elif booking.status == BookingStatus.CANCELLED:
            amount = update.amount or booking.total_price
            log.warning("payment_after_cancellation", refund_amount=amount)
            await _enqueue_refund(
                db,
                booking,
                update.payment_id,
                amount,
                "Payment confirmed after cancellation",
                key=f"refund:{update.payment_id}:after-cancellation",
            )
    elif target == PaymentStatus.FAILED:
        log.info("payment_failed")
    elif target == PaymentStatus.REFUNDED:
        booking.refunded_at = now
        if update.refunded_amount:
            booking.refund_amount = update.refunded_amount
        log.info("payment_marked_refunded")

    return APPLIED


def apply_refund_result(booking: Booking, refund: GatewayRefund) -> bool:
    """
    Record a refund issued through the adapter.

    Only a refund of the payment the booking tracks touches its payment
    sub-record. Refunds of superseded attempts are logged and left off the
    booking; returns False for those.
    """
    if refund.payment_id != booking.gateway_payment_id:
        refunds_issued.labels(result="superseded").inc()
        logger.warning(
            "superseded_attempt_refunded",
            booking_reference=booking.reference,
            payment_id=refund.payment_id,
            tracked_payment_id=booking.gateway_payment_id,
            refund_id=refund.refund_id,
            amount=refund.amount,
        )
        return False

    now = clock.utcnow()
    booking.refund_id = refund.refund_id
    booking.refund_amount = refund.amount
    booking.refund_processed = True
    if can_apply(booking.payment_status, PaymentStatus.REFUNDED):
        booking.payment_status = PaymentStatus.REFUNDED
        booking.refunded_at = now
    refunds_issued.labels(result="ok").inc()
    logger.info(
        "refund_recorded",
        booking_reference=booking.reference,
        refund_id=refund.refund_id,
        amount=refund.amount,
    )
    return True


async def _load_booking(db: AsyncSession, reference: str) -> Booking:
    result = await db.execute(
        select(Booking)
        .where(Booking.reference == reference)
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if booking is None:
        raise NotFoundError(f"Booking {reference} not found")
    return booking


async def apply_and_commit(
    db: AsyncSession,
    gateway: PaymentGateway,
    reference: str,
    update: PaymentUpdate,
    *,
    source: str,
    before: Optional[Callable[[Booking], None]] = None,
) -> tuple[Booking, str]:
    """
    Apply an update to the booking and commit, reloading on version
    conflicts. Outbox side effects run after the commit.
    """
    for attempt in range(1, MAX_APPLY_ATTEMPTS + 1):
        booking = await _load_booking(db, reference)
        try:
            if before is not None:
                before(booking)
            outcome = await apply_payment_update(db, booking, update, source=source)
            await db.commit()
        except StaleDataError:
            await db.rollback()
            outbox_service.discard_uncommitted(db)
            logger.info("payment_apply_conflict", booking_reference=reference, attempt=attempt)
            continue
        await outbox_service.dispatch_committed(db, gateway, booking)
        return booking, outcome

    raise ConcurrentModificationError(
        "Booking was modified concurrently. Please try again.",
        details={"booking_reference": reference},
    )


# --- webhooks -------------------------------------------------------------------

def _payment_object(payload: dict[str, Any]) -> dict[str, Any]:
    data = payload.get("data")
    if not isinstance(data, dict):
        return {}
    obj = data.get("object", data)
    return obj if isinstance(obj, dict) else {}


def parse_notification(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise BadPayloadError("Notification body is not valid JSON") from e
    if not isinstance(payload, dict):
        raise BadPayloadError("Notification body must be a JSON object")

    obj = _payment_object(payload)
    if not obj.get("id"):
        raise BadPayloadError("Notification does not reference a payment")
    return payload


def _update_from_entry(entry: PaymentEvent) -> PaymentUpdate:
    obj = _payment_object(entry.payload)
    source = obj.get("source") or {}
    refunded = obj.get("refunded")
    return PaymentUpdate(
        payment_id=entry.gateway_payment_id,
        status=entry.payment_status,
        amount=int(obj["amount"]) if obj.get("amount") is not None else None,
        refunded_amount=int(refunded) if refunded else None,
        brand=source.get("company") or source.get("brand"),
        last4=str(source["last_four"])[-4:] if source.get("last_four") else None,
    )


async def _get_entry(db: AsyncSession, event_id: str) -> Optional[PaymentEvent]:
    result = await db.execute(select(PaymentEvent).where(PaymentEvent.event_id == event_id))
    return result.scalar_one_or_none()


async def _record_entry(db: AsyncSession, payload: dict[str, Any]) -> tuple[PaymentEvent, bool]:
    """Commit the ledger row. Returns (entry, created)."""
    obj = _payment_object(payload)
    event_type = str(payload.get("type") or "unknown")
    payment_id = str(obj["id"])
    raw_status = obj.get("status")
    status = EVENT_STATUSES.get(event_type) or normalize_status(raw_status)
    event_id = str(payload.get("id") or f"{event_type}:{payment_id}:{raw_status or status}")

    existing = await _get_entry(db, event_id)
    if existing is not None:
        return existing, False

    metadata = obj.get("metadata") or {}
    entry = PaymentEvent(
        event_id=event_id,
        event_type=event_type,
        gateway_payment_id=payment_id,
        payment_status=status,
        payload=payload,
        status=PaymentEventStatus.RECEIVED,
        attempts=0,
        booking_reference=metadata.get("booking_reference"),
        received_at=clock.utcnow(),
    )
    db.add(entry)
    try:
        await db.commit()
    except IntegrityError:
        # Same event delivered concurrently; the other request owns it
        await db.rollback()
        existing = await _get_entry(db, event_id)
        if existing is None:
            raise
        return existing, False
    return entry, True


async def _find_booking_for(db: AsyncSession, entry: PaymentEvent) -> Optional[Booking]:
    result = await db.execute(
        select(Booking)
        .where(Booking.gateway_payment_id == entry.gateway_payment_id)
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if booking is not None or not entry.booking_reference:
        return booking

    result = await db.execute(
        select(Booking)
        .where(Booking.reference == entry.booking_reference)
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if booking is None:
        return None
    if booking.gateway_payment_id is not None:
        return booking

    # Attach only to the attempt the booking is waiting on
    if not booking.payment_attempt_key:
        return None
    attempt_key = (_payment_object(entry.payload).get("metadata") or {}).get("idempotency_key")
    if attempt_key and attempt_key != booking.payment_attempt_key:
        return None
    return booking


def _schedule_retry(entry: PaymentEvent, reason: str) -> None:
    now = clock.utcnow()
    age = (now - entry.received_at).total_seconds()
    entry.last_error = reason
    if entry.attempts >= settings.WEBHOOK_MAX_ATTEMPTS or age >= settings.WEBHOOK_RETRY_WINDOW_SECONDS:
        entry.status = PaymentEventStatus.DEAD_LETTERED
        entry.processed_at = now
        entry.next_attempt_at = None
        record_webhook("dead_lettered")
        logger.error(
            "webhook_dead_lettered",
            event_id=entry.event_id,
            payment_id=entry.gateway_payment_id,
            attempts=entry.attempts,
            reason=reason,
        )
    else:
        entry.status = PaymentEventStatus.RETRYING
        entry.next_attempt_at = now + timedelta(seconds=settings.WEBHOOK_RETRY_INTERVAL_SECONDS)
        record_webhook("retrying")
        logger.warning(
            "webhook_payment_unknown",
            event_id=entry.event_id,
            payment_id=entry.gateway_payment_id,
            attempts=entry.attempts,
        )


async def _process_entry(db: AsyncSession, entry: PaymentEvent) -> None:
    entry.attempts += 1
    booking = await _find_booking_for(db, entry)
    if booking is None:
        _schedule_retry(entry, f"no booking for payment {entry.gateway_payment_id}")
        return

    outcome = await apply_payment_update(db, booking, _update_from_entry(entry), source="webhook")
    entry.booking_reference = booking.reference
    entry.processed_at = clock.utcnow()
    entry.next_attempt_at = None
    entry.last_error = None
    entry.status = PaymentEventStatus.IGNORED if outcome == DISCARDED else PaymentEventStatus.PROCESSED
    record_webhook("processed" if outcome == APPLIED else outcome)


async def process_entry(db: AsyncSession, gateway: PaymentGateway, entry_id: int) -> PaymentEvent:
    """Process one ledger row in its own transaction, retrying version conflicts."""
    for attempt in range(1, MAX_APPLY_ATTEMPTS + 1):
        entry = await db.get(PaymentEvent, entry_id, populate_existing=True)
        try:
            await _process_entry(db, entry)
            await db.commit()
        except StaleDataError:
            await db.rollback()
            outbox_service.discard_uncommitted(db)
            logger.info("webhook_apply_conflict", event_id=entry_id, attempt=attempt)
            continue
        await outbox_service.dispatch_committed(db, gateway, entry)
        return entry

    # Leave it for the worker
    entry = await db.get(PaymentEvent, entry_id, populate_existing=True)
    entry.status = PaymentEventStatus.RETRYING
    entry.last_error = "concurrent booking modification"
    entry.next_attempt_at = clock.utcnow() + timedelta(seconds=settings.WEBHOOK_RETRY_INTERVAL_SECONDS)
    await db.commit()
    return entry


async def handle_webhook(
    db: AsyncSession,
    gateway: PaymentGateway,
    raw_body: bytes,
    signature: Optional[str],
) -> dict[str, Any]:
    """
    Verify, record and apply one inbound notification.
    Safe to call any number of times with the same event.
    """
    if not gateway.verify_signature(raw_body, signature):
        record_webhook("bad_signature")
        logger.warning(
            "webhook_signature_invalid",
            header=SIGNATURE_HEADER,
            signature_present=bool(signature),
            body_size=len(raw_body),
        )
        raise BadSignatureError("Invalid webhook signature")

    payload = parse_notification(raw_body)
    entry, created = await _record_entry(db, payload)

    if not created and entry.status in PaymentEventStatus.FINAL:
        record_webhook("duplicate")
        logger.info("webhook_duplicate", event_id=entry.event_id, status=entry.status)
        return {"received": True, "event_id": entry.event_id, "status": entry.status, "duplicate": True}

    entry = await process_entry(db, gateway, entry.id)
    return {"received": True, "event_id": entry.event_id, "status": entry.status, "duplicate": not created}


async def retry_due_events(db: AsyncSession, gateway: PaymentGateway, limit: int = 50) -> int:
    """Reprocess ledger rows waiting on a booking. Used by the worker."""
    result = await db.execute(
        select(PaymentEvent.id)
        .where(
            PaymentEvent.status == PaymentEventStatus.RETRYING,
            PaymentEvent.next_attempt_at <= clock.utcnow(),
        )
        .order_by(PaymentEvent.next_attempt_at.asc(), PaymentEvent.id.asc())
        .limit(limit)
    )
    ids = list(result.scalars().all())
    for entry_id in ids:
        await process_entry(db, gateway, entry_id)
    return len(ids)
