"""
Transactional outbox.

Side effects of a state change (refund issuance, community-rating
recomputation) are written as outbox rows in the same transaction as the
change itself, then applied after commit:

  1. enqueue()          inside the mutating transaction
  2. commit             state change and outbox row land together
  3. dispatch_events()  claims each row, runs its handler, commits

Claiming is a conditional update that pushes `next_attempt_at` out by a
lease, so the request path and the background worker never run the same row
at the same time. Failed handlers are retried with backoff up to
OUTBOX_MAX_ATTEMPTS, then the row is marked failed for investigation.
"""

from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from activity_booking.core import clock
from activity_booking.core.config import get_settings
from activity_booking.core.logging import get_logger
from activity_booking.core.metrics import record_outbox_dispatch
from activity_booking.models.outbox_event import OutboxEvent, OutboxStatus

logger = get_logger(__name__)
settings = get_settings()

REFUND_REQUESTED = "refund.requested"
COMMUNITY_RATING_RECOMPUTE = "community_rating.recompute"

_PENDING_IDS = "outbox_pending_ids"

CLAIM_LEASE = timedelta(seconds=60)
BASE_BACKOFF_SECONDS = 5
MAX_BACKOFF_SECONDS = 600


async def enqueue(
    db: AsyncSession,
    event_type: str,
    aggregate_id: str,
    payload: dict[str, Any],
    idempotency_key: str,
) -> OutboxEvent:
    """
    Add an outbox row to the current transaction.
    Returns the existing row if the idempotency key was already enqueued.
    """
    existing = await db.execute(select(OutboxEvent).where(OutboxEvent.idempotency_key == idempotency_key))
    row = existing.scalar_one_or_none()
    if row is not None:
        logger.info("outbox_duplicate_enqueue", event_type=event_type, idempotency_key=idempotency_key)
        return row

    row = OutboxEvent(
        event_type=event_type,
        aggregate_id=aggregate_id,
        payload=payload,
        idempotency_key=idempotency_key,
        status=OutboxStatus.PENDING,
        attempts=0,
        next_attempt_at=clock.utcnow(),
    )
    db.add(row)
    await db.flush()
    db.info.setdefault(_PENDING_IDS, []).append(row.id)
    logger.info("outbox_enqueued", event_type=event_type, aggregate_id=aggregate_id, outbox_id=row.id)
    return row


def backoff_for(attempts: int) -> timedelta:
    return timedelta(seconds=min(BASE_BACKOFF_SECONDS * 2 ** max(attempts - 1, 0), MAX_BACKOFF_SECONDS))


async def _claim(db: AsyncSession, outbox_id: int, now: datetime) -> Optional[OutboxEvent]:
    result = await db.execute(
        update(OutboxEvent)
        .where(
            OutboxEvent.id == outbox_id,
            OutboxEvent.status == OutboxStatus.PENDING,
            OutboxEvent.next_attempt_at <= now,
        )
        .values(
            attempts=OutboxEvent.attempts + 1,
            next_attempt_at=now + CLAIM_LEASE,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        return None

    loaded = await db.execute(
        select(OutboxEvent)
        .where(OutboxEvent.id == outbox_id)
        .execution_options(populate_existing=True)
    )
    return loaded.scalar_one()


async def _run_one(db: AsyncSession, outbox_id: int, gateway) -> bool:
    # Imported here: handlers depend on services that enqueue into the outbox
    from activity_booking.services.outbox_handlers import HANDLERS

    now = clock.utcnow()
    event = await _claim(db, outbox_id, now)
    if event is None:
        return False

    handler = HANDLERS.get(event.event_type)
    if handler is None:
        event.status = OutboxStatus.FAILED
        event.last_error = f"no handler for {event.event_type}"
        await db.commit()
        logger.error("outbox_unknown_event_type", outbox_id=outbox_id, event_type=event.event_type)
        record_outbox_dispatch(event.event_type, ok=False)
        return False

    event_type = event.event_type
    attempts = event.attempts
    try:
        await handler(db, event, gateway=gateway)
    except Exception as e:
        await db.rollback()
        await _record_failure(db, outbox_id, attempts, e)
        record_outbox_dispatch(event_type, ok=False)
        return False

    event.status = OutboxStatus.DONE
    event.processed_at = clock.utcnow()
    event.last_error = None
    await db.commit()
    record_outbox_dispatch(event_type, ok=True)
    logger.info("outbox_dispatched", outbox_id=outbox_id, event_type=event_type, attempts=attempts)
    return True


async def _record_failure(db: AsyncSession, outbox_id: int, attempts: int, error: Exception) -> None:
    event = await db.get(OutboxEvent, outbox_id, populate_existing=True)
    event.last_error = f"{type(error).__name__}: {error}"[:2000]
    if attempts >= settings.OUTBOX_MAX_ATTEMPTS:
        event.status = OutboxStatus.FAILED
        logger.error(
            "outbox_dispatch_abandoned",
            outbox_id=outbox_id,
            event_type=event.event_type,
            attempts=attempts,
            error=event.last_error,
        )
    else:
        event.next_attempt_at = clock.utcnow() + backoff_for(attempts)
        logger.warning(
            "outbox_dispatch_failed",
            outbox_id=outbox_id,
            event_type=event.event_type,
            attempts=attempts,
            error=event.last_error,
            exc_info=error,
        )
    await db.commit()


async def dispatch_events(db: AsyncSession, outbox_ids: Iterable[int], gateway) -> int:
    """Run specific rows right after the commit that created them."""
    done = 0
    for outbox_id in outbox_ids:
        if await _run_one(db, outbox_id, gateway):
            done += 1
    return done


async def dispatch_committed(db: AsyncSession, gateway, *reload) -> int:
    """
    Run the rows enqueued on this session since its last commit.

    A failing handler rolls the session back, which expires every loaded
    instance; the ones in `reload` are refreshed so callers can keep using them.
    """
    ids = db.info.pop(_PENDING_IDS, [])
    if not ids:
        return 0
    done = await dispatch_events(db, ids, gateway)
    for instance in reload:
        await db.refresh(instance)
    return done


def discard_uncommitted(db: AsyncSession) -> None:
    """Forget rows enqueued in a transaction that was rolled back."""
    db.info.pop(_PENDING_IDS, None)


async def dispatch_due(db: AsyncSession, gateway, limit: int = 50) -> int:
    """Run every pending row whose next attempt is due. Used by the worker."""
    result = await db.execute(
        select(OutboxEvent.id)
        .where(
            OutboxEvent.status == OutboxStatus.PENDING,
            OutboxEvent.next_attempt_at <= clock.utcnow(),
        )
        .order_by(OutboxEvent.next_attempt_at.asc(), OutboxEvent.id.asc())
        .limit(limit)
    )
    ids = list(result.scalars().all())
    return await dispatch_events(db, ids, gateway)
