"""
Background worker: retries webhook events waiting on a booking and
dispatches outbox rows whose previous attempt failed.
"""

import asyncio
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from activity_booking.core.logging import get_logger
from activity_booking.services import outbox_service, reconciliation_service

logger = get_logger(__name__)


async def run_once(session_factory: Callable[[], AsyncSession], gateway) -> dict:
    async with session_factory() as db:
        retried = await reconciliation_service.retry_due_events(db, gateway)
    async with session_factory() as db:
        dispatched = await outbox_service.dispatch_due(db, gateway)
    if retried or dispatched:
        logger.info("worker_tick", webhooks_retried=retried, outbox_dispatched=dispatched)
    return {"webhooks_retried": retried, "outbox_dispatched": dispatched}


async def worker_loop(
    stop_event: asyncio.Event,
    session_factory: Callable[[], AsyncSession],
    gateway,
    interval: float,
) -> None:
    logger.info("worker_started", interval=interval)
    while not stop_event.is_set():
        try:
            await run_once(session_factory, gateway)
        except SQLAlchemyError as e:
            logger.error("worker_tick_failed", error=str(e), exc_info=e)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
    logger.info("worker_stopped")
