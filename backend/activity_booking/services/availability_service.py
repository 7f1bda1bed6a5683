"""
Availability validation and concurrency-safe slot capacity reservation.

CHECK ORDER
===========

  1. Date is not in the activity's blackout list       -> DateBlackedOut
  2. Date/time slot exists in the schedule             -> OutOfSchedule
     (fixed slot list, or weekly availability for recurring/flexible)
  3. Participant count within [capacity.min, capacity.max] -> CapacityExceeded
  4. Remaining capacity at the slot >= participants    -> SlotFull

CONCURRENCY STRATEGY: Optimistic Locking with Retry
====================================================

Capacity consumed per slot lives in `slot_inventory`, one row per
(activity, date, start, end). Reserving seats is a single conditional update:

  UPDATE slot_inventory
     SET reserved = reserved + N, capacity = :capacity, version = version + 1
   WHERE id = :id AND version = :current_version AND reserved + N <= :capacity

If rows_affected == 0, either the slot filled up (SlotFull) or another
transaction bumped the version first (retry, up to MAX_RETRY_ATTEMPTS).
The CHECK constraint reserved <= capacity is the final safety net.

Within one process, callers also hold `slot_lock(...)` across the reserve,
the booking insert and the commit, so same-slot requests queue instead of
spinning on version conflicts.
"""

import asyncio
import weakref
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from activity_booking.core.exceptions import (
    CapacityExceededError,
    ConcurrentModificationError,
    DateBlackedOutError,
    OutOfScheduleError,
    SlotFullError,
)
from activity_booking.core.logging import get_logger
from activity_booking.core.metrics import slot_reservation_retries
from activity_booking.models.slot import SlotInventory
from activity_booking.schemas.catalog import WEEKDAYS, ActivitySnapshot

logger = get_logger(__name__)

MAX_RETRY_ATTEMPTS = 3

_slot_locks: "weakref.WeakValueDictionary[tuple, asyncio.Lock]" = weakref.WeakValueDictionary()


@dataclass(frozen=True)
class SlotKey:
    activity_id: str
    booking_date: date
    start_time: str
    end_time: str
    capacity: int


def slot_lock(activity_id: str, booking_date: date, start_time: str, end_time: str) -> asyncio.Lock:
    """Per-slot in-process mutex. Dropped once nobody holds a reference."""
    key = (activity_id, booking_date, start_time, end_time)
    lock = _slot_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _slot_locks[key] = lock
    return lock


def slot_start(activity: ActivitySnapshot, booking_date: date, start_time: str) -> datetime:
    """Start instant of a slot, interpreted in the activity's timezone, as UTC."""
    hour, minute = (int(part) for part in start_time.split(":"))
    tz = timezone.utc if activity.timezone.upper() == "UTC" else ZoneInfo(activity.timezone)
    local = datetime.combine(booking_date, time(hour, minute), tzinfo=tz)
    return local.astimezone(timezone.utc)


def _find_slot(activity: ActivitySnapshot, booking_date: date, start_time: str, end_time: str) -> Optional[int]:
    """Slot capacity if the schedule offers this slot, else None."""
    schedule = activity.schedule
    default_capacity = activity.capacity.max

    if schedule.type == "fixed":
        for slot in schedule.fixed_slots:
            if slot.date == booking_date and slot.start_time == start_time and slot.end_time == end_time:
                return slot.available_spots or default_capacity
        return None

    # recurring and flexible schedules both use the weekly pattern
    weekday = WEEKDAYS[booking_date.weekday()]
    for day in schedule.availability:
        if day.day != weekday:
            continue
        for window in day.slots:
            if window.start_time == start_time and window.end_time == end_time:
                return window.max_bookings or default_capacity
    return None


def validate_request(
    activity: ActivitySnapshot,
    booking_date: date,
    start_time: str,
    end_time: str,
    participants: int,
) -> SlotKey:
    """Run the static checks (blackout, schedule, capacity range) in order."""
    if booking_date in activity.schedule.blackout_dates:
        raise DateBlackedOutError(
            f"{booking_date.isoformat()} is not available for this activity",
            details={"date": booking_date.isoformat()},
        )

    capacity = _find_slot(activity, booking_date, start_time, end_time)
    if capacity is None:
        raise OutOfScheduleError(
            f"No {start_time}-{end_time} slot on {booking_date.isoformat()}",
            details={"date": booking_date.isoformat(), "start_time": start_time, "end_time": end_time},
        )

    bounds = activity.capacity
    if participants < bounds.min or participants > bounds.max:
        raise CapacityExceededError(
            f"Participant count must be between {bounds.min} and {bounds.max}",
            details={"requested": participants, "min": bounds.min, "max": bounds.max},
        )

    return SlotKey(
        activity_id=activity.id,
        booking_date=booking_date,
        start_time=start_time,
        end_time=end_time,
        capacity=capacity,
    )


async def _load_slot(db: AsyncSession, slot: SlotKey) -> Optional[SlotInventory]:
    result = await db.execute(
        select(SlotInventory)
        .where(
            SlotInventory.activity_id == slot.activity_id,
            SlotInventory.slot_date == slot.booking_date,
            SlotInventory.start_time == slot.start_time,
            SlotInventory.end_time == slot.end_time,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def reserve_capacity(db: AsyncSession, slot: SlotKey, participants: int) -> SlotInventory:
    """
    Reserve seats in the caller's transaction.
    Must be the first write of that transaction: a lost insert race rolls it back.
    """
    for attempt in range(1, MAX_RETRY_ATTEMPTS + 1):
        inventory = await _load_slot(db, slot)

        if inventory is None:
            if participants > slot.capacity:
                raise SlotFullError(
                    "Not enough capacity left in this slot",
                    details={"requested": participants, "remaining": slot.capacity},
                )
            inventory = SlotInventory(
                activity_id=slot.activity_id,
                slot_date=slot.booking_date,
                start_time=slot.start_time,
                end_time=slot.end_time,
                capacity=slot.capacity,
                reserved=participants,
            )
            db.add(inventory)
            try:
                await db.flush()
            except IntegrityError:
                # Another transaction created the row first
                await db.rollback()
                slot_reservation_retries.inc()
                logger.info("slot_reservation_retry", activity_id=slot.activity_id, attempt=attempt, reason="insert_race")
                continue
            return inventory

        remaining = slot.capacity - inventory.reserved
        if remaining < participants:
            logger.warning(
                "slot_full",
                activity_id=slot.activity_id,
                date=slot.booking_date.isoformat(),
                start_time=slot.start_time,
                requested=participants,
                remaining=max(remaining, 0),
            )
            raise SlotFullError(
                "Not enough capacity left in this slot",
                details={"requested": participants, "remaining": max(remaining, 0)},
            )

        current_version = inventory.version
        result = await db.execute(
            update(SlotInventory)
            .where(
                SlotInventory.id == inventory.id,
                SlotInventory.version == current_version,
                SlotInventory.reserved + participants <= slot.capacity,
            )
            .values(
                reserved=SlotInventory.reserved + participants,
                capacity=slot.capacity,
                version=SlotInventory.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return await _load_slot(db, slot)

        slot_reservation_retries.inc()
        logger.info(
            "slot_reservation_retry",
            activity_id=slot.activity_id,
            attempt=attempt,
            reason="version_conflict",
        )

    raise ConcurrentModificationError(
        "Booking failed due to high demand. Please try again.",
        details={"activity_id": slot.activity_id},
    )


async def release_capacity(
    db: AsyncSession,
    activity_id: str,
    booking_date: date,
    start_time: str,
    end_time: str,
    participants: int,
) -> None:
    """Return seats to the slot in the caller's transaction."""
    result = await db.execute(
        update(SlotInventory)
        .where(
            SlotInventory.activity_id == activity_id,
            SlotInventory.slot_date == booking_date,
            SlotInventory.start_time == start_time,
            SlotInventory.end_time == end_time,
            SlotInventory.reserved >= participants,
        )
        .values(
            reserved=SlotInventory.reserved - participants,
            version=SlotInventory.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.error(
            "slot_release_mismatch",
            activity_id=activity_id,
            date=booking_date.isoformat(),
            start_time=start_time,
            participants=participants,
        )
