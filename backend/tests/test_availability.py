"""
Tests for schedule validation and slot capacity reservation.
"""

from datetime import date, datetime, timezone

import pytest
from sqlalchemy import select

from activity_booking.core.exceptions import (
    CapacityExceededError,
    DateBlackedOutError,
    OutOfScheduleError,
    SlotFullError,
)
from activity_booking.models.slot import SlotInventory
from activity_booking.services import availability_service
from conftest import BLACKOUT_DATE, KAYAK, SLOT_DATE, SMALL


@pytest.fixture
def kayak():
    return KAYAK


@pytest.fixture
def small():
    return SMALL


def test_recurring_slot_uses_window_capacity(kayak):
    slot = availability_service.validate_request(kayak, SLOT_DATE, "09:00", "11:00", 2)
    assert slot.capacity == 10
    assert slot.activity_id == "act-kayak"


def test_fixed_slot_uses_available_spots(small):
    slot = availability_service.validate_request(small, SLOT_DATE, "18:00", "20:00", 1)
    assert slot.capacity == 3


def test_fixed_schedule_rejects_other_dates(small):
    with pytest.raises(OutOfScheduleError):
        availability_service.validate_request(small, date(2030, 1, 11), "18:00", "20:00", 1)


def test_unknown_window_is_out_of_schedule(kayak):
    with pytest.raises(OutOfScheduleError):
        availability_service.validate_request(kayak, SLOT_DATE, "10:00", "12:00", 1)


def test_blackout_checked_before_schedule(kayak):
    with pytest.raises(DateBlackedOutError):
        availability_service.validate_request(kayak, BLACKOUT_DATE, "10:00", "12:00", 1)


def test_participant_count_bounds(kayak):
    with pytest.raises(CapacityExceededError):
        availability_service.validate_request(kayak, SLOT_DATE, "09:00", "11:00", 7)


def test_slot_start_in_utc(kayak):
    assert availability_service.slot_start(kayak, SLOT_DATE, "09:00") == datetime(
        2030, 1, 10, 9, 0, tzinfo=timezone.utc
    )


def test_same_slot_shares_one_lock():
    a = availability_service.slot_lock("act-kayak", SLOT_DATE, "09:00", "11:00")
    b = availability_service.slot_lock("act-kayak", SLOT_DATE, "09:00", "11:00")
    c = availability_service.slot_lock("act-kayak", SLOT_DATE, "13:00", "15:00")
    assert a is b
    assert a is not c


async def _remaining(db) -> int:
    result = await db.execute(select(SlotInventory).execution_options(populate_existing=True))
    return result.scalar_one().remaining


@pytest.mark.asyncio
async def test_reserve_and_release(db_session, kayak):
    slot = availability_service.validate_request(kayak, SLOT_DATE, "09:00", "11:00", 4)

    inventory = await availability_service.reserve_capacity(db_session, slot, 4)
    await db_session.commit()
    assert inventory.reserved == 4
    assert await _remaining(db_session) == 6

    await availability_service.reserve_capacity(db_session, slot, 6)
    await db_session.commit()
    assert await _remaining(db_session) == 0

    with pytest.raises(SlotFullError):
        await availability_service.reserve_capacity(db_session, slot, 1)
    await db_session.rollback()

    await availability_service.release_capacity(db_session, "act-kayak", SLOT_DATE, "09:00", "11:00", 4)
    await db_session.commit()
    assert await _remaining(db_session) == 4


@pytest.mark.asyncio
async def test_full_fixed_slot_rejects_more(db_session, small):
    slot = availability_service.validate_request(small, SLOT_DATE, "18:00", "20:00", 3)
    await availability_service.reserve_capacity(db_session, slot, 3)
    await db_session.commit()
    with pytest.raises(SlotFullError):
        await availability_service.reserve_capacity(db_session, slot, 1)
