"""
Concurrent booking tests: the last seats of a slot go to exactly as many
requests as fit, never more. A cancellation and a payment confirmation
racing on one booking resolve to a cancelled booking with its money refunded.
"""

import asyncio

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

from activity_booking.core.security import Caller
from activity_booking.models.booking import Booking, BookingStatus, PaymentStatus
from activity_booking.models.payment_event import PaymentEvent, PaymentEventStatus
from activity_booking.models.slot import SlotInventory
from activity_booking.services import availability_service, booking_service, reconciliation_service, worker
from activity_booking.services.reconciliation_service import PaymentUpdate
from conftest import auth_headers, booking_payload, card_payment


def small_slot(participants: int = 1) -> dict:
    return booking_payload(activity_id="act-small", participants=participants, start_time="18:00", end_time="20:00")


@pytest.mark.asyncio
async def test_concurrent_bookings_never_overbook(client: AsyncClient, db_session):
    """Eight single-seat requests race for a 3-seat slot."""
    requests = [
        client.post("/api/v1/bookings/", json=small_slot(), headers=auth_headers(f"racer-{i}"))
        for i in range(8)
    ]
    responses = await asyncio.gather(*requests)

    codes = sorted(r.status_code for r in responses)
    assert codes.count(201) == 3
    assert codes.count(409) == 5
    for r in responses:
        if r.status_code == 409:
            assert r.json()["code"] == "SlotFull"

    inventory = (await db_session.execute(select(SlotInventory))).scalar_one()
    assert inventory.reserved == 3

    booked = (await db_session.execute(select(func.sum(Booking.participant_count)))).scalar()
    assert booked == 3


@pytest.mark.asyncio
async def test_concurrent_mixed_party_sizes(client: AsyncClient, db_session):
    """Parties of 2 and 2 cannot both fit in 3 seats."""
    responses = await asyncio.gather(
        client.post("/api/v1/bookings/", json=small_slot(2), headers=auth_headers("a")),
        client.post("/api/v1/bookings/", json=small_slot(2), headers=auth_headers("b")),
        client.post("/api/v1/bookings/", json=small_slot(1), headers=auth_headers("c")),
    )
    created = [r for r in responses if r.status_code == 201]
    seats = sum(r.json()["participant_count"] for r in created)
    assert seats <= 3
    assert any(r.status_code == 409 for r in responses)

    inventory = (await db_session.execute(select(SlotInventory))).scalar_one()
    assert inventory.reserved == seats



async def _initiated_payment(client: AsyncClient, processor, user_id: str = "user-1") -> str:
    """A booking whose card payment is waiting on 3-D Secure (pay_1, pending)."""
    response = await client.post("/api/v1/bookings/", json=booking_payload(), headers=auth_headers(user_id))
    reference = response.json()["reference"]
    processor.next_status = "initiated"
    response = await client.post(f"/api/v1/payments/{reference}", json=card_payment(), headers=auth_headers(user_id))
    assert response.json()["payment_status"] == "pending"
    return reference


def _paid(payment_id: str = "pay_1") -> PaymentUpdate:
    return PaymentUpdate(payment_id=payment_id, status=PaymentStatus.PAID, amount=23000)


@pytest.mark.asyncio
async def test_cancellation_loses_to_payment_confirmation(
    client: AsyncClient, processor, gateway, session_factory, db_session, monkeypatch
):
    """The payment commits between the cancellation's read and its write."""
    reference = await _initiated_payment(client, processor)
    release = availability_service.release_capacity
    confirmed = []

    async def release_after_payment(db, *args):
        if not confirmed:
            async with session_factory() as other:
                booking, _ = await reconciliation_service.apply_and_commit(
                    other, gateway, reference, _paid(), source="poll"
                )
                confirmed.append(booking.status)
        await release(db, *args)

    monkeypatch.setattr(availability_service, "release_capacity", release_after_payment)

    response = await client.post(f"/api/v1/bookings/{reference}/cancel", headers=auth_headers("user-1"))
    assert confirmed == ["confirmed"]
    assert response.status_code == 409
    assert response.json()["code"] == "ConcurrentModification"

    # retry sees the paid booking and refunds it in full
    response = await client.post(f"/api/v1/bookings/{reference}/cancel", headers=auth_headers("user-1"))
    assert response.status_code == 200
    assert response.json()["refund_amount"] == 23000
    assert processor.refunds == [
        {"payment_id": "pay_1", "amount": 23000, "idempotency_key": f"refund:{reference}:cancellation"}
    ]

    booking = (await db_session.execute(select(Booking))).scalar_one()
    assert booking.status == BookingStatus.CANCELLED
    assert booking.payment_status == PaymentStatus.REFUNDED
    inventory = (await db_session.execute(select(SlotInventory))).scalar_one()
    assert inventory.reserved == 0


@pytest.mark.asyncio
async def test_payment_confirmation_loses_to_cancellation(
    client: AsyncClient, processor, gateway, catalog, session_factory, monkeypatch
):
    """The cancellation commits between the payment's read and its write."""
    reference = await _initiated_payment(client, processor)
    apply = reconciliation_service.apply_payment_update
    cancelled = []

    async def apply_after_cancellation(db, booking, update, *, source):
        if not cancelled:
            async with session_factory() as other:
                _, refund_amount = await booking_service.cancel_booking(
                    other, catalog, gateway, Caller(user_id="user-1"), reference
                )
                cancelled.append(refund_amount)
        return await apply(db, booking, update, source=source)

    monkeypatch.setattr(reconciliation_service, "apply_payment_update", apply_after_cancellation)

    async with session_factory() as db:
        booking, outcome = await reconciliation_service.apply_and_commit(
            db, gateway, reference, _paid(), source="poll"
        )

    # nothing was paid when the cancellation committed
    assert cancelled == [0]
    assert outcome == reconciliation_service.APPLIED
    assert booking.status == BookingStatus.CANCELLED
    assert booking.payment_status == PaymentStatus.REFUNDED
    assert processor.refunds == [
        {"payment_id": "pay_1", "amount": 23000, "idempotency_key": "refund:pay_1:after-cancellation"}
    ]


@pytest.mark.asyncio
async def test_webhook_left_for_worker_when_conflicts_persist(
    client: AsyncClient, processor, gateway, send_webhook, session_factory, db_session, frozen_clock, monkeypatch
):
    reference = await _initiated_payment(client, processor)
    processor.set_status("pay_1", "paid")
    apply = reconciliation_service.apply_payment_update

    async def always_stale(db, booking, update, *, source):
        raise StaleDataError("booking version changed")

    monkeypatch.setattr(reconciliation_service, "apply_payment_update", always_stale)
    response = await send_webhook(
        {"id": "evt_1", "type": "payment_paid", "data": dict(processor.payments["pay_1"])}
    )
    assert response.status_code == 200
    assert response.json()["status"] == "retrying"

    monkeypatch.setattr(reconciliation_service, "apply_payment_update", apply)
    frozen_clock.advance(seconds=31)
    result = await worker.run_once(session_factory, gateway)
    assert result["webhooks_retried"] == 1

    entry = (await db_session.execute(select(PaymentEvent))).scalar_one()
    assert entry.status == PaymentEventStatus.PROCESSED
    assert entry.last_error is None
    booking = (await db_session.execute(select(Booking).where(Booking.reference == reference))).scalar_one()
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.payment_status == PaymentStatus.PAID
