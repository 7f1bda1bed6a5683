"""
Tests for signed payment notifications: verification, idempotent replay,
monotonic status application and the retry/dead-letter ledger.
"""

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from activity_booking.models.payment_event import PaymentEvent, PaymentEventStatus
from activity_booking.services import reconciliation_service
from conftest import auth_headers, card_payment


def notification(event_id: str, event_type: str, payment: dict) -> dict:
    return {"id": event_id, "type": event_type, "data": dict(payment)}


async def _initiated_payment(client: AsyncClient, create_booking, processor, user_id: str = "user-1") -> str:
    booking = await create_booking(user_id)
    processor.next_status = "initiated"
    response = await client.post(
        f"/api/v1/payments/{booking['reference']}", json=card_payment(), headers=auth_headers(user_id)
    )
    assert response.status_code == 200
    assert response.json()["payment_status"] == "pending"
    return booking["reference"]


async def _booking(client: AsyncClient, reference: str) -> dict:
    return (await client.get(f"/api/v1/bookings/{reference}", headers=auth_headers("user-1"))).json()


@pytest.mark.asyncio
async def test_paid_notification_confirms_booking(client: AsyncClient, create_booking, processor, send_webhook):
    reference = await _initiated_payment(client, create_booking, processor)
    processor.set_status("pay_1", "paid")

    response = await send_webhook(notification("evt_1", "payment_paid", processor.payments["pay_1"]))
    assert response.status_code == 200
    assert response.json() == {"received": True, "event_id": "evt_1", "status": "processed", "duplicate": False}

    stored = await _booking(client, reference)
    assert stored["status"] == "confirmed"
    assert stored["payment_status"] == "paid"


@pytest.mark.asyncio
async def test_replayed_notification_is_acknowledged_once(
    client: AsyncClient, create_booking, processor, send_webhook, db_session
):
    await _initiated_payment(client, create_booking, processor)
    processor.set_status("pay_1", "paid")
    payload = notification("evt_1", "payment_paid", processor.payments["pay_1"])

    await send_webhook(payload)
    response = await send_webhook(payload)
    assert response.status_code == 200
    assert response.json()["duplicate"] is True
    assert response.json()["status"] == "processed"

    entries = (await db_session.execute(select(PaymentEvent))).scalars().all()
    assert len(entries) == 1
    assert entries[0].attempts == 1


@pytest.mark.asyncio
async def test_late_paid_after_refund_is_ignored(client: AsyncClient, paid_booking, processor, send_webhook):
    reference = await paid_booking("user-1")
    refunded = dict(processor.payments["pay_1"], status="refunded", refunded=23000)

    response = await send_webhook(notification("evt_r", "payment_refunded", refunded))
    assert response.json()["status"] == "processed"

    stored = await _booking(client, reference)
    assert stored["payment_status"] == "refunded"
    assert stored["refund_amount"] == 23000
    assert stored["status"] == "confirmed"

    late = dict(processor.payments["pay_1"], status="paid")
    response = await send_webhook(notification("evt_p", "payment_paid", late))
    assert response.status_code == 200
    assert response.json()["status"] == "ignored"

    stored = await _booking(client, reference)
    assert stored["payment_status"] == "refunded"


@pytest.mark.asyncio
async def test_failed_after_paid_is_ignored(client: AsyncClient, paid_booking, processor, send_webhook):
    reference = await paid_booking("user-1")
    failed = dict(processor.payments["pay_1"], status="failed")

    response = await send_webhook(notification("evt_f", "payment_failed", failed))
    assert response.json()["status"] == "ignored"

    stored = await _booking(client, reference)
    assert stored["status"] == "confirmed"
    assert stored["payment_status"] == "paid"


@pytest.mark.asyncio
async def test_payment_after_cancellation_is_refunded(client: AsyncClient, create_booking, processor, send_webhook):
    reference = await _initiated_payment(client, create_booking, processor)
    response = await client.post(f"/api/v1/bookings/{reference}/cancel", headers=auth_headers("user-1"))
    assert response.status_code == 200
    assert response.json()["refund_amount"] == 0

    processor.set_status("pay_1", "paid")
    response = await send_webhook(notification("evt_1", "payment_paid", processor.payments["pay_1"]))
    assert response.json()["status"] == "processed"

    assert processor.refunds == [
        {"payment_id": "pay_1", "amount": 23000, "idempotency_key": "refund:pay_1:after-cancellation"}
    ]
    stored = await _booking(client, reference)
    assert stored["status"] == "cancelled"
    assert stored["payment_status"] == "refunded"
    assert stored["refund_processed"] is True


@pytest.mark.asyncio
async def test_superseded_attempt_refund_leaves_current_payment(
    client: AsyncClient, create_booking, processor, send_webhook
):
    booking = await create_booking("user-1")
    reference = booking["reference"]

    processor.next_status = "failed"
    response = await client.post(f"/api/v1/payments/{reference}", json=card_payment(), headers=auth_headers("user-1"))
    assert response.status_code == 402
    processor.next_status = "paid"
    response = await client.post(f"/api/v1/payments/{reference}", json=card_payment(), headers=auth_headers("user-1"))
    assert response.json()["booking_status"] == "confirmed"

    # the first attempt turns out to have been captured after all
    processor.set_status("pay_1", "paid")
    response = await send_webhook(notification("evt_late", "payment_paid", processor.payments["pay_1"]))
    assert response.json()["status"] == "ignored"
    assert processor.refunds == [
        {"payment_id": "pay_1", "amount": 23000, "idempotency_key": "refund:pay_1:superseded"}
    ]

    stored = await _booking(client, reference)
    assert stored["gateway_payment_id"] == "pay_2"
    assert stored["payment_status"] == "paid"
    assert stored["refund_processed"] is False
    assert stored["refund_amount"] is None

    response = await client.post(f"/api/v1/bookings/{reference}/cancel", headers=auth_headers("user-1"))
    assert response.status_code == 200
    assert response.json()["refund_amount"] == 23000
    assert processor.refunds[-1] == {
        "payment_id": "pay_2",
        "amount": 23000,
        "idempotency_key": f"refund:{reference}:cancellation",
    }
    stored = await _booking(client, reference)
    assert stored["payment_status"] == "refunded"
    assert stored["refund_processed"] is True


@pytest.mark.asyncio
async def test_notification_attaches_to_timed_out_attempt(client: AsyncClient, create_booking, processor, send_webhook):
    """The processor's answer arrives by webhook after the create call timed out."""
    booking = await create_booking("user-1")
    reference = booking["reference"]

    processor.fail_with = "timeout"
    response = await client.post(f"/api/v1/payments/{reference}", json=card_payment(), headers=auth_headers("user-1"))
    assert response.status_code == 504

    payment = {
        "id": "pay_77",
        "status": "paid",
        "amount": 23000,
        "currency": "SAR",
        "source": {"type": "creditcard", "company": "mada", "last_four": "4242"},
        "metadata": {"booking_reference": reference, "idempotency_key": f"{reference}-1"},
    }
    response = await send_webhook(notification("evt_77", "payment_paid", payment))
    assert response.json()["status"] == "processed"

    stored = await _booking(client, reference)
    assert stored["status"] == "confirmed"
    assert stored["gateway_payment_id"] == "pay_77"
    assert stored["payment_brand"] == "mada"
    assert stored["payment_last4"] == "4242"


@pytest.mark.asyncio
async def test_unknown_payment_is_retried_then_dead_lettered(
    client: AsyncClient, send_webhook, gateway, db_session, frozen_clock
):
    payment = {"id": "pay_ghost", "status": "paid", "amount": 5000, "metadata": {}}
    response = await send_webhook(notification("evt_ghost", "payment_paid", payment))
    assert response.status_code == 200
    assert response.json()["status"] == "retrying"

    frozen_clock.advance(seconds=31)
    assert await reconciliation_service.retry_due_events(db_session, gateway) == 1
    entry = (await db_session.execute(select(PaymentEvent))).scalar_one()
    assert entry.status == PaymentEventStatus.RETRYING
    assert entry.attempts == 2

    frozen_clock.advance(seconds=900)
    assert await reconciliation_service.retry_due_events(db_session, gateway) == 1
    entry = (
        await db_session.execute(select(PaymentEvent).execution_options(populate_existing=True))
    ).scalar_one()
    assert entry.status == PaymentEventStatus.DEAD_LETTERED
    assert "pay_ghost" in entry.last_error

    # nothing left to retry
    frozen_clock.advance(seconds=60)
    assert await reconciliation_service.retry_due_events(db_session, gateway) == 0


@pytest.mark.asyncio
async def test_bad_signature_rejected(client: AsyncClient, db_session):
    body = b'{"id": "evt_1", "type": "payment_paid", "data": {"id": "pay_1", "status": "paid"}}'

    response = await client.post(
        "/api/v1/webhooks/payments", content=body, headers={"x-moyasar-signature": "0" * 64}
    )
    assert response.status_code == 400
    assert response.json()["code"] == "BadSignature"

    response = await client.post("/api/v1/webhooks/payments", content=body)
    assert response.status_code == 400
    assert response.json()["code"] == "BadSignature"

    assert (await db_session.execute(select(PaymentEvent))).scalars().all() == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [b"not json", b"[1, 2, 3]", b'{"id": "evt_1", "type": "payment_paid", "data": {"status": "paid"}}'],
)
async def test_malformed_notification_rejected(client: AsyncClient, gateway, body):
    response = await client.post(
        "/api/v1/webhooks/payments", content=body, headers={"x-moyasar-signature": gateway.sign(body)}
    )
    assert response.status_code == 400
    assert response.json()["code"] == "BadPayload"
