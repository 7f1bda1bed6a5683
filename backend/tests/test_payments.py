"""
Tests for payment initiation, retries, status refresh and refund dispatch.
"""

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from activity_booking.models.booking import Booking
from activity_booking.models.outbox_event import OutboxEvent, OutboxStatus
from activity_booking.services import worker
from conftest import auth_headers, card_payment


async def _pay(client: AsyncClient, reference: str, user_id: str = "user-1", body: dict = None):
    return await client.post(
        f"/api/v1/payments/{reference}",
        json=body or card_payment(),
        headers=auth_headers(user_id),
    )


async def _booking(client: AsyncClient, reference: str, user_id: str = "user-1") -> dict:
    response = await client.get(f"/api/v1/bookings/{reference}", headers=auth_headers(user_id))
    assert response.status_code == 200
    return response.json()


@pytest.mark.asyncio
async def test_card_payment_confirms_booking(client: AsyncClient, create_booking, processor):
    booking = await create_booking("user-1")
    reference = booking["reference"]

    response = await _pay(client, reference)
    assert response.status_code == 200
    data = response.json()
    assert data["payment_status"] == "paid"
    assert data["booking_status"] == "confirmed"
    assert data["gateway_payment_id"] == "pay_1"

    assert processor.created[0]["idempotency_key"] == f"{reference}-1"
    assert processor.created[0]["body"]["amount"] == 23000
    assert processor.created[0]["body"]["metadata"]["booking_reference"] == reference

    stored = await _booking(client, reference)
    assert stored["payment_method"] == "credit_card"
    assert stored["payment_brand"] == "visa"
    assert stored["payment_last4"] == "1111"
    assert stored["paid_at"] is not None


@pytest.mark.asyncio
async def test_declined_payment_can_be_retried(client: AsyncClient, create_booking, processor):
    booking = await create_booking("user-1")
    reference = booking["reference"]

    processor.next_status = "failed"
    response = await _pay(client, reference)
    assert response.status_code == 402
    body = response.json()
    assert body["code"] == "Declined"
    assert body["details"]["retry_allowed"] is True

    stored = await _booking(client, reference)
    assert stored["status"] == "pending"
    assert stored["payment_status"] == "failed"

    processor.next_status = "paid"
    response = await _pay(client, reference)
    assert response.status_code == 200
    assert response.json()["booking_status"] == "confirmed"
    assert [c["idempotency_key"] for c in processor.created] == [f"{reference}-1", f"{reference}-2"]


@pytest.mark.asyncio
async def test_timeout_keeps_attempt_key(client: AsyncClient, create_booking, processor):
    booking = await create_booking("user-1")
    reference = booking["reference"]

    processor.fail_with = "timeout"
    response = await _pay(client, reference)
    assert response.status_code == 504
    assert response.json()["code"] == "GatewayTimeout"

    stored = await _booking(client, reference)
    assert stored["status"] == "pending"
    assert stored["payment_status"] == "pending"

    processor.fail_with = None
    response = await _pay(client, reference)
    assert response.status_code == 200
    assert response.json()["booking_status"] == "confirmed"
    assert [c["idempotency_key"] for c in processor.created] == [f"{reference}-1"]


@pytest.mark.asyncio
async def test_processor_outage_is_generic(client: AsyncClient, create_booking, processor):
    booking = await create_booking("user-1")
    processor.fail_with = 502

    response = await _pay(client, booking["reference"])
    assert response.status_code == 503
    body = response.json()
    assert body["code"] == "GatewayUnavailable"
    assert body["category"] == "external"
    assert "boom" not in response.text


@pytest.mark.asyncio
async def test_method_must_match_source(client: AsyncClient, create_booking, processor):
    booking = await create_booking("user-1")

    response = await _pay(client, booking["reference"], body=card_payment(method="stc_pay"))
    assert response.status_code == 400
    assert response.json()["code"] == "InvalidSource"
    assert processor.created == []

    response = await _pay(
        client,
        booking["reference"],
        body={"method": "stc_pay", "source": {"type": "mobile_wallet", "mobile": "+966500000001"}},
    )
    assert response.status_code == 200
    assert processor.created[0]["body"]["source"] == {"type": "stcpay", "mobile": "+966500000001"}


@pytest.mark.asyncio
async def test_rejected_source_abandons_attempt(client: AsyncClient, create_booking, processor):
    booking = await create_booking("user-1")
    reference = booking["reference"]

    processor.fail_with = 400
    response = await _pay(client, reference)
    assert response.status_code == 400
    assert response.json()["code"] == "InvalidSource"

    processor.fail_with = None
    response = await _pay(client, reference)
    assert response.status_code == 200
    assert processor.created[-1]["idempotency_key"] == f"{reference}-2"


@pytest.mark.asyncio
async def test_only_pending_bookings_can_be_paid(client: AsyncClient, paid_booking):
    reference = await paid_booking("user-1")
    response = await _pay(client, reference)
    assert response.status_code == 409
    assert response.json()["code"] == "BookingNotPending"


@pytest.mark.asyncio
async def test_cancelled_booking_cannot_be_paid(client: AsyncClient, create_booking):
    booking = await create_booking("user-1")
    await client.post(f"/api/v1/bookings/{booking['reference']}/cancel", headers=auth_headers("user-1"))

    response = await _pay(client, booking["reference"])
    assert response.status_code == 409
    assert response.json()["code"] == "BookingNotPending"


@pytest.mark.asyncio
async def test_only_the_customer_can_pay(client: AsyncClient, create_booking):
    booking = await create_booking("user-1")
    response = await _pay(client, booking["reference"], user_id="user-2")
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_pending_payment_settles_on_refresh(client: AsyncClient, create_booking, processor):
    booking = await create_booking("user-1")
    reference = booking["reference"]

    processor.next_status = "initiated"
    response = await _pay(client, reference)
    assert response.status_code == 200
    data = response.json()
    assert data["payment_status"] == "pending"
    assert data["booking_status"] == "pending"
    assert data["transaction_url"] == "https://processor.test/3ds/pay_1"

    # a second attempt while the first is open is refused
    response = await _pay(client, reference)
    assert response.status_code == 409
    assert response.json()["code"] == "PaymentInProgress"

    processor.set_status("pay_1", "paid")
    response = await client.post(f"/api/v1/payments/{reference}/refresh", headers=auth_headers("user-1"))
    assert response.status_code == 200
    assert response.json()["booking_status"] == "confirmed"
    assert response.json()["payment_status"] == "paid"


@pytest.mark.asyncio
async def test_refresh_without_payment(client: AsyncClient, create_booking):
    booking = await create_booking("user-1")
    response = await client.post(
        f"/api/v1/payments/{booking['reference']}/refresh", headers=auth_headers("user-1")
    )
    assert response.status_code == 400
    assert response.json()["code"] == "NoPayment"


@pytest.mark.asyncio
async def test_failed_refund_is_retried_by_worker(
    client: AsyncClient, paid_booking, processor, gateway, session_factory, db_session, frozen_clock
):
    reference = await paid_booking("user-1")

    processor.fail_with = 500
    response = await client.post(f"/api/v1/bookings/{reference}/cancel", headers=auth_headers("user-1"))
    assert response.status_code == 200
    assert response.json()["refund_amount"] == 23000

    row = (await db_session.execute(select(OutboxEvent))).scalar_one()
    assert row.status == OutboxStatus.PENDING
    assert row.attempts == 1
    assert row.idempotency_key == f"refund:{reference}:cancellation"
    assert "GatewayUnavailableError" in row.last_error

    stored = await _booking(client, reference)
    assert stored["status"] == "cancelled"
    assert stored["payment_status"] == "paid"
    assert stored["refund_processed"] is False

    # not due yet
    processor.fail_with = None
    assert (await worker.run_once(session_factory, gateway))["outbox_dispatched"] == 0

    frozen_clock.advance(seconds=10)
    assert (await worker.run_once(session_factory, gateway))["outbox_dispatched"] == 1
    assert processor.refunds[0]["amount"] == 23000

    stored = await _booking(client, reference)
    assert stored["payment_status"] == "refunded"
    assert stored["refund_processed"] is True
    assert stored["refund_amount"] == 23000

    booking = (
        await db_session.execute(
            select(Booking).where(Booking.reference == reference).execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert booking.refund_id == "pay_1"
