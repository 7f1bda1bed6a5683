"""
Pytest fixtures for the test database, catalog, payment processor and client.

Each test gets its own SQLite file so concurrent requests use separate
connections, like they would against PostgreSQL. The payment processor is
an in-process fake behind httpx.MockTransport, and the wall clock is pinned.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./unused.db")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("BACKGROUND_WORKER_ENABLED", "false")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "whsec_test")

import json
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from activity_booking.api.deps import get_catalog, get_payment_gateway
from activity_booking.core import clock as clock_module
from activity_booking.core.security import create_access_token
from activity_booking.db.base import Base
from activity_booking.db.session import get_db
from activity_booking.infrastructure.payment_gateway import PaymentGateway
from activity_booking.main import app
from activity_booking.models.booking import Booking, BookingStatus, PaymentStatus
from activity_booking.schemas.catalog import (
    WEEKDAYS,
    ActivitySnapshot,
    Capacity,
    DayAvailability,
    FixedSlot,
    GroupDiscount,
    Pricing,
    Schedule,
    SlotWindow,
    VendorSnapshot,
)
from activity_booking.services.interfaces.static_catalog import StaticCatalog
from activity_booking.services.pricing import calculate_price

WEBHOOK_SECRET = "whsec_test"

# Tuesday morning; the default slot is nine days later
NOW = datetime(2030, 1, 1, 8, 0, tzinfo=timezone.utc)
SLOT_DATE = date(2030, 1, 10)
SLOT_STARTS_AT = datetime(2030, 1, 10, 9, 0, tzinfo=timezone.utc)
BLACKOUT_DATE = date(2030, 1, 15)

VENDOR_OWNER = "vendor-owner"


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeProcessor:
    """
    Minimal Moyasar-style processor.

    `next_status` decides the outcome of the next created payment;
    `fail_with` ("timeout" or an HTTP status) makes every call fail until reset.
    """

    def __init__(self):
        self.payments: dict[str, dict] = {}
        self.by_key: dict[str, str] = {}
        self.created: list[dict] = []
        self.refunds: list[dict] = []
        self.next_status = "paid"
        self.fail_with = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.fail_with == "timeout":
            raise httpx.ReadTimeout("processor timed out", request=request)
        if isinstance(self.fail_with, int):
            return httpx.Response(self.fail_with, json={"type": "api_error", "message": "boom"})

        parts = request.url.path.strip("/").split("/")
        if request.method == "POST" and parts == ["payments"]:
            return self._create(request)
        if request.method == "GET" and len(parts) == 2:
            payment = self.payments.get(parts[1])
            if payment is None:
                return httpx.Response(404, json={"type": "record_not_found"})
            return httpx.Response(200, json=payment)
        if request.method == "POST" and len(parts) == 3 and parts[2] == "refund":
            return self._refund(parts[1], request)
        return httpx.Response(404, json={"type": "not_found"})

    def _create(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        key = request.headers.get("Idempotency-Key")
        self.created.append({"idempotency_key": key, "body": body})
        if key in self.by_key:
            return httpx.Response(200, json=self.payments[self.by_key[key]])

        payment_id = f"pay_{len(self.payments) + 1}"
        source = {"type": body["source"]["type"], "company": "visa", "message": None}
        if "number" in body["source"]:
            source["number"] = body["source"]["number"][:4] + "XXXXXXXX" + body["source"]["number"][-4:]
        if self.next_status == "initiated":
            source["transaction_url"] = f"https://processor.test/3ds/{payment_id}"
        payment = {
            "id": payment_id,
            "status": self.next_status,
            "amount": body["amount"],
            "currency": body["currency"],
            "refunded": 0,
            "source": source,
            "metadata": body.get("metadata") or {},
        }
        self.payments[payment_id] = payment
        self.by_key[key] = payment_id
        return httpx.Response(201, json=payment)

    def _refund(self, payment_id: str, request: httpx.Request) -> httpx.Response:
        payment = self.payments.get(payment_id)
        if payment is None:
            return httpx.Response(404, json={"type": "record_not_found"})
        body = json.loads(request.content)
        self.refunds.append({
            "payment_id": payment_id,
            "amount": body["amount"],
            "idempotency_key": request.headers.get("Idempotency-Key"),
        })
        payment["status"] = "refunded"
        payment["refunded"] = payment.get("refunded", 0) + body["amount"]
        return httpx.Response(200, json=payment)

    def set_status(self, payment_id: str, status: str) -> None:
        self.payments[payment_id]["status"] = status


EVERY_DAY = [
    DayAvailability(day=day, slots=[SlotWindow(start_time="09:00", end_time="11:00", max_bookings=10)])
    for day in WEEKDAYS
]

KAYAK = ActivitySnapshot(
    id="act-kayak",
    vendor_id="ven-1",
    title="Sunset kayak tour",
    capacity=Capacity(min=1, max=6),
    schedule=Schedule(type="recurring", availability=EVERY_DAY, blackout_dates=[BLACKOUT_DATE]),
    pricing=Pricing(
        base_price=10000,
        group_discounts=[GroupDiscount(min_participants=4, discount_percent=Decimal("10"))],
    ),
)

SMALL = ActivitySnapshot(
    id="act-small",
    vendor_id="ven-1",
    title="Private pottery class",
    capacity=Capacity(min=1, max=3),
    schedule=Schedule(
        type="fixed",
        fixed_slots=[FixedSlot(date=SLOT_DATE, start_time="18:00", end_time="20:00", available_spots=3)],
    ),
    pricing=Pricing(base_price=5000),
)


def build_catalog() -> StaticCatalog:
    return StaticCatalog(
        activities=[
            KAYAK,
            SMALL,
            ActivitySnapshot(
                id="act-closed",
                vendor_id="ven-1",
                is_active=False,
                capacity=Capacity(max=4),
                schedule=Schedule(type="recurring", availability=EVERY_DAY),
                pricing=Pricing(base_price=1000),
            ),
            ActivitySnapshot(
                id="act-orphan",
                vendor_id="ven-off",
                capacity=Capacity(max=4),
                schedule=Schedule(type="recurring", availability=EVERY_DAY),
                pricing=Pricing(base_price=1000),
            ),
        ],
        vendors=[
            VendorSnapshot(id="ven-1", owner_id=VENDOR_OWNER),
            VendorSnapshot(id="ven-off", is_active=False, owner_id="someone-else"),
        ],
    )


def auth_headers(user_id: str, role: str = "user") -> dict:
    token = create_access_token(data={"sub": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


def booking_payload(
    activity_id: str = "act-kayak",
    participants: int = 2,
    booking_date: date = SLOT_DATE,
    start_time: str = "09:00",
    end_time: str = "11:00",
) -> dict:
    return {
        "activity_id": activity_id,
        "booking_date": booking_date.isoformat(),
        "start_time": start_time,
        "end_time": end_time,
        "participants": [
            {"name": f"Guest {i}", "age": 30, "email": f"guest{i}@example.com"} for i in range(participants)
        ],
        "contact_info": {"email": "lead@example.com", "phone": "+966500000000"},
    }


def card_payment(method: str = "credit_card", number: str = "4111111111111111") -> dict:
    return {
        "method": method,
        "source": {"type": "card", "name": "Test User", "number": number, "cvc": "123", "month": 12, "year": 2031},
    }


@pytest.fixture(autouse=True)
def frozen_clock(monkeypatch) -> FrozenClock:
    frozen = FrozenClock(NOW)
    monkeypatch.setattr(clock_module, "utcnow", frozen)
    return frozen


@pytest.fixture
def catalog() -> StaticCatalog:
    return build_catalog()


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest_asyncio.fixture
async def gateway(processor: FakeProcessor) -> AsyncGenerator[PaymentGateway, None]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(processor), base_url="https://processor.test")
    gw = PaymentGateway(
        base_url="https://processor.test",
        api_key="sk_test",
        webhook_secret=WEBHOOK_SECRET,
        client=http,
    )
    yield gw
    await gw.close()


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Fresh SQLite database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory, catalog, gateway) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client; every request gets its own session, as in production."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_catalog] = lambda: catalog
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def create_booking(client):
    """POST a booking and return the response body, asserting it was created."""

    async def _create(user_id: str = "user-1", **kwargs) -> dict:
        response = await client.post(
            "/api/v1/bookings/",
            json=booking_payload(**kwargs),
            headers=auth_headers(user_id),
        )
        assert response.status_code == 201, response.text
        return response.json()

    return _create


@pytest.fixture
def paid_booking(client, create_booking):
    """Create a booking and pay it by card, returning the booking reference."""

    async def _paid(user_id: str = "user-1", **kwargs) -> str:
        booking = await create_booking(user_id, **kwargs)
        response = await client.post(
            f"/api/v1/payments/{booking['reference']}",
            json=card_payment(),
            headers=auth_headers(user_id),
        )
        assert response.status_code == 200, response.text
        assert response.json()["booking_status"] == "confirmed"
        return booking["reference"]

    return _paid


@pytest.fixture
def add_booking(db_session):
    """Insert a booking row directly in a given status (for rating scenarios)."""

    async def _add(
        user_id: str,
        activity_id: str = "act-kayak",
        status: str = BookingStatus.COMPLETED,
        payment_status: str = PaymentStatus.PAID,
    ) -> Booking:
        price = calculate_price(10000, 1, tax_rate=Decimal("0.15"))
        booking = Booking(
            user_id=user_id,
            activity_id=activity_id,
            vendor_id="ven-1",
            booking_date=SLOT_DATE,
            start_time="09:00",
            end_time="11:00",
            starts_at=SLOT_STARTS_AT,
            participant_count=1,
            participant_details=[{"name": user_id}],
            contact_info={"email": "lead@example.com", "phone": "+966500000000"},
            status=status,
            payment_status=payment_status,
            **price.as_snapshot(),
        )
        db_session.add(booking)
        await db_session.commit()
        return booking

    return _add


def signed_webhook(gateway: PaymentGateway, payload: dict) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode("utf-8")
    return body, {"x-moyasar-signature": gateway.sign(body), "content-type": "application/json"}


@pytest.fixture
def send_webhook(client, gateway):
    async def _send(payload: dict) -> httpx.Response:
        body, headers = signed_webhook(gateway, payload)
        return await client.post("/api/v1/webhooks/payments", content=body, headers=headers)

    return _send
