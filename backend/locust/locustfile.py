"""
Locust Load Test Suite

The engine trusts tokens issued by the identity service, so users here mint
their own with the shared SECRET_KEY. Activities come from the catalog
fixture the server was started with (CATALOG_FIXTURE_PATH).

Run scenarios:
  locust -f locustfile.py --tags concurrency  # Test overbooking of one slot
  locust -f locustfile.py --tags throughput   # Test community rating cache
  locust -f locustfile.py --tags edge         # Test bad input
  locust -f locustfile.py                     # All tests

Environment:
  SECRET_KEY          same value the server uses
  LOAD_ACTIVITY_ID    a recurring activity in the fixture (default: act-load)
  LOAD_SLOT_DATE      YYYY-MM-DD the contended slot falls on (default: +30 days)
  LOAD_SLOT_START / LOAD_SLOT_END   slot window (default: 09:00 / 11:00)
"""

import os
import random
import uuid
from datetime import date, datetime, timedelta, timezone

from jose import jwt
from locust import HttpUser, between, events, tag, task

SECRET_KEY = os.getenv("SECRET_KEY", "super-secret-key-change-in-production")
ACTIVITY_ID = os.getenv("LOAD_ACTIVITY_ID", "act-load")
SLOT_DATE = os.getenv("LOAD_SLOT_DATE", (date.today() + timedelta(days=30)).isoformat())
SLOT_START = os.getenv("LOAD_SLOT_START", "09:00")
SLOT_END = os.getenv("LOAD_SLOT_END", "11:00")

# Shared state
USER_IDS = []


def mint_token(user_id: str, role: str = "user") -> str:
    expire = datetime.now(timezone.utc) + timedelta(hours=2)
    return jwt.encode({"sub": user_id, "role": role, "exp": expire}, SECRET_KEY, algorithm="HS256")


def booking_payload(participants: int = 1) -> dict:
    return {
        "activity_id": ACTIVITY_ID,
        "booking_date": SLOT_DATE,
        "start_time": SLOT_START,
        "end_time": SLOT_END,
        "participants": [
            {"name": f"Guest {i}", "email": f"guest{i}@example.com"} for i in range(participants)
        ],
        "contact_info": {"email": "load@example.com", "phone": "+966500000000"},
    }


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    print("\n" + "=" * 60)
    print(f"Contended slot: {ACTIVITY_ID} {SLOT_DATE} {SLOT_START}-{SLOT_END}")
    print("=" * 60)


class AuthenticatedUser(HttpUser):
    abstract = True

    def on_start(self):
        self.user_id = f"load-{uuid.uuid4().hex[:12]}"
        USER_IDS.append(self.user_id)
        self.headers = {"Authorization": f"Bearer {mint_token(self.user_id)}"}


class ConcurrencyUser(AuthenticatedUser):
    """
    TEST 1: Concurrency - many users, one slot

    Run: locust -f locustfile.py --tags concurrency -u 100 -r 50 --run-time 30s

    After test, verify:
      SELECT reserved, capacity FROM slot_inventory WHERE activity_id = 'act-load';
      SELECT SUM(participant_count) FROM bookings
        WHERE activity_id = 'act-load' AND status IN ('pending', 'confirmed', 'in_progress');
    Both sums must match and never exceed capacity.
    """
    wait_time = between(0, 0.1)

    @tag("concurrency")
    @task
    def book_contended_slot(self):
        with self.client.post(
            "/api/v1/bookings/",
            json=booking_payload(random.randint(1, 2)),
            headers=self.headers,
            catch_response=True,
        ) as resp:
            if resp.status_code == 201:
                resp.success()
            elif resp.status_code == 409:
                resp.success()  # Expected: SlotFull or ConcurrentModification
            else:
                resp.failure(f"Unexpected: {resp.status_code}")


class ThroughputUser(AuthenticatedUser):
    """
    TEST 2: Throughput - Cache effectiveness

    Run twice:
      1. With Redis: locust -f locustfile.py --tags throughput -u 100 -r 20 --run-time 60s
      2. Without Redis: REDIS_ENABLED=false on the server, run again

    Compare avg response time, requests/sec, P95/P99 latency.
    """
    wait_time = between(0.1, 0.5)

    @tag("throughput", "read")
    @task(10)
    def community_rating_cached(self):
        user_id = random.choice(USER_IDS) if USER_IDS else self.user_id
        self.client.get(
            f"/api/v1/ratings/community/{user_id}",
            name="/api/v1/ratings/community/{user_id} [cached]",
        )

    @tag("throughput", "read")
    @task(3)
    def list_own_bookings(self):
        self.client.get("/api/v1/bookings/?page=1&page_size=20", headers=self.headers, name="/api/v1/bookings/")

    @tag("throughput")
    @task(1)
    def health_check(self):
        self.client.get("/health")


class EdgeCaseUser(AuthenticatedUser):
    """
    TEST 3: Edge cases - Bad input handling

    Run: locust -f locustfile.py --tags edge -u 20 -r 5 --run-time 30s

    System should NOT crash, return proper error codes.
    """
    wait_time = between(0.5, 1.5)

    def _expect(self, resp, codes):
        if resp.status_code in codes:
            resp.success()
        else:
            resp.failure(f"Expected {codes}, got {resp.status_code}")

    @tag("edge")
    @task
    def unknown_activity(self):
        payload = booking_payload()
        payload["activity_id"] = "does-not-exist"
        with self.client.post("/api/v1/bookings/", json=payload, headers=self.headers, catch_response=True) as resp:
            self._expect(resp, [404])

    @tag("edge")
    @task
    def past_date(self):
        payload = booking_payload()
        payload["booking_date"] = (date.today() - timedelta(days=3)).isoformat()
        with self.client.post("/api/v1/bookings/", json=payload, headers=self.headers, catch_response=True) as resp:
            self._expect(resp, [400])

    @tag("edge")
    @task
    def no_participants(self):
        payload = booking_payload()
        payload["participants"] = []
        with self.client.post("/api/v1/bookings/", json=payload, headers=self.headers, catch_response=True) as resp:
            self._expect(resp, [422])

    @tag("edge")
    @task
    def huge_party(self):
        with self.client.post(
            "/api/v1/bookings/", json=booking_payload(500), headers=self.headers, catch_response=True
        ) as resp:
            self._expect(resp, [400, 409])

    @tag("edge")
    @task
    def malformed_json(self):
        with self.client.post(
            "/api/v1/bookings/", data="not json at all", headers=self.headers, catch_response=True
        ) as resp:
            self._expect(resp, [400, 422])

    @tag("edge")
    @task
    def missing_auth(self):
        with self.client.post("/api/v1/bookings/", json=booking_payload(), catch_response=True) as resp:
            self._expect(resp, [401, 403])

    @tag("edge")
    @task
    def unsigned_webhook(self):
        with self.client.post(
            "/api/v1/webhooks/payments",
            json={"id": "evt_forged", "type": "payment_paid", "data": {"id": "pay_x", "status": "paid"}},
            catch_response=True,
        ) as resp:
            self._expect(resp, [400])


class RealisticUser(AuthenticatedUser):
    """
    TEST 4: Realistic mixed workload

    Run: locust -f locustfile.py -u 200 -r 20 --run-time 120s
    """
    wait_time = between(1, 3)

    def on_start(self):
        super().on_start()
        self.references = []

    @task(30)
    def list_bookings(self):
        self.client.get("/api/v1/bookings/", headers=self.headers, name="/api/v1/bookings/")

    @task(20)
    def view_booking(self):
        if self.references:
            self.client.get(
                f"/api/v1/bookings/{random.choice(self.references)}",
                headers=self.headers,
                name="/api/v1/bookings/{reference}",
            )

    @task(10)
    def book(self):
        resp = self.client.post("/api/v1/bookings/", json=booking_payload(random.randint(1, 3)), headers=self.headers)
        if resp.status_code == 201:
            self.references.append(resp.json()["reference"])

    @task(3)
    def cancel(self):
        if self.references:
            reference = self.references.pop()
            self.client.post(
                f"/api/v1/bookings/{reference}/cancel",
                json={"reason": "plans changed"},
                headers=self.headers,
                name="/api/v1/bookings/{reference}/cancel",
            )
