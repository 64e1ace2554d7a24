"""
Tests for the REST API.

The application runs in-process through httpx's ASGI transport against the
test database; the engine is attached to app state the way startup does it.
"""
from __future__ import annotations

from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from venue_booking.config import Settings
from venue_booking.main import app
from venue_booking.models import Booking
from venue_booking.services.availability import single_table_slot
from venue_booking.services.booking_engine import create_booking_engine

from tests.conftest import EVENING


@pytest.fixture
def booking_engine(session_factory, clock):
    engine = create_booking_engine(Settings(), session_factory, clock=clock)
    app.state.booking_engine = engine
    return engine


@pytest_asyncio.fixture
async def client(booking_engine):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


def enrollment(customer_id, **kwargs):
    body = {
        "customer_id": str(customer_id),
        "preferred_date": EVENING.isoformat(),
        "preferred_time": "20:00",
        "party_size": 4,
    }
    body.update(kwargs)
    return body


class TestHealth:
    async def test_healthz(self, client):
        response = await client.get("/healthz")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "venue-booking-engine"}


class TestAvailabilityApi:
    """Tests for GET /api/v1/availability."""

    async def test_single_tables(self, client, sample_tables):
        response = await client.get(
            "/api/v1/availability",
            params={"date": EVENING.isoformat(), "party_size": 4, "floor": "upstairs", "time": "20:00"},
        )

        assert response.status_code == 200
        data = response.json()
        assert [s["table_ids"] for s in data["slots"]] == [[1], [3], [2]]
        assert data["slots"][0]["time_slot"] == "20:00"
        assert data["waitlist_available"] is False

    async def test_combined_pair(self, client, sample_tables):
        response = await client.get(
            "/api/v1/availability", params={"date": EVENING.isoformat(), "party_size": 14}
        )

        slots = response.json()["slots"]
        assert slots[0]["table_ids"] == [7, 8]
        assert slots[0]["is_combined"] is True

    async def test_nothing_free_offers_waitlist(self, client, db_session, sample_tables, sample_customers):
        db_session.add(Booking(
            id=uuid4(),
            reference="BRL-2026-00500",
            customer_id=sample_customers["bob"].id,
            booking_date=EVENING,
            table_ids=[6, 8],
            party_size=9,
            status="confirmed",
        ))
        await db_session.commit()

        response = await client.get(
            "/api/v1/availability", params={"date": EVENING.isoformat(), "party_size": 9}
        )

        assert response.json()["slots"] == []
        assert response.json()["waitlist_available"] is True

    async def test_invalid_party_size(self, client, sample_tables):
        response = await client.get(
            "/api/v1/availability", params={"date": EVENING.isoformat(), "party_size": 0}
        )

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"


class TestLimitsApi:
    """Tests for limit validation endpoints."""

    async def test_validate_limits(self, client, sample_customers):
        response = await client.post("/api/v1/booking/validate-limits", json={
            "customer_id": str(sample_customers["dave"].id),
            "booking_date": EVENING.isoformat(),
            "requested_tables": 1,
            "requested_guests": 4,
        })

        assert response.status_code == 200
        data = response.json()
        assert data["is_valid"] is True
        assert data["risk_score"] == 70
        assert data["risk_level"] == "high"
        assert data["customer_limits"]["risk_flags"] == ["chargeback"]

    async def test_unknown_customer(self, client):
        response = await client.post("/api/v1/booking/validate-limits", json={
            "customer_id": str(uuid4()),
            "booking_date": EVENING.isoformat(),
            "requested_tables": 1,
            "requested_guests": 4,
        })

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    async def test_requested_tables_bounds(self, client, sample_customers):
        response = await client.post("/api/v1/booking/validate-limits", json={
            "customer_id": str(sample_customers["bob"].id),
            "booking_date": EVENING.isoformat(),
            "requested_tables": 5,
            "requested_guests": 4,
        })

        assert response.status_code == 422

    async def test_limit_information(self, client):
        response = await client.get("/api/v1/booking/limits")

        assert response.status_code == 200
        assert response.json()["limits"]["max_party_size"] == 20


class TestWaitlistApi:
    """Tests for the waitlist lifecycle over HTTP."""

    async def test_enroll_offer_convert(self, client, booking_engine, sample_tables, sample_customers, clock):
        alice = sample_customers["alice"]

        response = await client.post("/api/v1/waitlist", json=enrollment(alice.id))

        assert response.status_code == 201
        data = response.json()
        entry_id = data["entry"]["id"]
        assert data["position"] == 1
        assert data["estimated_wait"] == "30-90 minutes"
        assert data["risk"]["is_valid"] is True
        assert data["entry"]["loyalty_tier"] == "GOLD"

        booking = Booking(
            id=uuid4(),
            reference="BRL-2026-00600",
            customer_id=sample_customers["bob"].id,
            booking_date=EVENING,
            time_slot="20:00",
            table_ids=[2],
            party_size=5,
            status="confirmed",
        )
        async with booking_engine.session_factory() as session:
            session.add(booking)
            await session.commit()

        response = await client.post(f"/api/v1/bookings/{booking.id}/cancel")

        assert response.status_code == 200
        assert response.json()["freed_table_ids"] == [2]
        assert response.json()["offered_to"] == [entry_id]

        response = await client.get(f"/api/v1/waitlist/{entry_id}")
        assert response.json()["status"] == "notified"
        assert response.json()["offered_table_ids"] == [2]
        assert response.json()["position"] is None

        clock.advance(minutes=10)
        first = await client.post(f"/api/v1/waitlist/{entry_id}/convert")
        second = await client.post(f"/api/v1/waitlist/{entry_id}/convert")

        assert first.status_code == 200
        assert first.json()["table_ids"] == [2]
        assert first.json()["reference"].startswith("BRL-2026-")
        assert second.json()["id"] == first.json()["id"]

    async def test_late_conversion(self, client, booking_engine, sample_tables, sample_customers, clock):
        response = await client.post("/api/v1/waitlist", json=enrollment(sample_customers["bob"].id))
        entry_id = response.json()["entry"]["id"]
        tables = await booking_engine.gateway.table_catalog.get_tables([2])
        await booking_engine.on_slot_freed(single_table_slot(tables[0], EVENING, "20:00"))
        clock.advance(minutes=30)

        response = await client.post(f"/api/v1/waitlist/{entry_id}/convert")

        assert response.status_code == 410
        assert response.json()["error"] == "reservation_expired"

    async def test_cancel(self, client, sample_customers):
        response = await client.post("/api/v1/waitlist", json=enrollment(sample_customers["bob"].id))
        entry_id = response.json()["entry"]["id"]

        response = await client.post(f"/api/v1/waitlist/{entry_id}/cancel")

        assert response.status_code == 200
        assert response.json()["entry"]["status"] == "cancelled"
        assert response.json()["reoffered_to"] is None

        response = await client.post(f"/api/v1/waitlist/{entry_id}/convert")
        assert response.status_code == 409
        assert response.json()["error"] == "state_conflict"

    async def test_waitlist_cap(self, client, sample_customers):
        carol = sample_customers["carol"]
        for _ in range(3):
            assert (await client.post("/api/v1/waitlist", json=enrollment(carol.id))).status_code == 201

        response = await client.post("/api/v1/waitlist", json=enrollment(carol.id))

        assert response.status_code == 409
        assert response.json()["error"] == "limit_exceeded"
        assert response.json()["detail"] == "Maximum 3 waitlist entries per customer exceeded"

    async def test_risk_block_returns_assessment(self, client, db_session, sample_customers):
        bob = sample_customers["bob"]
        for number, table_id in ((700, 1), (701, 3)):
            db_session.add(Booking(
                id=uuid4(),
                reference=f"BRL-2026-00{number}",
                customer_id=bob.id,
                booking_date=EVENING,
                table_ids=[table_id],
                party_size=2,
                status="confirmed",
            ))
        await db_session.commit()

        response = await client.post("/api/v1/waitlist", json=enrollment(bob.id))

        assert response.status_code == 409
        body = response.json()
        assert body["detail"] == "Maximum 2 bookings per day exceeded (current: 2)"
        assert body["assessment"]["is_valid"] is False
        assert body["assessment"]["risk_score"] == 55

    @pytest.mark.parametrize("override", [
        {"preferred_time": "8pm"},
        {"party_size": 21},
        {"notification_channels": []},
        {"floor": "terrace"},
    ])
    async def test_schema_validation(self, client, override):
        response = await client.post("/api/v1/waitlist", json=enrollment(uuid4(), **override))

        assert response.status_code == 422

    async def test_unknown_entry(self, client):
        response = await client.get(f"/api/v1/waitlist/{uuid4()}")

        assert response.status_code == 404

    async def test_cancel_unknown_booking(self, client):
        response = await client.post(f"/api/v1/bookings/{uuid4()}/cancel")

        assert response.status_code == 404
