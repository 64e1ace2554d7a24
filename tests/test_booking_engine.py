"""
Tests for the booking engine facade.

Covers waitlist enrollment limits, risk blocking, queue estimates,
availability with held tables, booking cancellation and a burst of
concurrent enrollments.
"""
from __future__ import annotations

import asyncio
from collections import Counter
from datetime import timedelta
from uuid import uuid4

import pytest

from venue_booking.config import Settings
from venue_booking.errors import LimitExceeded, NotFound, ValidationError
from venue_booking.models import Booking
from venue_booking.services.availability import single_table_slot
from venue_booking.services.booking_engine import BookingEngine, create_booking_engine, estimate_wait
from venue_booking.services.booking_gateway import BookingInfo
from venue_booking.services.limit_service import fetch_customer_limits
from venue_booking.services.risk_validator import CustomerLimitRecord
from venue_booking.services.waitlist_state import WaitlistStatus

from tests.conftest import EVENING, NOW, floor_plan_snapshots, make_preferences

TABLES = {t.id: t for t in floor_plan_snapshots()}


def table_slot(table_id, time_slot="20:00"):
    return single_table_slot(TABLES[table_id], EVENING, time_slot)


class LimitBook:
    """Limit records by customer, defaulting to a clean bronze record."""

    def __init__(self):
        self.records = {}

    def set(self, customer_id, **kwargs):
        self.records[customer_id] = CustomerLimitRecord(customer_id=customer_id, **kwargs)

    async def __call__(self, customer_id, booking_date):
        return self.records.get(customer_id) or CustomerLimitRecord(customer_id=customer_id)


@pytest.fixture
def limit_book():
    return LimitBook()


@pytest.fixture
def engine(memory_store, matching, coordinator, gateway, limit_book, clock):
    return BookingEngine(
        memory_store,
        matching,
        coordinator,
        gateway,
        limit_loader=limit_book,
        clock=clock,
    )


class TestEstimateWait:
    """Tests for the wait estimate wording."""

    @pytest.mark.parametrize("position,same_day,expected", [
        (1, True, "30-90 minutes"),
        (2, True, "30-90 minutes"),
        (3, True, "1-3 hours"),
        (5, True, "Later this evening"),
        (1, False, "Within 2 hours of your preferred time"),
        (4, False, "Same day, alternative time likely"),
        (9, False, "Alternative time or date may be needed"),
        (None, True, "Not queued"),
    ])
    def test_estimates(self, position, same_day, expected):
        preferred = EVENING if same_day else EVENING + timedelta(days=3)

        assert estimate_wait(position, preferred, EVENING) == expected


class TestEnrollment:
    """Tests for waitlist enrollment."""

    async def test_enroll(self, engine):
        customer = uuid4()

        result = await engine.enroll_waitlist(customer, make_preferences())

        assert result.entry.status == WaitlistStatus.ACTIVE
        assert result.position == 1
        assert result.estimated_wait == "30-90 minutes"
        assert result.assessment.is_valid
        assert result.limits.customer_id == customer

    async def test_loyalty_tier_from_limits(self, engine, limit_book):
        customer = uuid4()
        limit_book.set(customer, loyalty_tier="PLATINUM")

        result = await engine.enroll_waitlist(customer, make_preferences())

        assert result.entry.loyalty_tier == "PLATINUM"
        assert result.entry.priority == 60 + 150

    async def test_maximum_open_entries(self, engine):
        customer = uuid4()
        for _ in range(3):
            await engine.enroll_waitlist(customer, make_preferences())

        with pytest.raises(LimitExceeded) as exc_info:
            await engine.enroll_waitlist(customer, make_preferences())

        assert exc_info.value.message == "Maximum 3 waitlist entries per customer exceeded"
        assert exc_info.value.details == {"existing_entries": 3}

    async def test_cancelled_entries_free_a_place(self, engine):
        customer = uuid4()
        entries = [await engine.enroll_waitlist(customer, make_preferences()) for _ in range(3)]

        await engine.cancel(entries[0].entry.id)
        result = await engine.enroll_waitlist(customer, make_preferences())

        assert result.entry.status == WaitlistStatus.ACTIVE

    async def test_risk_block(self, engine, limit_book, memory_store):
        """A bronze customer at the daily booking limit cannot join."""
        customer = uuid4()
        limit_book.set(customer, bookings_count=2)

        with pytest.raises(LimitExceeded) as exc_info:
            await engine.enroll_waitlist(customer, make_preferences())

        assert exc_info.value.message == "Maximum 2 bookings per day exceeded (current: 2)"
        assert exc_info.value.assessment.risk_score == 30
        assert await memory_store.count_active_for_customer(customer) == 0

    async def test_overridable_violation_allows_enrollment(self, engine, limit_book):
        customer = uuid4()
        limit_book.set(customer, bookings_count=2, loyalty_tier="GOLD")

        result = await engine.enroll_waitlist(customer, make_preferences())

        assert not result.assessment.violations[0].is_blocking
        assert result.assessment.is_valid

    async def test_large_party_counts_two_tables(self, engine, limit_book):
        """Parties above the combination threshold are checked as needing two tables."""
        customer = uuid4()
        limit_book.set(customer, tables_reserved=[4])

        small = await engine.enroll_waitlist(customer, make_preferences(party_size=6))
        with pytest.raises(LimitExceeded) as exc_info:
            await engine.enroll_waitlist(customer, make_preferences(party_size=12))

        assert small.assessment.is_valid
        assert "requesting 2, already have 1" in exc_info.value.message

    async def test_invalid_preferences(self, engine):
        with pytest.raises(ValidationError):
            await engine.enroll_waitlist(uuid4(), make_preferences(preferred_time="late"))

    async def test_duplicate_payment_flagged(self, engine):
        """A card presented by a second customer adds a duplicate risk warning."""
        first = await engine.enroll_waitlist(uuid4(), make_preferences(), payment_method_id="pm_1")
        second = await engine.enroll_waitlist(uuid4(), make_preferences(), payment_method_id="pm_1")

        assert first.assessment.risk_score == 0
        assert second.assessment.risk_score == 20
        assert second.assessment.violations[0].type == "duplicate_risk"

    async def test_concurrent_enrollments_respect_cap(self, engine, memory_store):
        """1200 concurrent requests from 300 customers leave exactly 3 entries each."""
        customers = [uuid4() for _ in range(300)]

        results = await asyncio.gather(
            *(
                engine.enroll_waitlist(customer, make_preferences(party_size=2 + i % 5))
                for customer in customers
                for i in range(4)
            ),
            return_exceptions=True,
        )

        accepted = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, Exception)]
        assert len(accepted) == 900
        assert len(rejected) == 300
        assert all(isinstance(r, LimitExceeded) for r in rejected)
        per_customer = Counter(e.customer_id for e in await memory_store.all_entries())
        assert set(per_customer.values()) == {3}

    async def test_customer_locks_released(self, engine, limit_book):
        """No per-customer lock outlives the enrollments that used it."""
        blocked = uuid4()
        limit_book.set(blocked, bookings_count=2)

        await asyncio.gather(
            *(engine.enroll_waitlist(uuid4(), make_preferences()) for _ in range(50)),
            engine.enroll_waitlist(blocked, make_preferences()),
            return_exceptions=True,
        )

        assert engine._customer_locks == {}


class TestEngineOperations:
    """Tests for the remaining engine operations."""

    async def test_get_entry(self, engine):
        enrolled = await engine.enroll_waitlist(uuid4(), make_preferences())

        entry, position = await engine.get_entry(enrolled.entry.id)

        assert entry.id == enrolled.entry.id
        assert position == 1
        with pytest.raises(NotFound):
            await engine.get_entry(uuid4())

    async def test_cancel_booking_offers_tables(self, engine, gateway, notifier):
        """Cancelling a confirmed booking offers its table to the waitlist."""
        booking = await gateway.add(BookingInfo(
            id=uuid4(),
            reference="BRL-2026-00077",
            customer_id=uuid4(),
            booking_date=EVENING,
            time_slot="20:00",
            table_ids=(2,),
            party_size=4,
            status="confirmed",
            waitlist_entry_id=None,
            created_at=NOW,
        ))
        waiting = await engine.enroll_waitlist(uuid4(), make_preferences())

        result = await engine.cancel_booking(booking.id)

        assert result.booking.status == "cancelled"
        assert result.match.entry.id == waiting.entry.id
        assert result.match.entry.offered_time_slot == "20:00"
        assert [e.id for e in notifier.enqueued] == [waiting.entry.id]

    async def test_full_cycle(self, engine, clock):
        """Freed slot, offer, conversion."""
        enrolled = await engine.enroll_waitlist(uuid4(), make_preferences(party_size=3))
        match = await engine.on_slot_freed(table_slot(1))
        assert match.entry.id == enrolled.entry.id

        clock.advance(minutes=5)
        booking = await engine.convert(enrolled.entry.id)

        assert booking.table_ids == (1,)
        assert (await engine.sweep_expired()).processed == 0

    def test_limit_information(self, engine):
        info = engine.limit_information()

        assert info["limits"]["max_bookings_per_day"] == 2
        assert info["limits"]["vip_bonuses"] == {"extra_bookings": 1, "extra_tables": 1}
        assert info["risk_thresholds"] == {"low": 25, "medium": 50, "high": 75}


class TestSqlEngine:
    """Tests for the engine assembled from settings over the database."""

    @pytest.fixture
    def sql_engine(self, session_factory, clock):
        return create_booking_engine(Settings(), session_factory, clock=clock)

    async def test_fetch_customer_limits(self, db_session, sample_tables, sample_customers):
        alice = sample_customers["alice"]
        booking = Booking(
            id=uuid4(),
            reference="BRL-2026-00100",
            customer_id=alice.id,
            booking_date=EVENING,
            table_ids=[1, 3],
            party_size=6,
            status="confirmed",
        )
        db_session.add(booking)
        await db_session.commit()

        limits = await fetch_customer_limits(db_session, alice.id, EVENING)
        excluded = await fetch_customer_limits(db_session, alice.id, EVENING, exclude_booking_id=booking.id)

        assert limits.bookings_count == 1
        assert limits.tables_reserved == [1, 3]
        assert limits.loyalty_tier == "GOLD"
        assert excluded.bookings_count == 0
        with pytest.raises(NotFound):
            await fetch_customer_limits(db_session, uuid4(), EVENING)

    async def test_enroll_and_offer(self, sql_engine, sample_tables, sample_customers):
        carol = sample_customers["carol"]

        result = await sql_engine.enroll_waitlist(
            carol.id, make_preferences(notification_channels=("email", "push"))
        )
        match = await sql_engine.on_slot_freed(table_slot(2))

        assert result.limits.is_vip_customer
        assert result.entry.loyalty_tier == "PLATINUM"
        assert match.entry.id == result.entry.id
        assert sql_engine.dispatcher.backlog == 1

    async def test_flagged_customer_warned(self, sql_engine, sample_tables, sample_customers):
        dave = sample_customers["dave"]

        with pytest.raises(NotFound):
            await sql_engine.enroll_waitlist(uuid4(), make_preferences())

        result = await sql_engine.enroll_waitlist(dave.id, make_preferences())

        # Four earlier attempts and one flag: warnings only
        assert result.assessment.risk_score == 4 * 15 + 10
        assert result.assessment.is_valid

    async def test_availability_hides_held_tables(self, sql_engine, sample_tables):
        await sql_engine.store.acquire_slot(EVENING, [1])

        slots = await sql_engine.resolve_availability(EVENING, party_size=4)

        assert [s.table_ids for s in slots] == [(3,), (5,), (2,), (6,)]

    async def test_availability_reads_holds_with_tables(self, sql_engine, sample_tables, monkeypatch):
        """Holds come from the same database snapshot as tables and bookings."""
        await sql_engine.store.acquire_slot(EVENING, [1])

        async def separate_read(slot_date):
            raise AssertionError("holds read outside the snapshot")

        monkeypatch.setattr(sql_engine.store, "held_tables", separate_read)

        slots = await sql_engine.resolve_availability(EVENING, party_size=4)

        assert (1,) not in [s.table_ids for s in slots]
