"""
Pytest configuration and fixtures.

This module provides fixtures that simulate a real evening at the venue:
- An eight-table floor plan over two floors, with combinable pairs downstairs
- Customers across loyalty tiers with different contact consent
- A controllable clock so reservation windows can be expired on demand
- In-memory and SQL-backed waitlist stores
"""
from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import AsyncGenerator, Dict, List, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from venue_booking.database import Base
from venue_booking.models import Customer, Table
from venue_booking.services.availability import StaticTableCatalog, TableSnapshot
from venue_booking.services.booking_gateway import InMemoryBookingGateway
from venue_booking.services.conversion import ConversionCoordinator
from venue_booking.services.matching import MatchingEngine
from venue_booking.services.notifications import NotificationMessage, NotificationProvider
from venue_booking.services.waitlist_state import WaitlistPreferences
from venue_booking.services.waitlist_store import InMemoryWaitlistStore, SqlWaitlistStore

EVENING = date(2026, 11, 14)
NOW = datetime(2026, 11, 14, 17, 0, 0)

# Eight tables over two floors; 5+6 and 7+8 can be pushed together
FLOOR_PLAN = [
    {"id": 1, "capacity_min": 2, "capacity_max": 4, "floor": "upstairs"},
    {"id": 2, "capacity_min": 4, "capacity_max": 6, "floor": "upstairs"},
    {"id": 3, "capacity_min": 2, "capacity_max": 4, "floor": "upstairs"},
    {"id": 4, "capacity_min": 6, "capacity_max": 8, "floor": "upstairs"},
    {"id": 5, "capacity_min": 2, "capacity_max": 4, "floor": "downstairs", "combinable_with": [6]},
    {"id": 6, "capacity_min": 4, "capacity_max": 6, "floor": "downstairs", "combinable_with": [5]},
    {"id": 7, "capacity_min": 6, "capacity_max": 8, "floor": "downstairs", "combinable_with": [8]},
    {"id": 8, "capacity_min": 8, "capacity_max": 10, "floor": "downstairs", "combinable_with": [7]},
]


class FixedClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Stands in for the dispatcher where only the hand-off matters."""

    def __init__(self):
        self.enqueued = []

    def enqueue(self, entry, channels=None) -> None:
        self.enqueued.append(entry)


class RecordingProvider(NotificationProvider):
    """Provider that records sends and can be told to fail the first N calls."""

    def __init__(self, failures: int = 0, error: Optional[Exception] = None):
        self.failures = failures
        self.error = error
        self.calls = 0
        self.sent: List[NotificationMessage] = []

    async def send(self, message: NotificationMessage) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        self.sent.append(message)


def make_preferences(
    party_size: int = 4,
    preferred_time: str = "20:00",
    preferred_date: date = EVENING,
    **kwargs,
) -> WaitlistPreferences:
    return WaitlistPreferences(
        preferred_date=preferred_date,
        preferred_time=preferred_time,
        party_size=party_size,
        **kwargs,
    )


def floor_plan_snapshots() -> List[TableSnapshot]:
    return [
        TableSnapshot(
            id=t["id"],
            capacity_min=t["capacity_min"],
            capacity_max=t["capacity_max"],
            floor=t["floor"],
            combinable_with=frozenset(t.get("combinable_with", ())),
        )
        for t in FLOOR_PLAN
    ]


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def venue_tables() -> List[TableSnapshot]:
    return floor_plan_snapshots()


@pytest.fixture
def table_catalog(venue_tables) -> StaticTableCatalog:
    return StaticTableCatalog(venue_tables)


@pytest.fixture
def memory_store(clock) -> InMemoryWaitlistStore:
    return InMemoryWaitlistStore(clock=clock)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def matching(memory_store, notifier, table_catalog, clock) -> MatchingEngine:
    return MatchingEngine(
        memory_store,
        notifier=notifier,
        table_catalog=table_catalog,
        reservation_window_minutes=30,
        clock=clock,
    )


@pytest.fixture
def gateway(table_catalog, clock) -> InMemoryBookingGateway:
    return InMemoryBookingGateway(table_catalog, clock=clock)


@pytest.fixture
def coordinator(memory_store, gateway, matching, clock) -> ConversionCoordinator:
    return ConversionCoordinator(memory_store, gateway, matching, clock=clock)


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """Create a test database engine on a throwaway SQLite file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'venue.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def sql_store(session_factory, clock) -> SqlWaitlistStore:
    return SqlWaitlistStore(session_factory, clock=clock)


@pytest_asyncio.fixture
async def sample_tables(db_session: AsyncSession) -> List[Table]:
    """Persist the eight-table floor plan."""
    tables = [
        Table(
            id=t["id"],
            capacity_min=t["capacity_min"],
            capacity_max=t["capacity_max"],
            floor=t["floor"],
            combinable_with=t.get("combinable_with", []),
            status="available",
            is_active=True,
        )
        for t in FLOOR_PLAN
    ]
    db_session.add_all(tables)
    await db_session.commit()
    return tables


@pytest_asyncio.fixture
async def sample_customers(db_session: AsyncSession) -> Dict[str, Customer]:
    """
    Customers with different standing:
    - alice: GOLD, consents to SMS
    - bob: BRONZE, email only
    - carol: PLATINUM VIP with push consent
    - dave: flagged for repeated attempts to exceed limits
    """
    customers = {
        "alice": Customer(
            id=uuid4(), name="Alice", email="alice@example.com", phone="+447700900001",
            loyalty_tier="GOLD", consent_sms=True,
        ),
        "bob": Customer(
            id=uuid4(), name="Bob", email="bob@example.com", loyalty_tier="BRONZE",
        ),
        "carol": Customer(
            id=uuid4(), name="Carol", email="carol@example.com", push_token="push-carol",
            loyalty_tier="PLATINUM", is_vip=True, consent_push=True,
        ),
        "dave": Customer(
            id=uuid4(), name="Dave", email="dave@example.com", loyalty_tier="BRONZE",
            attempted_excess_bookings=4, risk_flags=["chargeback"],
        ),
    }
    db_session.add_all(customers.values())
    await db_session.commit()
    return customers
