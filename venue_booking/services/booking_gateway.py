"""Booking creation and cancellation as seen by the waitlist engine."""
from __future__ import annotations

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Callable, Dict, Optional, Tuple
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from venue_booking.errors import NotFound, StateConflict, ValidationError
from venue_booking.models.booking import Booking
from venue_booking.services.availability import (
    AvailabilitySlot,
    TableCatalog,
    combined_slot,
    single_table_slot,
)
from venue_booking.services.waitlist_state import WaitlistRecord

logger = logging.getLogger(__name__)

REFERENCE_PREFIX = "BRL"
REFERENCE_ATTEMPTS = 5


def generate_reference(year: int, rng: random.Random = random) -> str:
    return f"{REFERENCE_PREFIX}-{year}-{rng.randint(0, 99999):05d}"


@dataclass(frozen=True)
class BookingInfo:
    id: UUID
    reference: str
    customer_id: UUID
    booking_date: date
    time_slot: Optional[str]
    table_ids: Tuple[int, ...]
    party_size: int
    status: str
    waitlist_entry_id: Optional[UUID]
    created_at: datetime
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, booking: Booking) -> "BookingInfo":
        return cls(
            id=booking.id,
            reference=booking.reference,
            customer_id=booking.customer_id,
            booking_date=booking.booking_date,
            time_slot=booking.time_slot,
            table_ids=tuple(booking.table_ids or ()),
            party_size=booking.party_size,
            status=booking.status,
            waitlist_entry_id=booking.waitlist_entry_id,
            created_at=booking.created_at,
            cancelled_at=booking.cancelled_at,
        )


async def slot_from_tables(
    catalog: TableCatalog,
    slot_date: date,
    table_ids: Tuple[int, ...],
    time_slot: Optional[str],
) -> AvailabilitySlot:
    tables = await catalog.get_tables(table_ids)
    if len(tables) != len(set(table_ids)):
        raise ValidationError(f"Unknown tables in {list(table_ids)}")
    if len(tables) == 1:
        return single_table_slot(tables[0], slot_date, time_slot)
    if len(tables) == 2:
        return combined_slot(tables[0], tables[1], slot_date, time_slot)
    raise ValidationError(f"Cannot build a slot from tables {list(table_ids)}")


def _check_offer(entry: WaitlistRecord) -> None:
    if not entry.offered_table_ids:
        raise ValidationError(f"Waitlist entry {entry.id} has no offered tables")


class BookingGateway(ABC):
    """Creates bookings for converted waitlist entries and frees cancelled ones."""

    def __init__(self, table_catalog: TableCatalog, clock: Optional[Callable[[], datetime]] = None):
        self.table_catalog = table_catalog
        self.clock = clock or datetime.utcnow

    @abstractmethod
    async def create_for_entry(self, entry: WaitlistRecord) -> BookingInfo:
        """Create the booking for an entry, or return the one that already exists."""
        raise NotImplementedError

    @abstractmethod
    async def get_for_entry(self, entry_id: UUID) -> Optional[BookingInfo]:
        raise NotImplementedError

    @abstractmethod
    async def get(self, booking_id: UUID) -> Optional[BookingInfo]:
        raise NotImplementedError

    @abstractmethod
    async def _mark_cancelled(self, booking_id: UUID) -> BookingInfo:
        raise NotImplementedError

    async def cancel_booking(self, booking_id: UUID) -> AvailabilitySlot:
        """Cancel a confirmed booking and return the slot it frees."""
        booking = await self._mark_cancelled(booking_id)
        logger.info("Booking %s cancelled, freeing tables %s", booking.reference, booking.table_ids)
        return await slot_from_tables(
            self.table_catalog, booking.booking_date, booking.table_ids, booking.time_slot
        )


class InMemoryBookingGateway(BookingGateway):
    def __init__(self, table_catalog: TableCatalog, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(table_catalog, clock)
        self._bookings: Dict[UUID, BookingInfo] = {}
        self._by_entry: Dict[UUID, UUID] = {}
        self._lock = asyncio.Lock()
        self._sequence = 0

    async def create_for_entry(self, entry: WaitlistRecord) -> BookingInfo:
        _check_offer(entry)
        async with self._lock:
            existing = self._by_entry.get(entry.id)
            if existing is not None:
                return self._bookings[existing]
            now = self.clock()
            self._sequence += 1
            booking = BookingInfo(
                id=entry.booking_id or uuid4(),
                reference=f"{REFERENCE_PREFIX}-{now.year}-{self._sequence:05d}",
                customer_id=entry.customer_id,
                booking_date=entry.preferences.preferred_date,
                time_slot=entry.offered_time_slot or entry.preferences.preferred_time,
                table_ids=tuple(entry.offered_table_ids),
                party_size=entry.party_size,
                status="confirmed",
                waitlist_entry_id=entry.id,
                created_at=now,
            )
            self._bookings[booking.id] = booking
            self._by_entry[entry.id] = booking.id
            return booking

    async def add(self, booking: BookingInfo) -> BookingInfo:
        async with self._lock:
            self._bookings[booking.id] = booking
            if booking.waitlist_entry_id is not None:
                self._by_entry[booking.waitlist_entry_id] = booking.id
        return booking

    async def get_for_entry(self, entry_id: UUID) -> Optional[BookingInfo]:
        async with self._lock:
            booking_id = self._by_entry.get(entry_id)
            return self._bookings.get(booking_id) if booking_id else None

    async def get(self, booking_id: UUID) -> Optional[BookingInfo]:
        async with self._lock:
            return self._bookings.get(booking_id)

    async def _mark_cancelled(self, booking_id: UUID) -> BookingInfo:
        async with self._lock:
            booking = self._bookings.get(booking_id)
            if booking is None:
                raise NotFound(f"Booking {booking_id} not found")
            if booking.status != "confirmed":
                raise StateConflict(f"Booking {booking.reference} is already {booking.status}")
            booking = replace(booking, status="cancelled", cancelled_at=self.clock())
            self._bookings[booking_id] = booking
            return booking

    async def count(self) -> int:
        async with self._lock:
            return len(self._bookings)


class SqlBookingGateway(BookingGateway):
    """Writes bookings to the bookings table; the unique entry id keeps creation idempotent."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        table_catalog: TableCatalog,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        super().__init__(table_catalog, clock)
        self._session_factory = session_factory

    async def create_for_entry(self, entry: WaitlistRecord) -> BookingInfo:
        _check_offer(entry)
        for _ in range(REFERENCE_ATTEMPTS):
            existing = await self.get_for_entry(entry.id)
            if existing is not None:
                return existing

            now = self.clock()
            async with self._session_factory() as session:
                booking = Booking(
                    id=entry.booking_id or uuid4(),
                    reference=generate_reference(now.year),
                    customer_id=entry.customer_id,
                    booking_date=entry.preferences.preferred_date,
                    time_slot=entry.offered_time_slot or entry.preferences.preferred_time,
                    table_ids=list(entry.offered_table_ids),
                    party_size=entry.party_size,
                    status="confirmed",
                    waitlist_entry_id=entry.id,
                    created_at=now,
                )
                session.add(booking)
                try:
                    await session.commit()
                except IntegrityError:
                    # Either another request booked this entry or the reference collided
                    await session.rollback()
                    continue
                await session.refresh(booking)
                logger.info("Created booking %s for waitlist entry %s", booking.reference, entry.id)
                return BookingInfo.from_model(booking)

        existing = await self.get_for_entry(entry.id)
        if existing is not None:
            return existing
        raise StateConflict(f"Could not allocate a booking reference for entry {entry.id}")

    async def get_for_entry(self, entry_id: UUID) -> Optional[BookingInfo]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Booking).where(Booking.waitlist_entry_id == entry_id)
            )
            booking = result.scalar_one_or_none()
            return BookingInfo.from_model(booking) if booking else None

    async def get(self, booking_id: UUID) -> Optional[BookingInfo]:
        async with self._session_factory() as session:
            booking = await session.get(Booking, booking_id)
            return BookingInfo.from_model(booking) if booking else None

    async def _mark_cancelled(self, booking_id: UUID) -> BookingInfo:
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == "confirmed")
            .values(status="cancelled", cancelled_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                booking = await session.get(Booking, booking_id)
                if booking is None:
                    raise NotFound(f"Booking {booking_id} not found")
                raise StateConflict(f"Booking {booking.reference} is already {booking.status}")
            await session.commit()
            booking = await session.get(Booking, booking_id)
            return BookingInfo.from_model(booking)
