"""
Waitlist storage with conditional status transitions.

Every status change goes through ``update_status(id, from, to)``, which only
succeeds when the stored status still equals ``from``. Losing that race
raises StateConflict and leaves the entry untouched.

Slot holds keep freed tables reserved for an outstanding offer. A hold is
taken for all tables of a slot or for none.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple
from uuid import UUID, uuid4

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from venue_booking.errors import NotFound, StateConflict, ValidationError
from venue_booking.models.waitlist import SlotHold, WaitlistEntry
from venue_booking.services.priority import compute_priority, flexibility_rank
from venue_booking.services.waitlist_state import (
    OPEN_STATUSES,
    WaitlistPreferences,
    WaitlistRecord,
    WaitlistStatus,
    check_transition,
    queue_order_key,
)

logger = logging.getLogger(__name__)

# Fields a transition may change alongside the status
MUTABLE_FIELDS = frozenset({
    "notified_at",
    "reservation_expires_at",
    "offered_table_ids",
    "offered_time_slot",
    "priority",
    "requeue_count",
    "booking_id",
    "converted_at",
    "cancelled_at",
})


class WaitlistStore(ABC):
    """Owner of waitlist entries and slot holds."""

    # True when holds live in slot_holds and so appear in availability snapshots
    holds_in_database = False

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or datetime.utcnow

    async def enroll(
        self,
        customer_id: UUID,
        preferences: WaitlistPreferences,
        *,
        loyalty_tier: str = "BRONZE",
        rank: Optional[float] = None,
    ) -> WaitlistRecord:
        """Create an ACTIVE entry with its priority computed for now."""
        preferences.validate()
        now = self.clock()
        entry_rank = flexibility_rank(preferences) if rank is None else float(rank)
        record = WaitlistRecord(
            id=uuid4(),
            customer_id=customer_id,
            preferences=preferences,
            loyalty_tier=loyalty_tier,
            rank=entry_rank,
            priority=compute_priority(entry_rank, loyalty_tier, now, now),
            status=WaitlistStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )
        await self._insert(record)
        logger.info(
            "Waitlist entry %s enrolled for %s (party of %s, priority %.1f)",
            record.id,
            preferences.preferred_date,
            preferences.party_size,
            record.priority,
        )
        return record

    def _prepare_changes(
        self,
        from_status: WaitlistStatus,
        to_status: WaitlistStatus,
        changes: Dict[str, Any],
    ) -> Dict[str, Any]:
        check_transition(from_status, to_status)
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot change fields: {', '.join(sorted(unknown))}")

        prepared = dict(changes)
        if to_status == WaitlistStatus.NOTIFIED:
            if prepared.get("reservation_expires_at") is None:
                raise ValidationError("An offer needs reservation_expires_at")
        else:
            # The reservation window only exists while an offer is outstanding
            prepared["reservation_expires_at"] = None
        if "offered_table_ids" in prepared:
            prepared["offered_table_ids"] = tuple(prepared["offered_table_ids"] or ())
        return prepared

    @abstractmethod
    async def _insert(self, record: WaitlistRecord) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get(self, entry_id: UUID) -> Optional[WaitlistRecord]:
        raise NotImplementedError

    @abstractmethod
    async def list_active_for_slot(
        self,
        slot_date: date,
        party_size: int,
        floor: Optional[str] = None,
    ) -> List[WaitlistRecord]:
        """ACTIVE entries for the date whose party fits ``party_size`` seats, in queue order."""
        raise NotImplementedError

    @abstractmethod
    async def update_status(
        self,
        entry_id: UUID,
        from_status: WaitlistStatus,
        to_status: WaitlistStatus,
        *,
        expires_after: Optional[datetime] = None,
        expired_by: Optional[datetime] = None,
        **changes: Any,
    ) -> WaitlistRecord:
        """
        Conditionally move an entry from ``from_status`` to ``to_status``.

        ``expires_after`` additionally requires the reservation window to end
        after that instant, ``expired_by`` requires it to have ended by then.
        """
        raise NotImplementedError

    @abstractmethod
    async def list_expired_offers(self, now: datetime) -> List[WaitlistRecord]:
        raise NotImplementedError

    @abstractmethod
    async def count_active_for_customer(self, customer_id: UUID) -> int:
        raise NotImplementedError

    @abstractmethod
    async def acquire_slot(
        self,
        slot_date: date,
        table_ids: Sequence[int],
        entry_id: Optional[UUID] = None,
    ) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def attach_hold(self, slot_date: date, table_ids: Sequence[int], entry_id: UUID) -> None:
        raise NotImplementedError

    @abstractmethod
    async def release_slot(self, slot_date: date, table_ids: Sequence[int]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def held_tables(self, slot_date: date) -> Set[int]:
        raise NotImplementedError

    async def position(self, entry_id: UUID) -> Optional[int]:
        """1-based queue position among ACTIVE entries of the same date."""
        record = await self.get(entry_id)
        if record is None:
            raise NotFound(f"Waitlist entry {entry_id} not found")
        if record.status != WaitlistStatus.ACTIVE:
            return None
        queue = await self.list_active_for_slot(
            record.preferences.preferred_date, party_size=10_000
        )
        for index, queued in enumerate(queue, start=1):
            if queued.id == entry_id:
                return index
        return None


def _floor_matches(record: WaitlistRecord, floor: Optional[str]) -> bool:
    return floor is None or record.preferences.floor in (None, floor)


class InMemoryWaitlistStore(WaitlistStore):
    """Lock-protected store for single-process deployments and tests."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(clock)
        self._entries: Dict[UUID, WaitlistRecord] = {}
        self._holds: Dict[Tuple[date, int], Optional[UUID]] = {}
        self._lock = asyncio.Lock()

    async def _insert(self, record: WaitlistRecord) -> None:
        async with self._lock:
            self._entries[record.id] = record

    async def get(self, entry_id: UUID) -> Optional[WaitlistRecord]:
        async with self._lock:
            return self._entries.get(entry_id)

    async def list_active_for_slot(
        self,
        slot_date: date,
        party_size: int,
        floor: Optional[str] = None,
    ) -> List[WaitlistRecord]:
        async with self._lock:
            matches = [
                r for r in self._entries.values()
                if r.status == WaitlistStatus.ACTIVE
                and r.preferences.preferred_date == slot_date
                and r.party_size <= party_size
                and _floor_matches(r, floor)
            ]
        return sorted(matches, key=queue_order_key)

    async def update_status(
        self,
        entry_id: UUID,
        from_status: WaitlistStatus,
        to_status: WaitlistStatus,
        *,
        expires_after: Optional[datetime] = None,
        expired_by: Optional[datetime] = None,
        **changes: Any,
    ) -> WaitlistRecord:
        prepared = self._prepare_changes(from_status, to_status, changes)
        async with self._lock:
            record = self._entries.get(entry_id)
            if record is None:
                raise NotFound(f"Waitlist entry {entry_id} not found")
            if record.status != from_status:
                raise StateConflict(
                    f"Waitlist entry {entry_id} is {record.status.value}, expected {from_status.value}",
                    details={"current": record.status.value, "expected": from_status.value},
                )
            expires_at = record.reservation_expires_at
            if expires_after is not None and (expires_at is None or expires_at <= expires_after):
                raise StateConflict(
                    f"Reservation window for {entry_id} has closed",
                    details={"reason": "window_closed"},
                )
            if expired_by is not None and (expires_at is None or expires_at > expired_by):
                raise StateConflict(
                    f"Reservation window for {entry_id} is still open",
                    details={"reason": "window_open"},
                )
            updated = replace(
                record,
                status=to_status,
                updated_at=self.clock(),
                **prepared,
            )
            self._entries[entry_id] = updated
            return updated

    async def list_expired_offers(self, now: datetime) -> List[WaitlistRecord]:
        async with self._lock:
            return [
                r for r in self._entries.values()
                if r.status == WaitlistStatus.NOTIFIED
                and r.reservation_expires_at is not None
                and r.reservation_expires_at <= now
            ]

    async def count_active_for_customer(self, customer_id: UUID) -> int:
        async with self._lock:
            return sum(
                1 for r in self._entries.values()
                if r.customer_id == customer_id and r.status in OPEN_STATUSES
            )

    async def acquire_slot(
        self,
        slot_date: date,
        table_ids: Sequence[int],
        entry_id: Optional[UUID] = None,
    ) -> bool:
        keys = [(slot_date, table_id) for table_id in table_ids]
        async with self._lock:
            if any(key in self._holds for key in keys):
                return False
            for key in keys:
                self._holds[key] = entry_id
            return True

    async def attach_hold(self, slot_date: date, table_ids: Sequence[int], entry_id: UUID) -> None:
        async with self._lock:
            for table_id in table_ids:
                if (slot_date, table_id) in self._holds:
                    self._holds[(slot_date, table_id)] = entry_id

    async def release_slot(self, slot_date: date, table_ids: Sequence[int]) -> None:
        async with self._lock:
            for table_id in table_ids:
                self._holds.pop((slot_date, table_id), None)

    async def held_tables(self, slot_date: date) -> Set[int]:
        async with self._lock:
            return {table_id for (held_date, table_id) in self._holds if held_date == slot_date}

    async def all_entries(self) -> List[WaitlistRecord]:
        async with self._lock:
            return list(self._entries.values())


def _to_record(entry: WaitlistEntry) -> WaitlistRecord:
    return WaitlistRecord(
        id=entry.id,
        customer_id=entry.customer_id,
        preferences=WaitlistPreferences(
            preferred_date=entry.preferred_date,
            preferred_time=entry.preferred_time,
            party_size=entry.party_size,
            floor=entry.floor,
            alternative_times=tuple(entry.alternative_times or ()),
            accepts_combination=bool(entry.accepts_combination),
            special_occasion=entry.special_occasion,
            notification_channels=tuple(entry.notification_channels or ()),
        ),
        loyalty_tier=entry.loyalty_tier,
        rank=entry.rank,
        priority=entry.priority,
        status=WaitlistStatus(entry.status),
        created_at=entry.created_at,
        updated_at=entry.updated_at,
        notified_at=entry.notified_at,
        reservation_expires_at=entry.reservation_expires_at,
        offered_table_ids=tuple(entry.offered_table_ids or ()),
        offered_time_slot=entry.offered_time_slot,
        requeue_count=entry.requeue_count or 0,
        booking_id=entry.booking_id,
        converted_at=entry.converted_at,
        cancelled_at=entry.cancelled_at,
    )


class SqlWaitlistStore(WaitlistStore):
    """Store backed by the relational database; each call runs in its own session."""

    holds_in_database = True

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Optional[Callable[[], datetime]] = None,
    ):
        super().__init__(clock)
        self._session_factory = session_factory

    async def _insert(self, record: WaitlistRecord) -> None:
        prefs = record.preferences
        async with self._session_factory() as session:
            session.add(WaitlistEntry(
                id=record.id,
                customer_id=record.customer_id,
                preferred_date=prefs.preferred_date,
                preferred_time=prefs.preferred_time,
                party_size=prefs.party_size,
                floor=prefs.floor,
                alternative_times=list(prefs.alternative_times),
                accepts_combination=prefs.accepts_combination,
                special_occasion=prefs.special_occasion,
                notification_channels=list(prefs.notification_channels),
                loyalty_tier=record.loyalty_tier,
                rank=record.rank,
                priority=record.priority,
                status=record.status.value,
                created_at=record.created_at,
                updated_at=record.updated_at,
            ))
            await session.commit()

    async def get(self, entry_id: UUID) -> Optional[WaitlistRecord]:
        async with self._session_factory() as session:
            entry = await session.get(WaitlistEntry, entry_id)
            return _to_record(entry) if entry is not None else None

    async def list_active_for_slot(
        self,
        slot_date: date,
        party_size: int,
        floor: Optional[str] = None,
    ) -> List[WaitlistRecord]:
        stmt = (
            select(WaitlistEntry)
            .where(WaitlistEntry.status == WaitlistStatus.ACTIVE.value)
            .where(WaitlistEntry.preferred_date == slot_date)
            .where(WaitlistEntry.party_size <= party_size)
        )
        if floor is not None:
            stmt = stmt.where(or_(WaitlistEntry.floor.is_(None), WaitlistEntry.floor == floor))
        stmt = stmt.order_by(
            WaitlistEntry.priority.desc(),
            WaitlistEntry.created_at,
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            records = [_to_record(e) for e in result.scalars().all()]
        return sorted(records, key=queue_order_key)

    async def update_status(
        self,
        entry_id: UUID,
        from_status: WaitlistStatus,
        to_status: WaitlistStatus,
        *,
        expires_after: Optional[datetime] = None,
        expired_by: Optional[datetime] = None,
        **changes: Any,
    ) -> WaitlistRecord:
        prepared = self._prepare_changes(from_status, to_status, changes)
        if "offered_table_ids" in prepared:
            prepared["offered_table_ids"] = list(prepared["offered_table_ids"])

        stmt = (
            update(WaitlistEntry)
            .where(WaitlistEntry.id == entry_id)
            .where(WaitlistEntry.status == from_status.value)
        )
        if expires_after is not None:
            stmt = stmt.where(WaitlistEntry.reservation_expires_at > expires_after)
        if expired_by is not None:
            stmt = stmt.where(WaitlistEntry.reservation_expires_at <= expired_by)
        stmt = stmt.values(
            status=to_status.value,
            updated_at=self.clock(),
            **prepared,
        ).execution_options(synchronize_session=False)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                current = await session.get(WaitlistEntry, entry_id)
                if current is None:
                    raise NotFound(f"Waitlist entry {entry_id} not found")
                raise StateConflict(
                    f"Waitlist entry {entry_id} is {current.status}, expected {from_status.value}",
                    details={"current": current.status, "expected": from_status.value},
                )
            await session.commit()
            entry = await session.get(WaitlistEntry, entry_id, populate_existing=True)
            return _to_record(entry)

    async def list_expired_offers(self, now: datetime) -> List[WaitlistRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WaitlistEntry)
                .where(WaitlistEntry.status == WaitlistStatus.NOTIFIED.value)
                .where(WaitlistEntry.reservation_expires_at <= now)
            )
            return [_to_record(e) for e in result.scalars().all()]

    async def count_active_for_customer(self, customer_id: UUID) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(WaitlistEntry)
                .where(WaitlistEntry.customer_id == customer_id)
                .where(WaitlistEntry.status.in_([s.value for s in OPEN_STATUSES]))
            )
            return int(result.scalar_one())

    async def acquire_slot(
        self,
        slot_date: date,
        table_ids: Sequence[int],
        entry_id: Optional[UUID] = None,
    ) -> bool:
        async with self._session_factory() as session:
            session.add_all([
                SlotHold(booking_date=slot_date, table_id=table_id, entry_id=entry_id)
                for table_id in table_ids
            ])
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.debug("Slot %s %s already held", slot_date, list(table_ids))
                return False
            return True

    async def attach_hold(self, slot_date: date, table_ids: Sequence[int], entry_id: UUID) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(SlotHold)
                .where(SlotHold.booking_date == slot_date)
                .where(SlotHold.table_id.in_(list(table_ids)))
                .values(entry_id=entry_id)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def release_slot(self, slot_date: date, table_ids: Sequence[int]) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(SlotHold)
                .where(SlotHold.booking_date == slot_date)
                .where(SlotHold.table_id.in_(list(table_ids)))
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def held_tables(self, slot_date: date) -> Set[int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SlotHold.table_id).where(SlotHold.booking_date == slot_date)
            )
            return set(result.scalars().all())
