"""Service for resolving which tables can seat a party on a date."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import FrozenSet, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from venue_booking.errors import ValidationError
from venue_booking.models.booking import Booking
from venue_booking.models.table import Table
from venue_booking.models.waitlist import SlotHold

SNAPSHOT_ISOLATION_LEVEL = "REPEATABLE READ"

MIN_PARTY_SIZE = 1
MAX_PARTY_SIZE = 20

# Pairs are only searched for parties larger than this
COMBINATION_THRESHOLD = 8

FLOORS = ("upstairs", "downstairs")


@dataclass(frozen=True)
class TableSnapshot:
    """Immutable view of a table at the moment availability was read."""

    id: int
    capacity_min: int
    capacity_max: int
    floor: str
    combinable_with: FrozenSet[int] = frozenset()
    status: str = "available"

    def __post_init__(self) -> None:
        if self.capacity_min > self.capacity_max:
            raise ValidationError(
                f"Table {self.id} has capacity_min {self.capacity_min} "
                f"above capacity_max {self.capacity_max}"
            )

    @property
    def is_available(self) -> bool:
        return self.status == "available"

    def fits(self, party_size: int) -> bool:
        return self.capacity_min <= party_size <= self.capacity_max


@dataclass(frozen=True)
class AvailabilitySlot:
    """A date, optional time and one or two tables able to seat a party."""

    date: date
    table_ids: Tuple[int, ...]
    capacity: int
    min_capacity: int = 1
    time_slot: Optional[str] = None
    floor: Optional[str] = None

    @property
    def is_combined(self) -> bool:
        return len(self.table_ids) > 1

    def excess_for(self, party_size: int) -> int:
        return self.capacity - party_size

    def can_seat(self, party_size: int) -> bool:
        return self.min_capacity <= party_size <= self.capacity


def single_table_slot(
    table: TableSnapshot,
    slot_date: date,
    time_slot: Optional[str] = None,
) -> AvailabilitySlot:
    return AvailabilitySlot(
        date=slot_date,
        table_ids=(table.id,),
        capacity=table.capacity_max,
        min_capacity=table.capacity_min,
        time_slot=time_slot,
        floor=table.floor,
    )


def combined_slot(
    first: TableSnapshot,
    second: TableSnapshot,
    slot_date: date,
    time_slot: Optional[str] = None,
) -> AvailabilitySlot:
    low, high = sorted((first, second), key=lambda t: t.id)
    return AvailabilitySlot(
        date=slot_date,
        table_ids=(low.id, high.id),
        capacity=low.capacity_max + high.capacity_max,
        min_capacity=1,
        time_slot=time_slot,
        floor=low.floor if low.floor == high.floor else None,
    )


class CombinationStrategy(ABC):
    """Finds multi-table slots for parties no single table can seat."""

    @abstractmethod
    def find(
        self,
        tables: Sequence[TableSnapshot],
        party_size: int,
        slot_date: date,
        time_slot: Optional[str] = None,
    ) -> List[AvailabilitySlot]:
        raise NotImplementedError


class PairwiseCombinationStrategy(CombinationStrategy):
    """
    Enumerates unordered pairs of combinable tables.

    Combinability is read in both directions, so a pair listed on only one
    of its tables is still found, and each pair is emitted once.
    """

    def find(
        self,
        tables: Sequence[TableSnapshot],
        party_size: int,
        slot_date: date,
        time_slot: Optional[str] = None,
    ) -> List[AvailabilitySlot]:
        by_id = {t.id: t for t in tables}
        pairs: set[Tuple[int, int]] = set()
        for table in tables:
            for other_id in table.combinable_with:
                if other_id == table.id or other_id not in by_id:
                    continue
                pairs.add((min(table.id, other_id), max(table.id, other_id)))

        slots = []
        for first_id, second_id in pairs:
            first, second = by_id[first_id], by_id[second_id]
            if first.capacity_max + second.capacity_max < party_size:
                continue
            slots.append(combined_slot(first, second, slot_date, time_slot))

        slots.sort(key=lambda s: (s.excess_for(party_size), s.table_ids))
        return slots


def validate_party_size(party_size: int, max_party_size: int = MAX_PARTY_SIZE) -> None:
    if not isinstance(party_size, int) or isinstance(party_size, bool):
        raise ValidationError("party_size must be an integer")
    if party_size < MIN_PARTY_SIZE or party_size > max_party_size:
        raise ValidationError(
            f"party_size must be between {MIN_PARTY_SIZE} and {max_party_size}",
            details={"party_size": party_size},
        )


def validate_floor(floor: Optional[str]) -> None:
    if floor is not None and floor not in FLOORS:
        raise ValidationError(f"floor must be one of {', '.join(FLOORS)}")


class AvailabilityResolver:
    """
    Pure availability resolution over a table snapshot.

    1. Single tables whose capacity range contains the party, tightest fit first.
    2. Only when no single table fits and the party is above the combination
       threshold, combinable pairs with enough joint capacity, tightest first.
    3. Otherwise an empty list, and the caller offers the waitlist.
    """

    def __init__(
        self,
        combination_strategy: Optional[CombinationStrategy] = None,
        combination_threshold: int = COMBINATION_THRESHOLD,
        max_party_size: int = MAX_PARTY_SIZE,
    ):
        self.combination_strategy = combination_strategy or PairwiseCombinationStrategy()
        self.combination_threshold = combination_threshold
        self.max_party_size = max_party_size

    def resolve(
        self,
        tables: Iterable[TableSnapshot],
        slot_date: date,
        party_size: int,
        floor: Optional[str] = None,
        time_slot: Optional[str] = None,
    ) -> List[AvailabilitySlot]:
        validate_party_size(party_size, self.max_party_size)
        validate_floor(floor)

        candidates = [
            t for t in tables
            if t.is_available and (floor is None or t.floor == floor)
        ]

        singles = [
            single_table_slot(t, slot_date, time_slot)
            for t in candidates
            if t.fits(party_size)
        ]
        if singles:
            singles.sort(key=lambda s: (s.excess_for(party_size), s.table_ids))
            return singles

        if party_size > self.combination_threshold:
            return self.combination_strategy.find(candidates, party_size, slot_date, time_slot)

        return []


def snapshot_from_table(table: Table, status: Optional[str] = None) -> TableSnapshot:
    return TableSnapshot(
        id=table.id,
        capacity_min=table.capacity_min,
        capacity_max=table.capacity_max,
        floor=table.floor,
        combinable_with=frozenset(table.combinable_with or ()),
        status=status or table.status,
    )


class AvailabilityService:
    """Loads a table snapshot for a date and resolves availability over it."""

    def __init__(
        self,
        session: AsyncSession,
        resolver: Optional[AvailabilityResolver] = None,
    ):
        self.session = session
        self.resolver = resolver or AvailabilityResolver()

    async def _begin_snapshot(self) -> None:
        """Run the snapshot reads in one REPEATABLE READ transaction on Postgres."""
        if self.session.in_transaction():
            return
        if self.session.get_bind().dialect.name == "postgresql":
            await self.session.connection(
                execution_options={"isolation_level": SNAPSHOT_ISOLATION_LEVEL}
            )

    async def load_snapshot(self, slot_date: date) -> Tuple[TableSnapshot, ...]:
        """
        Read every active table once and overlay the date's bookings and holds.

        Tables with a confirmed booking on the date read as ``booked``, held
        tables as ``pending``. Resolution only ever sees this snapshot.
        """
        await self._begin_snapshot()
        tables_result = await self.session.execute(
            select(Table)
            .where(Table.is_active == True)  # noqa: E712
            .order_by(Table.id)
        )
        tables = tables_result.scalars().all()

        bookings_result = await self.session.execute(
            select(Booking.table_ids)
            .where(Booking.booking_date == slot_date)
            .where(Booking.status == "confirmed")
        )
        booked: set[int] = set()
        for table_ids in bookings_result.scalars().all():
            booked.update(table_ids or ())

        holds_result = await self.session.execute(
            select(SlotHold.table_id).where(SlotHold.booking_date == slot_date)
        )
        held = set(holds_result.scalars().all())

        snapshot = []
        for table in tables:
            status = table.status
            if status == "available":
                if table.id in booked:
                    status = "booked"
                elif table.id in held:
                    status = "pending"
            snapshot.append(snapshot_from_table(table, status))
        return tuple(snapshot)

    async def resolve(
        self,
        slot_date: date,
        party_size: int,
        floor: Optional[str] = None,
        time_slot: Optional[str] = None,
    ) -> List[AvailabilitySlot]:
        snapshot = await self.load_snapshot(slot_date)
        return self.resolver.resolve(
            snapshot,
            slot_date=slot_date,
            party_size=party_size,
            floor=floor,
            time_slot=time_slot,
        )


class TableCatalog(ABC):
    """Source of table snapshots by id, used when a freed slot is split."""

    @abstractmethod
    async def get_tables(self, table_ids: Sequence[int]) -> List[TableSnapshot]:
        raise NotImplementedError


class StaticTableCatalog(TableCatalog):
    def __init__(self, tables: Iterable[TableSnapshot]):
        self._tables = {t.id: t for t in tables}

    async def get_tables(self, table_ids: Sequence[int]) -> List[TableSnapshot]:
        return [self._tables[i] for i in sorted(set(table_ids)) if i in self._tables]


class SqlTableCatalog(TableCatalog):
    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def get_tables(self, table_ids: Sequence[int]) -> List[TableSnapshot]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Table).where(Table.id.in_(list(table_ids))).order_by(Table.id)
            )
            return [snapshot_from_table(t) for t in result.scalars().all()]
