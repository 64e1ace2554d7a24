"""
Matching engine: turns a freed slot into an offer for one waitlist entry.

A pass first takes the slot hold, so concurrent passes over the same tables
cannot both make an offer. Candidates are then tried best first, each with
a conditional ACTIVE -> NOTIFIED write; losing that write only moves the
pass on to the next candidate.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Collection, List, Optional, Protocol, Tuple
from uuid import UUID

from venue_booking.errors import StateConflict
from venue_booking.services.availability import (
    COMBINATION_THRESHOLD,
    AvailabilitySlot,
    TableCatalog,
    TableSnapshot,
    single_table_slot,
)
from venue_booking.services.priority import compute_priority
from venue_booking.services.waitlist_state import (
    WaitlistRecord,
    WaitlistStatus,
    is_valid_time,
    time_to_minutes,
)
from venue_booking.services.waitlist_store import WaitlistStore

logger = logging.getLogger(__name__)

DEFAULT_RESERVATION_WINDOW_MINUTES = 30

EXACT_TIME_BONUS = 50
ALTERNATIVE_TIME_BONUS = 25
TIME_DISTANCE_PENALTY = 5  # per 30 minutes away
MAX_TIME_DISTANCE_PENALTY = 30
FLOOR_MATCH_BONUS = 30
FLOOR_MISMATCH_PENALTY = 30
EXCESS_SEAT_PENALTY = 2


class OfferNotifier(Protocol):
    def enqueue(self, entry: WaitlistRecord) -> None: ...


@dataclass
class Candidate:
    entry: WaitlistRecord
    score: float
    priority: float
    table_ids: Tuple[int, ...]
    spare_table_ids: Tuple[int, ...] = ()


@dataclass
class MatchResult:
    """Outcome of one matching pass over a freed slot."""

    slot: AvailabilitySlot
    entry: Optional[WaitlistRecord] = None
    reason: str = "no_candidates"
    conflicts: int = 0
    follow_up: Optional["MatchResult"] = None

    @property
    def matched(self) -> bool:
        return self.entry is not None

    @property
    def offers(self) -> List[WaitlistRecord]:
        """Entries notified by this pass, including a partial-fill follow-up."""
        offers = [self.entry] if self.entry else []
        if self.follow_up is not None:
            offers.extend(self.follow_up.offers)
        return offers


def time_fit(entry: WaitlistRecord, time_slot: Optional[str]) -> float:
    if not is_valid_time(time_slot):
        return 0.0
    prefs = entry.preferences
    if prefs.preferred_time == time_slot:
        return EXACT_TIME_BONUS
    if time_slot in prefs.alternative_times:
        return ALTERNATIVE_TIME_BONUS
    distance = abs(time_to_minutes(prefs.preferred_time) - time_to_minutes(time_slot))
    return -min(MAX_TIME_DISTANCE_PENALTY, TIME_DISTANCE_PENALTY * (distance // 30))


def floor_fit(entry: WaitlistRecord, floor: Optional[str]) -> float:
    wanted = entry.preferences.floor
    if wanted is None or floor is None:
        return 0.0
    return FLOOR_MATCH_BONUS if wanted == floor else -FLOOR_MISMATCH_PENALTY


class MatchingEngine:
    """Offers freed slots to the best eligible waitlist entry."""

    def __init__(
        self,
        store: WaitlistStore,
        notifier: Optional[OfferNotifier] = None,
        table_catalog: Optional[TableCatalog] = None,
        reservation_window_minutes: int = DEFAULT_RESERVATION_WINDOW_MINUTES,
        combination_threshold: int = COMBINATION_THRESHOLD,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.table_catalog = table_catalog
        self.combination_threshold = combination_threshold
        self.reservation_window = timedelta(minutes=reservation_window_minutes)
        self.clock = clock or store.clock

    async def on_slot_freed(
        self,
        slot: AvailabilitySlot,
        exclude: Collection[UUID] = (),
    ) -> MatchResult:
        """Offer ``slot`` to the best eligible entry not listed in ``exclude``."""
        if not await self.store.acquire_slot(slot.date, slot.table_ids):
            logger.info("Slot %s %s already held by another pass", slot.date, slot.table_ids)
            return MatchResult(slot=slot, reason="slot_held")

        try:
            result = await self._offer(slot, exclude)
        except Exception:
            await self.store.release_slot(slot.date, slot.table_ids)
            raise

        if result.entry is None:
            await self.store.release_slot(slot.date, slot.table_ids)
            logger.info("No waitlist entry claimed slot %s %s", slot.date, slot.table_ids)
        return result

    async def _offer(self, slot: AvailabilitySlot, exclude: Collection[UUID]) -> MatchResult:
        now = self.clock()
        tables = await self._slot_tables(slot)
        entries = [
            e for e in await self.store.list_active_for_slot(slot.date, slot.capacity)
            if e.id not in exclude
        ]
        candidates = self.rank_candidates(slot, entries, tables, now)

        result = MatchResult(slot=slot)
        for candidate in candidates:
            try:
                record = await self.store.update_status(
                    candidate.entry.id,
                    WaitlistStatus.ACTIVE,
                    WaitlistStatus.NOTIFIED,
                    notified_at=now,
                    reservation_expires_at=now + self.reservation_window,
                    offered_table_ids=candidate.table_ids,
                    offered_time_slot=slot.time_slot or candidate.entry.preferences.preferred_time,
                    priority=candidate.priority,
                )
            except StateConflict:
                result.conflicts += 1
                logger.debug("Entry %s was claimed elsewhere, trying next", candidate.entry.id)
                continue

            await self.store.attach_hold(slot.date, candidate.table_ids, record.id)
            result.entry = record
            result.reason = "matched"
            logger.info(
                "Offered tables %s on %s to waitlist entry %s (expires %s)",
                candidate.table_ids,
                slot.date,
                record.id,
                record.reservation_expires_at,
            )
            if self.notifier is not None:
                self.notifier.enqueue(record)

            if candidate.spare_table_ids:
                result.follow_up = await self._refill(slot, candidate.spare_table_ids, tables)
            return result

        return result

    async def _refill(
        self,
        slot: AvailabilitySlot,
        spare_ids: Tuple[int, ...],
        tables: List[TableSnapshot],
    ) -> MatchResult:
        """Release the unused table of a split pair and offer it on its own."""
        await self.store.release_slot(slot.date, spare_ids)
        spare = next(t for t in tables if t.id in spare_ids)
        spare_slot = single_table_slot(spare, slot.date, slot.time_slot)
        logger.info("Partial fill on %s, re-offering table %s", slot.date, spare.id)
        try:
            return await self.on_slot_freed(spare_slot)
        except Exception:
            # The first offer stands; the spare table stays free for ordinary booking
            logger.exception("Re-offering table %s on %s failed", spare.id, slot.date)
            return MatchResult(slot=spare_slot, reason="error")

    async def _slot_tables(self, slot: AvailabilitySlot) -> List[TableSnapshot]:
        if not slot.is_combined or self.table_catalog is None:
            return []
        tables = await self.table_catalog.get_tables(slot.table_ids)
        return tables if len(tables) == len(slot.table_ids) else []

    def rank_candidates(
        self,
        slot: AvailabilitySlot,
        entries: List[WaitlistRecord],
        tables: List[TableSnapshot],
        now: datetime,
    ) -> List[Candidate]:
        """Eligible entries with their offered tables, best first."""
        candidates = []
        for entry in entries:
            assignment = self._assign_tables(slot, entry, tables)
            if assignment is None:
                continue
            table_ids, spare_ids, capacity = assignment
            priority = compute_priority(entry.rank, entry.loyalty_tier, entry.created_at, now)
            score = (
                priority
                + time_fit(entry, slot.time_slot)
                + floor_fit(entry, slot.floor)
                - EXCESS_SEAT_PENALTY * (capacity - entry.party_size)
            )
            candidates.append(Candidate(entry, score, priority, table_ids, spare_ids))

        candidates.sort(key=lambda c: (-c.score, c.entry.created_at, str(c.entry.id)))
        return candidates

    def _assign_tables(
        self,
        slot: AvailabilitySlot,
        entry: WaitlistRecord,
        tables: List[TableSnapshot],
    ) -> Optional[Tuple[Tuple[int, ...], Tuple[int, ...], int]]:
        party = entry.party_size
        if slot.is_combined and tables:
            fitting = sorted(
                (t for t in tables if t.fits(party)),
                key=lambda t: (t.capacity_max, t.id),
            )
            if fitting:
                chosen = fitting[0]
                spare = tuple(t.id for t in tables if t.id != chosen.id)
                return (chosen.id,), spare, chosen.capacity_max

        if not slot.can_seat(party):
            return None
        if slot.is_combined:
            # Pairs only seat parties above the combination threshold
            if party <= self.combination_threshold or not entry.preferences.accepts_combination:
                return None
        return slot.table_ids, (), slot.capacity
