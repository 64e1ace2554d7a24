"""
Tests for the matching engine.

Simulates tables freeing up during service:
- the best candidate by score gets the offer
- concurrent passes never notify an entry twice or offer a slot twice
- a pair freed for a party that fits one table is split
"""
from __future__ import annotations

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from venue_booking.errors import StateConflict
from venue_booking.services.availability import AvailabilitySlot, single_table_slot
from venue_booking.services.matching import MatchingEngine, floor_fit, time_fit
from venue_booking.services.waitlist_state import WaitlistStatus
from venue_booking.services.waitlist_store import InMemoryWaitlistStore

from tests.conftest import EVENING, RecordingNotifier, floor_plan_snapshots, make_preferences

TABLES = {t.id: t for t in floor_plan_snapshots()}


def slot_for(*table_ids, time_slot=None):
    if len(table_ids) == 1:
        return single_table_slot(TABLES[table_ids[0]], EVENING, time_slot)
    first, second = TABLES[table_ids[0]], TABLES[table_ids[1]]
    return AvailabilitySlot(
        date=EVENING,
        table_ids=tuple(table_ids),
        capacity=first.capacity_max + second.capacity_max,
        time_slot=time_slot,
        floor=first.floor if first.floor == second.floor else None,
    )


class TestScoring:
    """Tests for the score components."""

    def setup_method(self):
        self.store = InMemoryWaitlistStore()

    async def test_time_fit(self):
        entry = await self.store.enroll(
            uuid4(), make_preferences(preferred_time="20:00", alternative_times=("21:00",))
        )

        assert time_fit(entry, "20:00") == 50
        assert time_fit(entry, "21:00") == 25
        assert time_fit(entry, "20:45") == -5
        assert time_fit(entry, "22:00") == -20
        assert time_fit(entry, "12:00") == -30
        assert time_fit(entry, None) == 0

    async def test_floor_fit(self):
        picky = await self.store.enroll(uuid4(), make_preferences(floor="upstairs"))
        relaxed = await self.store.enroll(uuid4(), make_preferences())

        assert floor_fit(picky, "upstairs") == 30
        assert floor_fit(picky, "downstairs") == -30
        assert floor_fit(picky, None) == 0
        assert floor_fit(relaxed, "downstairs") == 0

    async def test_rank_candidates(self, clock):
        """Score combines recomputed priority, time, floor and excess seats."""
        store = InMemoryWaitlistStore(clock=clock)
        engine = MatchingEngine(store, clock=clock)
        on_time = await store.enroll(uuid4(), make_preferences(party_size=4))
        late_silver = await store.enroll(
            uuid4(), make_preferences(party_size=4, preferred_time="22:00"), loyalty_tier="SILVER"
        )
        clock.advance(minutes=30)

        candidates = engine.rank_candidates(
            slot_for(2, time_slot="20:00"), [late_silver, on_time], [], clock()
        )

        # rank 60 + wait 3 + exact 50 - 2 excess seats * 2
        assert candidates[0].entry.id == on_time.id
        assert candidates[0].score == 60 + 3 + 50 - 4
        assert candidates[0].priority == 63
        # rank 60 + silver 50 + wait 3 - 20 for two hours away - 4
        assert candidates[1].score == 60 + 50 + 3 - 20 - 4

    async def test_ties_broken_by_enrollment(self, clock):
        store = InMemoryWaitlistStore(clock=clock)
        engine = MatchingEngine(store, clock=clock)
        first = await store.enroll(uuid4(), make_preferences())
        clock.advance(seconds=1)
        second = await store.enroll(uuid4(), make_preferences())

        candidates = engine.rank_candidates(slot_for(2), [second, first], [], clock())

        assert [c.entry.id for c in candidates] == [first.id, second.id]


class TestOnSlotFreed:
    """Tests for a single matching pass."""

    async def test_best_candidate_notified(self, memory_store, matching, notifier, clock):
        """The gold member wins an otherwise equal race and the hold is attached."""
        await memory_store.enroll(uuid4(), make_preferences(), loyalty_tier="BRONZE")
        gold = await memory_store.enroll(uuid4(), make_preferences(), loyalty_tier="GOLD")

        result = await matching.on_slot_freed(slot_for(2, time_slot="20:00"))

        assert result.matched
        assert result.reason == "matched"
        assert result.entry.id == gold.id
        assert result.entry.status == WaitlistStatus.NOTIFIED
        assert result.entry.offered_table_ids == (2,)
        assert result.entry.offered_time_slot == "20:00"
        assert result.entry.reservation_expires_at == clock() + timedelta(minutes=30)
        assert [e.id for e in notifier.enqueued] == [gold.id]
        assert await memory_store.held_tables(EVENING) == {2}

    async def test_offered_time_defaults_to_preference(self, memory_store, matching):
        await memory_store.enroll(uuid4(), make_preferences(preferred_time="19:15"))

        result = await matching.on_slot_freed(slot_for(1))

        assert result.entry.offered_time_slot == "19:15"

    async def test_no_candidates_releases_hold(self, memory_store, matching, notifier):
        """Parties that cannot be seated are skipped and the tables stay free."""
        await memory_store.enroll(uuid4(), make_preferences(party_size=2))

        # Table 2 seats 4-6
        result = await matching.on_slot_freed(slot_for(2))

        assert not result.matched
        assert result.reason == "no_candidates"
        assert notifier.enqueued == []
        assert await memory_store.held_tables(EVENING) == set()

    async def test_held_slot_skipped(self, memory_store, matching):
        await memory_store.enroll(uuid4(), make_preferences())
        await memory_store.acquire_slot(EVENING, [2])

        result = await matching.on_slot_freed(slot_for(2))

        assert result.reason == "slot_held"
        assert not result.matched

    async def test_exclude(self, memory_store, matching):
        excluded = await memory_store.enroll(uuid4(), make_preferences(), loyalty_tier="PLATINUM")
        other = await memory_store.enroll(uuid4(), make_preferences())

        result = await matching.on_slot_freed(slot_for(2), exclude=(excluded.id,))

        assert result.entry.id == other.id

    async def test_other_dates_ignored(self, memory_store, matching):
        await memory_store.enroll(uuid4(), make_preferences(preferred_date=EVENING + timedelta(days=1)))

        result = await matching.on_slot_freed(slot_for(2))

        assert not result.matched

    async def test_pair_for_large_party(self, memory_store, matching):
        """A party of 12 takes both tables of the 7+8 pair."""
        entry = await memory_store.enroll(uuid4(), make_preferences(party_size=12))

        result = await matching.on_slot_freed(slot_for(7, 8))

        assert result.entry.id == entry.id
        assert result.entry.offered_table_ids == (7, 8)
        assert result.follow_up is None

    async def test_pair_refused_without_combination(self, memory_store, matching):
        await memory_store.enroll(uuid4(), make_preferences(party_size=12, accepts_combination=False))

        result = await matching.on_slot_freed(slot_for(7, 8))

        assert not result.matched


class TestPartialFill:
    """Tests for splitting a freed pair."""

    async def test_spare_table_reoffered(self, memory_store, matching, notifier):
        """A party of 3 takes table 5; table 6 goes to the next fitting party."""
        trio = await memory_store.enroll(uuid4(), make_preferences(party_size=3))
        five = await memory_store.enroll(uuid4(), make_preferences(party_size=5))

        result = await matching.on_slot_freed(slot_for(5, 6))

        assert result.entry.id == trio.id
        assert result.entry.offered_table_ids == (5,)
        assert result.follow_up is not None
        assert result.follow_up.entry.id == five.id
        assert result.follow_up.entry.offered_table_ids == (6,)
        assert [e.id for e in result.offers] == [trio.id, five.id]
        assert len(notifier.enqueued) == 2
        assert await memory_store.held_tables(EVENING) == {5, 6}

    async def test_spare_table_released_when_unclaimed(self, memory_store, matching):
        await memory_store.enroll(uuid4(), make_preferences(party_size=3))

        result = await matching.on_slot_freed(slot_for(5, 6))

        assert result.entry.offered_table_ids == (5,)
        assert not result.follow_up.matched
        assert await memory_store.held_tables(EVENING) == {5}

    async def test_refill_failure_keeps_first_offer(self, clock, table_catalog):
        """An error while re-offering the spare table does not undo the first offer."""

        class FailingStore(InMemoryWaitlistStore):
            async def acquire_slot(self, slot_date, table_ids, entry_id=None):
                if tuple(table_ids) == (6,):
                    raise RuntimeError("database unavailable")
                return await super().acquire_slot(slot_date, table_ids, entry_id)

        store = FailingStore(clock=clock)
        engine = MatchingEngine(store, table_catalog=table_catalog, clock=clock)
        trio = await store.enroll(uuid4(), make_preferences(party_size=3))

        result = await engine.on_slot_freed(slot_for(5, 6))

        assert result.entry.id == trio.id
        assert result.follow_up.reason == "error"
        assert (await store.get(trio.id)).status == WaitlistStatus.NOTIFIED

    async def test_no_split_without_catalog(self, memory_store, clock):
        """Without table details a small party cannot be given half of the pair."""
        engine = MatchingEngine(memory_store, clock=clock)
        await memory_store.enroll(uuid4(), make_preferences(party_size=3))

        result = await engine.on_slot_freed(slot_for(5, 6))

        assert not result.matched
        assert await memory_store.held_tables(EVENING) == set()

    @pytest.mark.parametrize("party_size", [1, 7])
    async def test_small_party_never_takes_both_tables(self, memory_store, matching, party_size):
        """Parties at or below the combination threshold are not offered a pair."""
        await memory_store.enroll(uuid4(), make_preferences(party_size=party_size))

        # Neither table of 5+6 alone fits 1 or 7 guests
        result = await matching.on_slot_freed(slot_for(5, 6))

        assert not result.matched
        assert result.reason == "no_candidates"

    async def test_custom_threshold(self, memory_store, clock, table_catalog):
        engine = MatchingEngine(memory_store, table_catalog=table_catalog, combination_threshold=6, clock=clock)
        entry = await memory_store.enroll(uuid4(), make_preferences(party_size=7))

        result = await engine.on_slot_freed(slot_for(5, 6))

        assert result.entry.id == entry.id
        assert result.entry.offered_table_ids == (5, 6)


class TestConcurrency:
    """Tests for concurrent matching passes."""

    async def test_same_slot_many_passes(self, memory_store, matching, notifier):
        """Many passes over one freed slot produce exactly one offer."""
        for _ in range(20):
            await memory_store.enroll(uuid4(), make_preferences())

        results = await asyncio.gather(*(matching.on_slot_freed(slot_for(2)) for _ in range(25)))

        assert sum(1 for r in results if r.matched) == 1
        entries = await memory_store.all_entries()
        assert sum(1 for e in entries if e.status == WaitlistStatus.NOTIFIED) == 1
        assert len(notifier.enqueued) == 1

    async def test_different_slots_share_candidates(self, memory_store, matching, notifier):
        """Five tables freed at once go to five different entries."""
        for _ in range(10):
            await memory_store.enroll(uuid4(), make_preferences(party_size=4))

        results = await asyncio.gather(*(
            matching.on_slot_freed(slot_for(t)) for t in (1, 2, 3, 5, 6)
        ))

        offered = [r.entry.id for r in results if r.matched]
        assert len(offered) == 5
        assert len(set(offered)) == 5
        entries = await memory_store.all_entries()
        assert sum(1 for e in entries if e.status == WaitlistStatus.NOTIFIED) == 5

    async def test_conflict_moves_to_next_candidate(self, clock):
        """An entry claimed mid-pass is skipped and counted as a conflict."""

        class RacingStore(InMemoryWaitlistStore):
            raced = False

            async def update_status(self, entry_id, from_status, to_status, **kwargs):
                if not self.raced and to_status == WaitlistStatus.NOTIFIED:
                    self.raced = True
                    await super().update_status(
                        entry_id, WaitlistStatus.ACTIVE, WaitlistStatus.CANCELLED,
                        cancelled_at=clock(),
                    )
                return await super().update_status(entry_id, from_status, to_status, **kwargs)

        store = RacingStore(clock=clock)
        engine = MatchingEngine(store, notifier=RecordingNotifier(), clock=clock)
        best = await store.enroll(uuid4(), make_preferences(), loyalty_tier="PLATINUM")
        runner_up = await store.enroll(uuid4(), make_preferences())

        result = await engine.on_slot_freed(slot_for(2))

        assert result.conflicts == 1
        assert result.entry.id == runner_up.id
        assert (await store.get(best.id)).status == WaitlistStatus.CANCELLED

    async def test_hold_released_on_error(self, clock):
        """An unexpected error releases the hold before propagating."""

        class BrokenStore(InMemoryWaitlistStore):
            async def list_active_for_slot(self, slot_date, party_size, floor=None):
                raise StateConflict("listing failed")

        store = BrokenStore(clock=clock)
        engine = MatchingEngine(store, clock=clock)

        with pytest.raises(StateConflict):
            await engine.on_slot_freed(slot_for(2))

        assert await store.held_tables(EVENING) == set()
