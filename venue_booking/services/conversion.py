"""
Conversion coordinator: settles outstanding waitlist offers.

An offer ends in exactly one of three ways: the customer converts it into a
booking, the customer cancels, or the expiry sweep closes it. All three are
conditional transitions out of NOTIFIED, so when two of them race only one
takes effect and the others observe the outcome.

Conversion requires ``reservation_expires_at > now`` and the sweep requires
``reservation_expires_at <= now``; a conversion arriving at the exact
expiry instant therefore always loses to the sweep.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional
from uuid import UUID, uuid4

from venue_booking.errors import NotFound, ReservationExpired, StateConflict
from venue_booking.services.booking_gateway import BookingGateway, BookingInfo, slot_from_tables
from venue_booking.services.matching import MatchingEngine, MatchResult
from venue_booking.services.waitlist_state import WaitlistRecord, WaitlistStatus
from venue_booking.services.waitlist_store import WaitlistStore

logger = logging.getLogger(__name__)


@dataclass
class CancellationResult:
    entry: WaitlistRecord
    rematch: Optional[MatchResult] = None


@dataclass
class SweepResult:
    """Counts for one expiry sweep."""

    expired: List[UUID] = field(default_factory=list)
    requeued: List[UUID] = field(default_factory=list)
    conflicts: int = 0
    errors: int = 0
    rematches: List[MatchResult] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.expired) + len(self.requeued)


class ConversionCoordinator:
    """Converts, cancels and expires waitlist offers."""

    def __init__(
        self,
        store: WaitlistStore,
        gateway: BookingGateway,
        matching: MatchingEngine,
        requeue_on_expiry: bool = False,
        max_requeues: int = 1,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.matching = matching
        self.requeue_on_expiry = requeue_on_expiry
        self.max_requeues = max_requeues
        self.clock = clock or store.clock

    async def _require(self, entry_id: UUID) -> WaitlistRecord:
        entry = await self.store.get(entry_id)
        if entry is None:
            raise NotFound(f"Waitlist entry {entry_id} not found")
        return entry

    async def _existing_booking(self, entry: WaitlistRecord) -> BookingInfo:
        booking = await self.gateway.get_for_entry(entry.id)
        if booking is None:
            # The transition landed but the booking write did not
            logger.warning("Entry %s converted without a booking, creating it now", entry.id)
            booking = await self.gateway.create_for_entry(entry)
            await self.store.release_slot(entry.preferences.preferred_date, entry.offered_table_ids)
        return booking

    @staticmethod
    def _refuse(entry: WaitlistRecord, now: datetime) -> None:
        """Raise the error a conversion attempt on ``entry`` should see."""
        if entry.status == WaitlistStatus.EXPIRED:
            raise ReservationExpired(f"The offer for waitlist entry {entry.id} has expired")
        if entry.status == WaitlistStatus.ACTIVE and entry.requeue_count > 0:
            raise ReservationExpired(
                f"The offer for waitlist entry {entry.id} expired and the entry was re-queued"
            )
        if entry.status == WaitlistStatus.NOTIFIED and (
            entry.reservation_expires_at is None or entry.reservation_expires_at <= now
        ):
            raise ReservationExpired(f"The offer for waitlist entry {entry.id} has expired")
        if entry.status != WaitlistStatus.NOTIFIED:
            raise StateConflict(
                f"Waitlist entry {entry.id} is {entry.status.value} and has no open offer",
                details={"current": entry.status.value},
            )

    async def convert(self, entry_id: UUID) -> BookingInfo:
        """Turn an outstanding offer into a confirmed booking."""
        now = self.clock()
        entry = await self._require(entry_id)
        if entry.status == WaitlistStatus.CONVERTED:
            return await self._existing_booking(entry)
        self._refuse(entry, now)

        try:
            converted = await self.store.update_status(
                entry_id,
                WaitlistStatus.NOTIFIED,
                WaitlistStatus.CONVERTED,
                expires_after=now,
                converted_at=now,
                booking_id=uuid4(),
            )
        except StateConflict:
            current = await self._require(entry_id)
            if current.status == WaitlistStatus.CONVERTED:
                return await self._existing_booking(current)
            logger.info("Conversion of entry %s lost to a %s transition", entry_id, current.status.value)
            self._refuse(current, now)
            raise

        booking = await self.gateway.create_for_entry(converted)
        await self.store.release_slot(converted.preferences.preferred_date, converted.offered_table_ids)
        logger.info("Waitlist entry %s converted into booking %s", entry_id, booking.reference)
        return booking

    async def cancel(self, entry_id: UUID) -> CancellationResult:
        """Cancel an ACTIVE or NOTIFIED entry, re-offering any held tables."""
        for attempt in range(2):
            entry = await self._require(entry_id)
            if entry.status == WaitlistStatus.CANCELLED:
                return CancellationResult(entry=entry)
            try:
                cancelled = await self.store.update_status(
                    entry_id,
                    entry.status,
                    WaitlistStatus.CANCELLED,
                    cancelled_at=self.clock(),
                )
            except StateConflict:
                if attempt == 0 and not entry.is_terminal:
                    continue
                raise
            break

        logger.info("Waitlist entry %s cancelled (was %s)", entry_id, entry.status.value)
        result = CancellationResult(entry=cancelled)
        if entry.status == WaitlistStatus.NOTIFIED and entry.offered_table_ids:
            result.rematch = await self._release_and_reoffer(entry, exclude=(entry.id,))
        return result

    async def _release_and_reoffer(self, entry: WaitlistRecord, exclude=()) -> MatchResult:
        slot_date = entry.preferences.preferred_date
        await self.store.release_slot(slot_date, entry.offered_table_ids)
        slot = await slot_from_tables(
            self.gateway.table_catalog,
            slot_date,
            entry.offered_table_ids,
            entry.offered_time_slot,
        )
        return await self.matching.on_slot_freed(slot, exclude=exclude)

    async def sweep_expired(self, now: Optional[datetime] = None) -> SweepResult:
        """Close every offer whose reservation window has ended by ``now``."""
        now = now or self.clock()
        result = SweepResult()
        for entry in await self.store.list_expired_offers(now):
            requeue = self.requeue_on_expiry and entry.requeue_count < self.max_requeues
            try:
                if requeue:
                    await self.store.update_status(
                        entry.id,
                        WaitlistStatus.NOTIFIED,
                        WaitlistStatus.ACTIVE,
                        expired_by=now,
                        requeue_count=entry.requeue_count + 1,
                        offered_table_ids=(),
                        offered_time_slot=None,
                    )
                    result.requeued.append(entry.id)
                else:
                    await self.store.update_status(
                        entry.id,
                        WaitlistStatus.NOTIFIED,
                        WaitlistStatus.EXPIRED,
                        expired_by=now,
                    )
                    result.expired.append(entry.id)
            except StateConflict:
                result.conflicts += 1
                logger.debug("Entry %s settled before the sweep reached it", entry.id)
                continue

            if not entry.offered_table_ids:
                continue
            try:
                rematch = await self._release_and_reoffer(entry, exclude=(entry.id,))
                result.rematches.append(rematch)
            except Exception:
                result.errors += 1
                logger.exception("Re-offering tables of expired entry %s failed", entry.id)

        if result.processed or result.conflicts:
            logger.info(
                "Expiry sweep: %s expired, %s re-queued, %s conflicts",
                len(result.expired),
                len(result.requeued),
                result.conflicts,
            )
        return result


class ExpirySweeper:
    """Runs the expiry sweep on a fixed interval until stopped."""

    def __init__(
        self,
        coordinator: ConversionCoordinator,
        interval_seconds: float,
        stop_event: asyncio.Event,
    ) -> None:
        self._coordinator = coordinator
        self._interval_seconds = interval_seconds
        self._stop_event = stop_event

    async def run(self) -> None:
        while not self._stop_event.is_set():
            start_time = time.monotonic()
            try:
                await self._coordinator.sweep_expired()
            except Exception:
                logger.exception("Expiry sweep failed")
            elapsed = time.monotonic() - start_time
            sleep_seconds = max(0.0, self._interval_seconds - elapsed)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_seconds)
            except asyncio.TimeoutError:
                pass
