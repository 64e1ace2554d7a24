"""
Booking engine facade.

Wires availability, limit validation, the waitlist store, matching,
notifications and conversion into the operations the API exposes.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from venue_booking.config import Settings
from venue_booking.database import session_context_for
from venue_booking.errors import LimitExceeded, NotFound
from venue_booking.services.availability import (
    AvailabilityResolver,
    AvailabilityService,
    AvailabilitySlot,
    SqlTableCatalog,
)
from venue_booking.services.booking_gateway import BookingGateway, BookingInfo, SqlBookingGateway
from venue_booking.services.conversion import (
    CancellationResult,
    ConversionCoordinator,
    SweepResult,
)
from venue_booking.services.limit_service import fetch_customer_limits, limit_information
from venue_booking.services.matching import MatchingEngine, MatchResult
from venue_booking.services.notifications import (
    NotificationDispatcher,
    SqlContactDirectory,
    SqlDeliveryRecorder,
    build_providers,
)
from venue_booking.services.payment_patterns import DuplicatePaymentDetector, KeyedTTLStore
from venue_booking.services.risk_validator import (
    CustomerLimitRecord,
    LimitPolicy,
    RiskAssessment,
    RiskValidator,
)
from venue_booking.services.waitlist_state import WaitlistPreferences, WaitlistRecord
from venue_booking.services.waitlist_store import SqlWaitlistStore, WaitlistStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_WAITLIST_ENTRIES = 3

LimitLoader = Callable[[UUID, date], Awaitable[CustomerLimitRecord]]


def estimate_wait(position: Optional[int], preferred_date: date, today: date) -> str:
    """Rough, human-readable wait estimate from a queue position."""
    if position is None:
        return "Not queued"
    if preferred_date == today:
        if position <= 2:
            return "30-90 minutes"
        if position <= 4:
            return "1-3 hours"
        return "Later this evening"
    if position <= 2:
        return "Within 2 hours of your preferred time"
    if position <= 4:
        return "Same day, alternative time likely"
    return "Alternative time or date may be needed"


@dataclass(frozen=True)
class EnrollmentResult:
    entry: WaitlistRecord
    position: Optional[int]
    estimated_wait: str
    limits: CustomerLimitRecord
    assessment: RiskAssessment


@dataclass(frozen=True)
class BookingCancellation:
    booking: BookingInfo
    match: MatchResult


class BookingEngine:
    """Entry point for availability, limits and the waitlist lifecycle."""

    def __init__(
        self,
        store: WaitlistStore,
        matching: MatchingEngine,
        coordinator: ConversionCoordinator,
        gateway: BookingGateway,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        resolver: Optional[AvailabilityResolver] = None,
        validator: Optional[RiskValidator] = None,
        detector: Optional[DuplicatePaymentDetector] = None,
        limit_loader: Optional[LimitLoader] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        max_waitlist_entries: int = DEFAULT_MAX_WAITLIST_ENTRIES,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.matching = matching
        self.coordinator = coordinator
        self.gateway = gateway
        self.session_factory = session_factory
        self.resolver = resolver or AvailabilityResolver()
        self.validator = validator or RiskValidator()
        self.detector = detector or DuplicatePaymentDetector()
        self.dispatcher = dispatcher
        self.max_waitlist_entries = max_waitlist_entries
        self.clock = clock or store.clock
        self._limit_loader = limit_loader or self._load_limits
        self._customer_locks: Dict[UUID, asyncio.Lock] = {}
        self._lock_users: Counter = Counter()

    @asynccontextmanager
    async def _customer_lock(self, customer_id: UUID) -> AsyncIterator[None]:
        """Serialize one customer's enrollments; the lock goes once nobody holds or awaits it."""
        lock = self._customer_locks.setdefault(customer_id, asyncio.Lock())
        self._lock_users[customer_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[customer_id] -= 1
            if self._lock_users[customer_id] == 0:
                del self._lock_users[customer_id]
                del self._customer_locks[customer_id]

    def _session(self) -> AsyncSession:
        if self.session_factory is None:
            raise RuntimeError("BookingEngine was created without a session factory")
        return self.session_factory()

    async def _load_limits(self, customer_id: UUID, booking_date: date) -> CustomerLimitRecord:
        async with self._session() as session:
            return await fetch_customer_limits(session, customer_id, booking_date)

    async def resolve_availability(
        self,
        slot_date: date,
        party_size: int,
        floor: Optional[str] = None,
        time_slot: Optional[str] = None,
    ) -> List[AvailabilitySlot]:
        """Tables able to seat the party, read from one snapshot of the venue."""
        async with self._session() as session:
            snapshot = await AvailabilityService(session, self.resolver).load_snapshot(slot_date)
        if not self.store.holds_in_database:
            held = await self.store.held_tables(slot_date)
            snapshot = tuple(
                replace(t, status="pending") if t.is_available and t.id in held else t
                for t in snapshot
            )
        return self.resolver.resolve(
            snapshot,
            slot_date=slot_date,
            party_size=party_size,
            floor=floor,
            time_slot=time_slot,
        )

    async def validate_limits(
        self,
        customer_limits: CustomerLimitRecord,
        requested_tables: int,
        requested_guests: int,
        payment_method_id: Optional[str] = None,
        booking_date: Optional[date] = None,
    ) -> RiskAssessment:
        signal = None
        if payment_method_id and booking_date is not None:
            if self.session_factory is not None:
                async with self._session() as session:
                    signal = await self.detector.check(
                        customer_limits.customer_id, payment_method_id, booking_date, session=session
                    )
            else:
                signal = await self.detector.check(
                    customer_limits.customer_id, payment_method_id, booking_date
                )
        return self.validator.validate(
            customer_limits,
            requested_tables=requested_tables,
            requested_guests=requested_guests,
            payment_method_id=payment_method_id,
            payment_signal=signal,
        )

    async def validate_limits_for_customer(
        self,
        customer_id: UUID,
        booking_date: date,
        requested_tables: int,
        requested_guests: int,
        payment_method_id: Optional[str] = None,
    ) -> Tuple[CustomerLimitRecord, RiskAssessment]:
        limits = await self._limit_loader(customer_id, booking_date)
        assessment = await self.validate_limits(
            limits,
            requested_tables=requested_tables,
            requested_guests=requested_guests,
            payment_method_id=payment_method_id,
            booking_date=booking_date,
        )
        return limits, assessment

    def limit_information(self) -> Dict:
        return limit_information(self.validator.policy)

    async def enroll_waitlist(
        self,
        customer_id: UUID,
        preferences: WaitlistPreferences,
        payment_method_id: Optional[str] = None,
    ) -> EnrollmentResult:
        """
        Put a customer on the waitlist for a date.

        Raises LimitExceeded when the customer already holds the maximum
        number of open entries or the risk check blocks the request.
        """
        preferences.validate(self.validator.policy.max_party_size)
        requested_tables = 1 if preferences.party_size <= self.resolver.combination_threshold else 2

        async with self._customer_lock(customer_id):
            open_entries = await self.store.count_active_for_customer(customer_id)
            if open_entries >= self.max_waitlist_entries:
                raise LimitExceeded(
                    f"Maximum {self.max_waitlist_entries} waitlist entries per customer exceeded",
                    details={"existing_entries": open_entries},
                )

            limits, assessment = await self.validate_limits_for_customer(
                customer_id,
                preferences.preferred_date,
                requested_tables=requested_tables,
                requested_guests=preferences.party_size,
                payment_method_id=payment_method_id,
            )
            if not assessment.is_valid:
                logger.info(
                    "Waitlist enrollment for customer %s blocked (risk score %s)",
                    customer_id,
                    assessment.risk_score,
                )
                raise LimitExceeded(
                    assessment.blocking_violations[0].message,
                    assessment=assessment,
                )

            entry = await self.store.enroll(
                customer_id, preferences, loyalty_tier=limits.loyalty_tier
            )

        position = await self.store.position(entry.id)
        return EnrollmentResult(
            entry=entry,
            position=position,
            estimated_wait=estimate_wait(position, preferences.preferred_date, self.clock().date()),
            limits=limits,
            assessment=assessment,
        )

    async def get_entry(self, entry_id: UUID) -> Tuple[WaitlistRecord, Optional[int]]:
        entry = await self.store.get(entry_id)
        if entry is None:
            raise NotFound(f"Waitlist entry {entry_id} not found")
        return entry, await self.store.position(entry_id)

    async def on_slot_freed(self, slot: AvailabilitySlot) -> MatchResult:
        return await self.matching.on_slot_freed(slot)

    async def cancel_booking(self, booking_id: UUID) -> BookingCancellation:
        """Cancel a confirmed booking and offer its tables to the waitlist."""
        slot = await self.gateway.cancel_booking(booking_id)
        booking = await self.gateway.get(booking_id)
        match = await self.matching.on_slot_freed(slot)
        return BookingCancellation(booking=booking, match=match)

    async def convert(self, entry_id: UUID) -> BookingInfo:
        return await self.coordinator.convert(entry_id)

    async def cancel(self, entry_id: UUID) -> CancellationResult:
        return await self.coordinator.cancel(entry_id)

    async def sweep_expired(self, now: Optional[datetime] = None) -> SweepResult:
        return await self.coordinator.sweep_expired(now)


def create_booking_engine(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    clock: Optional[Callable[[], datetime]] = None,
) -> BookingEngine:
    """Assemble the SQL-backed engine and its notification dispatcher from settings."""
    session_context = session_context_for(session_factory)
    store = SqlWaitlistStore(session_factory, clock=clock)
    catalog = SqlTableCatalog(session_factory)
    dispatcher = NotificationDispatcher(
        providers=build_providers(settings.webhook_urls, settings.notification_timeout_seconds),
        contacts=SqlContactDirectory(session_context),
        recorder=SqlDeliveryRecorder(session_context),
        max_attempts=settings.notification_max_attempts,
        backoff_seconds=settings.notification_backoff_seconds,
        min_interval_seconds=settings.notification_min_interval_seconds,
    )
    matching = MatchingEngine(
        store,
        notifier=dispatcher,
        table_catalog=catalog,
        reservation_window_minutes=settings.reservation_window_minutes,
        combination_threshold=settings.combination_threshold,
        clock=clock,
    )
    gateway = SqlBookingGateway(session_factory, catalog, clock=clock)
    coordinator = ConversionCoordinator(
        store,
        gateway,
        matching,
        requeue_on_expiry=settings.requeue_on_expiry,
        max_requeues=settings.max_requeues,
        clock=clock,
    )
    return BookingEngine(
        store,
        matching,
        coordinator,
        gateway,
        session_factory=session_factory,
        resolver=AvailabilityResolver(
            combination_threshold=settings.combination_threshold,
            max_party_size=settings.max_party_size,
        ),
        validator=RiskValidator(LimitPolicy.from_settings(settings)),
        detector=DuplicatePaymentDetector(KeyedTTLStore(settings.payment_pattern_ttl_seconds)),
        dispatcher=dispatcher,
        max_waitlist_entries=settings.max_waitlist_entries_per_customer,
        clock=clock,
    )
