"""
Deterministic duplicate payment pattern detection.

Two signals are combined:
- the persistent booking ledger: the same payment method already paid for
  another customer's confirmed booking on the same date;
- recent validation attempts: another customer presented the same payment
  method within the TTL window. These live in a lock-protected keyed store
  with explicit expiry so the check behaves the same under concurrent
  requests.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from venue_booking.models.booking import Booking

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 900


class KeyedTTLStore:
    """Keyed multi-value store whose values expire after a fixed TTL."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._data: Dict[Hashable, List[Tuple[float, Any]]] = {}
        self._lock = asyncio.Lock()
        self._next_sweep = clock() + ttl_seconds

    async def add(self, key: Hashable, value: Any) -> None:
        async with self._lock:
            now = self._clock()
            # Keys that are never read again are dropped here, once per TTL period
            if now >= self._next_sweep:
                self._evict_all(now)
                self._next_sweep = now + self.ttl_seconds
            expires_at = now + self.ttl_seconds
            self._data.setdefault(key, []).append((expires_at, value))

    async def values(self, key: Hashable) -> List[Any]:
        async with self._lock:
            self._evict_key(key, self._clock())
            return [value for _, value in self._data.get(key, [])]

    async def evict_expired(self) -> int:
        """Drop every expired value. Returns how many were removed."""
        async with self._lock:
            return self._evict_all(self._clock())

    def _evict_all(self, now: float) -> int:
        removed = 0
        for key in list(self._data):
            removed += self._evict_key(key, now)
        return removed

    def _evict_key(self, key: Hashable, now: float) -> int:
        items = self._data.get(key)
        if not items:
            return 0
        kept = [(expires_at, value) for expires_at, value in items if expires_at > now]
        removed = len(items) - len(kept)
        if kept:
            self._data[key] = kept
        else:
            del self._data[key]
        return removed

    def __len__(self) -> int:
        return sum(len(items) for items in self._data.values())


@dataclass
class PaymentPatternSignal:
    """Outcome of a duplicate payment check."""

    flagged: bool = False
    risk_factors: List[str] = field(default_factory=list)


class DuplicatePaymentDetector:
    """Flags payment methods shared between customers."""

    def __init__(self, recent_attempts: Optional[KeyedTTLStore] = None):
        self.recent_attempts = recent_attempts if recent_attempts is not None else KeyedTTLStore()

    async def check(
        self,
        customer_id: UUID,
        payment_method_id: str,
        booking_date: date,
        session: Optional[AsyncSession] = None,
    ) -> PaymentPatternSignal:
        factors: List[str] = []

        if session is not None:
            result = await session.execute(
                select(Booking.customer_id)
                .where(Booking.payment_method_id == payment_method_id)
                .where(Booking.booking_date == booking_date)
                .where(Booking.status == "confirmed")
            )
            owners = set(result.scalars().all())
            if owners - {customer_id}:
                factors.append("shared_payment_method")

        recent_customers = await self.recent_attempts.values(payment_method_id)
        if any(other != customer_id for other in recent_customers):
            factors.append("similar_timing")
        await self.recent_attempts.add(payment_method_id, customer_id)

        if factors:
            logger.info(
                "Payment method %s flagged for customer %s: %s",
                payment_method_id,
                customer_id,
                ", ".join(factors),
            )
        return PaymentPatternSignal(flagged=bool(factors), risk_factors=factors)
