"""
Notification dispatcher for waitlist offers.

Manages offer delivery across email, SMS and push:
- Non-blocking intake backed by an unbounded queue
- Consent check per channel (SMS and push are opt-in, the offer email is transactional)
- One worker per channel, so each provider sees serialized, rate-limited sends
- Retry with exponential backoff and per-channel delivery counters
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple
from uuid import UUID

import httpx
from sqlalchemy import select

from venue_booking.database import get_session_context
from venue_booking.models.customer import Customer
from venue_booking.models.notification import NotificationDelivery
from venue_booking.services.waitlist_state import WaitlistRecord

LOGGER = logging.getLogger("notification-dispatcher")

EMAIL = "email"
SMS = "sms"
PUSH = "push"
CHANNELS = (EMAIL, SMS, PUSH)
CONSENT_GATED_CHANNELS = frozenset({SMS, PUSH})

STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 1.0
# Entries whose delivery records are kept in memory; older ones live in notification_deliveries
DEFAULT_DELIVERY_HISTORY = 1000


class NotificationError(Exception):
    """Base exception for notification delivery errors."""
    pass


class ProviderError(NotificationError):
    """Raised when a provider rejects or fails a send."""
    pass


class ProviderRateLimited(ProviderError):
    """Raised when a provider throttles the sender."""
    pass


class ProviderTimeout(ProviderError):
    """Raised when a provider does not answer in time."""
    pass


@dataclass(frozen=True)
class CustomerContact:
    customer_id: UUID
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    push_token: Optional[str] = None
    consent_sms: bool = False
    consent_push: bool = False

    def allows(self, channel: str) -> bool:
        if channel == SMS:
            return self.consent_sms
        if channel == PUSH:
            return self.consent_push
        return channel not in CONSENT_GATED_CHANNELS

    def address_for(self, channel: str) -> Optional[str]:
        return {EMAIL: self.email, SMS: self.phone, PUSH: self.push_token}.get(channel)


class ContactDirectory(ABC):
    """Looks up how, and whether, a customer may be contacted."""

    @abstractmethod
    async def lookup(self, customer_id: UUID) -> Optional[CustomerContact]:
        raise NotImplementedError


class StaticContactDirectory(ContactDirectory):
    def __init__(self, contacts: Iterable[CustomerContact] = ()):
        self._contacts = {c.customer_id: c for c in contacts}

    def add(self, contact: CustomerContact) -> None:
        self._contacts[contact.customer_id] = contact

    async def lookup(self, customer_id: UUID) -> Optional[CustomerContact]:
        return self._contacts.get(customer_id)


class SqlContactDirectory(ContactDirectory):
    """Reads contact details and consent flags from the customers table."""

    def __init__(self, session_context=get_session_context):
        self._session_context = session_context

    async def lookup(self, customer_id: UUID) -> Optional[CustomerContact]:
        async with self._session_context() as session:
            result = await session.execute(select(Customer).where(Customer.id == customer_id))
            customer = result.scalar_one_or_none()
        if customer is None:
            return None
        return CustomerContact(
            customer_id=customer.id,
            name=customer.name,
            email=customer.email,
            phone=customer.phone,
            push_token=customer.push_token,
            consent_sms=bool(customer.consent_sms),
            consent_push=bool(customer.consent_push),
        )


@dataclass(frozen=True)
class NotificationMessage:
    entry_id: UUID
    customer_id: UUID
    channel: str
    address: str
    subject: str
    body: str
    payload: Dict[str, Any] = field(default_factory=dict)


def build_offer_message(entry: WaitlistRecord, contact: CustomerContact, channel: str) -> NotificationMessage:
    prefs = entry.preferences
    tables = ", ".join(str(t) for t in entry.offered_table_ids)
    expires = entry.reservation_expires_at.strftime("%H:%M") if entry.reservation_expires_at else ""
    body = (
        f"Hi {contact.name}, a table for {prefs.party_size} is available on "
        f"{prefs.preferred_date.isoformat()} at {entry.offered_time_slot or prefs.preferred_time}. "
        f"Confirm before {expires} to keep it."
    )
    return NotificationMessage(
        entry_id=entry.id,
        customer_id=entry.customer_id,
        channel=channel,
        address=contact.address_for(channel) or "",
        subject="Your table is ready",
        body=body,
        payload={
            "entry_id": str(entry.id),
            "date": prefs.preferred_date.isoformat(),
            "time": entry.offered_time_slot or prefs.preferred_time,
            "party_size": prefs.party_size,
            "tables": tables,
            "expires_at": entry.reservation_expires_at.isoformat() if entry.reservation_expires_at else None,
        },
    )


class NotificationProvider(ABC):
    """Delivers messages over one channel."""

    @abstractmethod
    async def send(self, message: NotificationMessage) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LoggingProvider(NotificationProvider):
    """Provider used when no endpoint is configured; logs instead of sending."""

    def __init__(self, channel: str):
        self.channel = channel

    async def send(self, message: NotificationMessage) -> None:
        LOGGER.info(
            "[%s] offer for entry %s to %s: %s",
            self.channel,
            message.entry_id,
            message.address,
            message.subject,
        )


class WebhookProvider(NotificationProvider):
    """Posts messages as JSON to an HTTP endpoint."""

    def __init__(
        self,
        endpoint: str,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._endpoint = endpoint
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None

    async def send(self, message: NotificationMessage) -> None:
        body = {
            "channel": message.channel,
            "to": message.address,
            "subject": message.subject,
            "body": message.body,
            "data": message.payload,
        }
        try:
            response = await self._client.post(self._endpoint, json=body)
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"{message.channel} provider timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"{message.channel} provider unreachable: {exc}") from exc

        if response.status_code == 429:
            raise ProviderRateLimited(f"{message.channel} provider rate limit exceeded")
        if response.status_code >= 400:
            raise ProviderError(
                f"{message.channel} provider failed with status {response.status_code}: {response.text}"
            )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class RateLimiter:
    """Spaces out calls so consecutive sends are at least ``min_interval`` apart."""

    def __init__(self, min_interval_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._min_interval = max(0.0, min_interval_seconds)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last: Optional[float] = None

    async def wait(self) -> None:
        async with self._lock:
            if self._last is not None and self._min_interval:
                remaining = self._min_interval - (self._clock() - self._last)
                if remaining > 0:
                    await asyncio.sleep(remaining)
            self._last = self._clock()


@dataclass(frozen=True)
class DeliveryRecord:
    entry_id: UUID
    customer_id: UUID
    channel: str
    status: str
    attempts: int = 0
    error: Optional[str] = None
    recorded_at: datetime = field(default_factory=datetime.utcnow)


class SqlDeliveryRecorder:
    """Writes delivery outcomes to the notification_deliveries table."""

    def __init__(self, session_context=get_session_context):
        self._session_context = session_context

    async def record(self, record: DeliveryRecord) -> None:
        async with self._session_context() as session:
            session.add(NotificationDelivery(
                entry_id=record.entry_id,
                customer_id=record.customer_id,
                channel=record.channel,
                status=record.status,
                attempts=record.attempts,
                error=record.error,
                recorded_at=record.recorded_at,
            ))


@dataclass
class _ChannelJob:
    message: NotificationMessage


class NotificationDispatcher:
    """Fans offers out to channel workers without blocking the caller."""

    def __init__(
        self,
        providers: Dict[str, NotificationProvider],
        contacts: ContactDirectory,
        recorder: Optional[SqlDeliveryRecorder] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        min_interval_seconds: float = 0.0,
        history_size: int = DEFAULT_DELIVERY_HISTORY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.providers = dict(providers)
        self.contacts = contacts
        self.recorder = recorder
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.history_size = max(1, history_size)
        self._sleep = sleep

        self._intake: asyncio.Queue[Tuple[WaitlistRecord, Optional[Tuple[str, ...]]]] = asyncio.Queue()
        self._channel_queues: Dict[str, asyncio.Queue[_ChannelJob]] = {
            channel: asyncio.Queue() for channel in self.providers
        }
        self._limiters = {
            channel: RateLimiter(min_interval_seconds) for channel in self.providers
        }
        self._tasks: List[asyncio.Task] = []

        self.deliveries: "OrderedDict[UUID, List[DeliveryRecord]]" = OrderedDict()
        self.stats: Dict[str, Counter] = {channel: Counter() for channel in CHANNELS}

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def backlog(self) -> int:
        return self._intake.qsize() + sum(q.qsize() for q in self._channel_queues.values())

    def enqueue(self, entry: WaitlistRecord, channels: Optional[Sequence[str]] = None) -> None:
        """Queue an offer for delivery and return immediately."""
        self._intake.put_nowait((entry, tuple(channels) if channels else None))

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks.append(asyncio.create_task(self._intake_worker(), name="notify-intake"))
        for channel in self._channel_queues:
            self._tasks.append(
                asyncio.create_task(self._channel_worker(channel), name=f"notify-{channel}")
            )
        LOGGER.info("Notification dispatcher started for channels %s", list(self._channel_queues))

    async def drain(self) -> None:
        """Wait until every queued offer has been delivered, failed or skipped."""
        await self._intake.join()
        for queue in self._channel_queues.values():
            await queue.join()

    async def stop(self, drain: bool = True) -> None:
        if drain and self._tasks:
            await self.drain()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        for provider in self.providers.values():
            await provider.close()
        LOGGER.info("Notification dispatcher stopped")

    async def _intake_worker(self) -> None:
        while True:
            entry, channels = await self._intake.get()
            requested = channels or entry.preferences.notification_channels
            routed: Set[str] = set()
            try:
                await self._route(entry, requested, routed)
            except Exception as exc:
                LOGGER.exception("Routing offer for entry %s failed", entry.id)
                for channel in dict.fromkeys(requested):
                    if channel in routed:
                        continue
                    await self._record(entry.id, entry.customer_id, channel, STATUS_FAILED, 0, str(exc))
            finally:
                self._intake.task_done()

    async def _route(self, entry: WaitlistRecord, channels: Sequence[str], routed: Set[str]) -> None:
        contact = await self.contacts.lookup(entry.customer_id)
        for channel in dict.fromkeys(channels):
            skip_reason = None
            if channel not in self._channel_queues:
                skip_reason = "no_provider"
            elif contact is None:
                skip_reason = "no_contact"
            elif not contact.allows(channel):
                skip_reason = "no_consent"
            elif not contact.address_for(channel):
                skip_reason = "no_address"

            if skip_reason:
                LOGGER.debug("Skipping %s for entry %s: %s", channel, entry.id, skip_reason)
                await self._record(entry.id, entry.customer_id, channel, STATUS_SKIPPED, 0, skip_reason)
                routed.add(channel)
                continue

            message = build_offer_message(entry, contact, channel)
            self._channel_queues[channel].put_nowait(_ChannelJob(message))
            routed.add(channel)

    async def _channel_worker(self, channel: str) -> None:
        queue = self._channel_queues[channel]
        while True:
            job = await queue.get()
            try:
                await self._deliver(channel, job.message)
            finally:
                queue.task_done()

    async def _deliver(self, channel: str, message: NotificationMessage) -> None:
        provider = self.providers[channel]
        last_error: Optional[str] = None
        for attempt in range(1, self.max_attempts + 1):
            await self._limiters[channel].wait()
            try:
                await provider.send(message)
            except NotificationError as exc:
                last_error = str(exc)
                LOGGER.warning(
                    "%s delivery for entry %s failed (attempt %s/%s): %s",
                    channel,
                    message.entry_id,
                    attempt,
                    self.max_attempts,
                    exc,
                )
            except Exception as exc:
                last_error = str(exc)
                LOGGER.exception("Unexpected %s provider error for entry %s", channel, message.entry_id)
                break
            else:
                await self._record(message.entry_id, message.customer_id, channel, STATUS_SENT, attempt)
                return

            if attempt < self.max_attempts:
                await self._sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        await self._record(
            message.entry_id, message.customer_id, channel, STATUS_FAILED, attempt, last_error
        )

    async def _record(
        self,
        entry_id: UUID,
        customer_id: UUID,
        channel: str,
        status: str,
        attempts: int,
        error: Optional[str] = None,
    ) -> None:
        record = DeliveryRecord(entry_id, customer_id, channel, status, attempts, error)
        history = self.deliveries.get(entry_id)
        if history is None:
            history = self.deliveries[entry_id] = []
            while len(self.deliveries) > self.history_size:
                self.deliveries.popitem(last=False)
        history.append(record)
        self.stats.setdefault(channel, Counter())[status] += 1
        if self.recorder is None:
            return
        try:
            await self.recorder.record(record)
        except Exception:
            LOGGER.exception("Failed to store delivery record for entry %s", entry_id)

    def delivery_status(self, entry_id: UUID) -> Dict[str, str]:
        """Latest delivery status per channel for an entry."""
        return {record.channel: record.status for record in self.deliveries.get(entry_id, [])}


def build_providers(
    webhook_urls: Dict[str, Optional[str]],
    timeout_seconds: float = 10.0,
) -> Dict[str, NotificationProvider]:
    providers: Dict[str, NotificationProvider] = {}
    for channel in CHANNELS:
        url = webhook_urls.get(channel)
        providers[channel] = WebhookProvider(url, timeout_seconds) if url else LoggingProvider(channel)
    return providers
