"""Waitlist entry types and the status state machine."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple
from uuid import UUID

from venue_booking.errors import StateConflict, ValidationError

MAX_ALTERNATIVE_TIMES = 6
CHANNELS = ("email", "sms", "push")
FLOORS = ("upstairs", "downstairs")

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class WaitlistStatus(str, Enum):
    ACTIVE = "active"
    NOTIFIED = "notified"
    CONVERTED = "converted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TRANSITIONS: Dict[WaitlistStatus, FrozenSet[WaitlistStatus]] = {
    WaitlistStatus.ACTIVE: frozenset({WaitlistStatus.NOTIFIED, WaitlistStatus.CANCELLED}),
    WaitlistStatus.NOTIFIED: frozenset({
        WaitlistStatus.CONVERTED,
        WaitlistStatus.EXPIRED,
        WaitlistStatus.ACTIVE,  # re-queue after an expired offer
        WaitlistStatus.CANCELLED,
    }),
    WaitlistStatus.CONVERTED: frozenset(),
    WaitlistStatus.EXPIRED: frozenset(),
    WaitlistStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)
OPEN_STATUSES = frozenset({WaitlistStatus.ACTIVE, WaitlistStatus.NOTIFIED})


def check_transition(from_status: WaitlistStatus, to_status: WaitlistStatus) -> None:
    """Raise StateConflict unless the transition table allows the move."""
    if to_status not in TRANSITIONS[from_status]:
        raise StateConflict(
            f"Cannot move waitlist entry from {from_status.value} to {to_status.value}",
            details={"from": from_status.value, "to": to_status.value},
        )


def is_valid_time(value: Optional[str]) -> bool:
    return bool(value) and bool(_TIME_PATTERN.match(value))


def time_to_minutes(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


@dataclass(frozen=True)
class WaitlistPreferences:
    """What a waitlisted party is waiting for."""

    preferred_date: date
    preferred_time: str
    party_size: int
    floor: Optional[str] = None
    alternative_times: Tuple[str, ...] = ()
    accepts_combination: bool = True
    special_occasion: Optional[str] = None
    notification_channels: Tuple[str, ...] = ("email",)

    def validate(self, max_party_size: int = 20) -> None:
        if self.preferred_date is None:
            raise ValidationError("preferred_date is required")
        if not is_valid_time(self.preferred_time):
            raise ValidationError("preferred_time must be HH:MM")
        if self.party_size is None or self.party_size < 1 or self.party_size > max_party_size:
            raise ValidationError(
                f"party_size must be between 1 and {max_party_size}",
                details={"party_size": self.party_size},
            )
        if self.floor is not None and self.floor not in FLOORS:
            raise ValidationError(f"floor must be one of {', '.join(FLOORS)}")
        if len(self.alternative_times) > MAX_ALTERNATIVE_TIMES:
            raise ValidationError(f"At most {MAX_ALTERNATIVE_TIMES} alternative times")
        for alternative in self.alternative_times:
            if not is_valid_time(alternative):
                raise ValidationError(f"Alternative time {alternative!r} must be HH:MM")
        if not self.notification_channels:
            raise ValidationError("At least one notification channel is required")
        unknown = set(self.notification_channels) - set(CHANNELS)
        if unknown:
            raise ValidationError(f"Unknown notification channels: {', '.join(sorted(unknown))}")


@dataclass(frozen=True)
class WaitlistRecord:
    """
    Snapshot of a waitlist entry.

    Records are immutable; the store is the only writer and hands out a new
    snapshot after each transition.
    """

    id: UUID
    customer_id: UUID
    preferences: WaitlistPreferences
    loyalty_tier: str
    rank: float
    priority: float
    status: WaitlistStatus
    created_at: datetime
    updated_at: datetime
    notified_at: Optional[datetime] = None
    reservation_expires_at: Optional[datetime] = None
    offered_table_ids: Tuple[int, ...] = field(default_factory=tuple)
    offered_time_slot: Optional[str] = None
    requeue_count: int = 0
    booking_id: Optional[UUID] = None
    converted_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def party_size(self) -> int:
        return self.preferences.party_size

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def queue_order_key(record: WaitlistRecord) -> Tuple[float, datetime, str]:
    """Highest priority first, earliest enrollment breaking ties."""
    return (-record.priority, record.created_at, str(record.id))
