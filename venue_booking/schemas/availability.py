from __future__ import annotations

from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class AvailabilitySlotRead(BaseModel):
    """A single table or combinable pair able to seat the party."""

    model_config = ConfigDict(from_attributes=True)

    date: date
    table_ids: List[int]
    capacity: int
    min_capacity: int
    time_slot: Optional[str] = None
    floor: Optional[str] = None
    is_combined: bool


class AvailabilityResponse(BaseModel):
    """Availability for a date; an empty slot list means the waitlist is offered."""

    date: date
    party_size: int
    floor: Optional[str] = None
    slots: List[AvailabilitySlotRead]
    waitlist_available: bool
