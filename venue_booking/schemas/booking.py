from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class BookingRead(BaseModel):
    """Schema for reading a booking."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    reference: str
    customer_id: UUID
    booking_date: date
    time_slot: Optional[str]
    table_ids: List[int]
    party_size: int
    status: str
    waitlist_entry_id: Optional[UUID]
    created_at: datetime
    cancelled_at: Optional[datetime] = None


class BookingCancelResponse(BaseModel):
    booking: BookingRead
    freed_table_ids: List[int]
    offered_to: List[UUID]
