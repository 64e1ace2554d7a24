from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from venue_booking.schemas.limits import LimitValidationResponse


class Floor(str, Enum):
    UPSTAIRS = "upstairs"
    DOWNSTAIRS = "downstairs"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class WaitlistCreate(BaseModel):
    """Schema for enrolling in the waitlist."""

    customer_id: UUID
    preferred_date: date
    preferred_time: str = Field(..., pattern=TIME_PATTERN)
    party_size: int = Field(..., ge=1, le=20)
    floor: Optional[Floor] = None
    alternative_times: List[str] = Field(default_factory=list, max_length=6)
    accepts_combination: bool = True
    special_occasion: Optional[str] = Field(None, max_length=100)
    notification_channels: List[NotificationChannel] = Field(
        default_factory=lambda: [NotificationChannel.EMAIL], min_length=1
    )
    payment_method_id: Optional[str] = Field(None, max_length=100)


class WaitlistRead(BaseModel):
    """Schema for reading a waitlist entry."""

    id: UUID
    customer_id: UUID
    preferred_date: date
    preferred_time: str
    party_size: int
    floor: Optional[str]
    alternative_times: List[str]
    accepts_combination: bool
    notification_channels: List[str]
    loyalty_tier: str
    priority: float
    status: str
    position: Optional[int] = None
    notified_at: Optional[datetime] = None
    reservation_expires_at: Optional[datetime] = None
    offered_table_ids: List[int] = Field(default_factory=list)
    offered_time_slot: Optional[str] = None
    requeue_count: int = 0
    booking_id: Optional[UUID] = None
    created_at: datetime


class WaitlistEnrollmentResponse(BaseModel):
    entry: WaitlistRead
    position: Optional[int]
    estimated_wait: str
    risk: LimitValidationResponse


class WaitlistCancelResponse(BaseModel):
    entry: WaitlistRead
    reoffered_to: Optional[UUID] = None
