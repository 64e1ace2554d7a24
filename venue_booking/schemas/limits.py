from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ViolationSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class LimitValidationRequest(BaseModel):
    """Schema for checking a booking request against a customer's limits."""

    customer_id: UUID
    booking_date: date
    requested_tables: int = Field(..., ge=1, le=4)
    requested_guests: int = Field(..., ge=1)
    payment_method_id: Optional[str] = Field(None, max_length=100)


class ViolationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    type: str
    severity: ViolationSeverity
    message: str
    can_override: bool
    details: Dict[str, Any] = Field(default_factory=dict)


class CustomerLimitsRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    customer_id: UUID
    bookings_count: int
    tables_reserved: List[int]
    attempted_excess_bookings: int
    is_vip_customer: bool
    loyalty_tier: str
    risk_flags: List[str]


class LimitValidationResponse(BaseModel):
    is_valid: bool
    risk_score: int = Field(..., ge=0, le=100)
    risk_level: str
    violations: List[ViolationRead]
    recommendations: List[str]
    customer_limits: CustomerLimitsRead


class LimitInformationResponse(BaseModel):
    limits: Dict[str, Any]
    risk_thresholds: Dict[str, int]
