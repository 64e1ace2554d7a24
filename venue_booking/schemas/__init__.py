from venue_booking.schemas.availability import AvailabilityResponse, AvailabilitySlotRead
from venue_booking.schemas.booking import BookingCancelResponse, BookingRead
from venue_booking.schemas.limits import (
    CustomerLimitsRead,
    LimitInformationResponse,
    LimitValidationRequest,
    LimitValidationResponse,
    ViolationRead,
)
from venue_booking.schemas.waitlist import (
    WaitlistCancelResponse,
    WaitlistCreate,
    WaitlistEnrollmentResponse,
    WaitlistRead,
)

__all__ = [
    "AvailabilityResponse",
    "AvailabilitySlotRead",
    "BookingCancelResponse",
    "BookingRead",
    "CustomerLimitsRead",
    "LimitInformationResponse",
    "LimitValidationRequest",
    "LimitValidationResponse",
    "ViolationRead",
    "WaitlistCancelResponse",
    "WaitlistCreate",
    "WaitlistEnrollmentResponse",
    "WaitlistRead",
]
