"""
Error types raised by the booking engine.

Each error carries a short machine-readable ``kind`` which the API layer
uses for the response body, so clients can tell an expired offer apart
from an unknown one.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from venue_booking.services.risk_validator import RiskAssessment


class BookingEngineError(Exception):
    """Base exception for booking engine errors."""

    kind = "booking_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(BookingEngineError):
    """Raised for malformed input. Never retried."""

    kind = "validation_error"
    status_code = 422


class NotFound(BookingEngineError):
    """Raised when a waitlist entry, booking or customer does not exist."""

    kind = "not_found"
    status_code = 404


class StateConflict(BookingEngineError):
    """Raised when a conditional state transition loses its precondition."""

    kind = "state_conflict"
    status_code = 409


class ReservationExpired(BookingEngineError):
    """Raised when a conversion arrives after the reservation window closed."""

    kind = "reservation_expired"
    status_code = 410


class LimitExceeded(BookingEngineError):
    """Raised when a limit violation blocks the request and cannot be overridden."""

    kind = "limit_exceeded"
    status_code = 409

    def __init__(
        self,
        message: str,
        assessment: Optional["RiskAssessment"] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.assessment = assessment
