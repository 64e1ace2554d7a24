# Business logic services
from venue_booking.services.availability import AvailabilityResolver, AvailabilityService
from venue_booking.services.booking_engine import BookingEngine, create_booking_engine
from venue_booking.services.conversion import ConversionCoordinator, ExpirySweeper
from venue_booking.services.matching import MatchingEngine
from venue_booking.services.notifications import NotificationDispatcher
from venue_booking.services.risk_validator import RiskValidator
from venue_booking.services.waitlist_store import (
    InMemoryWaitlistStore,
    SqlWaitlistStore,
    WaitlistStore,
)

__all__ = [
    "AvailabilityResolver",
    "AvailabilityService",
    "BookingEngine",
    "create_booking_engine",
    "ConversionCoordinator",
    "ExpirySweeper",
    "MatchingEngine",
    "NotificationDispatcher",
    "RiskValidator",
    "InMemoryWaitlistStore",
    "SqlWaitlistStore",
    "WaitlistStore",
]
