# API routes
from venue_booking.api.availability import router as availability_router
from venue_booking.api.bookings import router as bookings_router
from venue_booking.api.limits import router as limits_router
from venue_booking.api.waitlist import router as waitlist_router


__all__ = [
    "availability_router",
    "bookings_router",
    "limits_router",
    "waitlist_router",
]
