from venue_booking.models.table import Table
from venue_booking.models.customer import Customer
from venue_booking.models.booking import Booking
from venue_booking.models.waitlist import WaitlistEntry, SlotHold
from venue_booking.models.notification import NotificationDelivery

__all__ = [
    "Table",
    "Customer",
    "Booking",
    "WaitlistEntry",
    "SlotHold",
    "NotificationDelivery",
]
