"""SQLAlchemy models; importing this package registers every mapper."""

from .availability import AvailabilitySlot, RecurringAvailability
from .booking import Booking
from .booking_event import BookingEvent
from .guide import Guide, GuideService
from .payment import PaymentRecord

__all__ = [
    "AvailabilitySlot",
    "Booking",
    "BookingEvent",
    "Guide",
    "GuideService",
    "PaymentRecord",
    "RecurringAvailability",
]
