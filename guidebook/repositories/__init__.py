from .availability_repository import AvailabilityRepository
from .base_repository import BaseRepository
from .booking_repository import BookingRepository
from .guide_repository import GuideRepository
from .payment_repository import PaymentRepository

__all__ = [
    "AvailabilityRepository",
    "BaseRepository",
    "BookingRepository",
    "GuideRepository",
    "PaymentRepository",
]
