from .availability_service import AvailabilityService, SlotAvailability
from .base import BaseService
from .booking_service import TRANSITIONS, BookingService, BookingTransition, next_status
from .cancellation_policy import (
    DEFAULT_POLICY_TABLE,
    CancellationPolicyEngine,
    PolicyTier,
    RefundComputation,
)
from .check_in_service import CheckInVerifier
from .payment_service import PaymentOrchestrator

__all__ = [
    "DEFAULT_POLICY_TABLE",
    "TRANSITIONS",
    "AvailabilityService",
    "BaseService",
    "BookingService",
    "BookingTransition",
    "CancellationPolicyEngine",
    "CheckInVerifier",
    "PaymentOrchestrator",
    "PolicyTier",
    "RefundComputation",
    "SlotAvailability",
    "next_status",
]
