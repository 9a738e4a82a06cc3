from .availability import (
    AvailabilityRangeResponse,
    SlotAvailabilityResponse,
    SlotBlockRequest,
    SlotCapacityUpdate,
)
from .booking import (
    BookingCancel,
    BookingCheckIn,
    BookingCreate,
    BookingDispute,
    BookingEventResponse,
    BookingListResponse,
    BookingReconcile,
    BookingResolveRefund,
    BookingSnapshot,
    BookingTransitionResponse,
    CheckInCodeResponse,
    ClientDetails,
    PaymentRecordResponse,
)

__all__ = [
    "AvailabilityRangeResponse",
    "BookingCancel",
    "BookingCheckIn",
    "BookingCreate",
    "BookingDispute",
    "BookingEventResponse",
    "BookingListResponse",
    "BookingReconcile",
    "BookingResolveRefund",
    "BookingSnapshot",
    "BookingTransitionResponse",
    "CheckInCodeResponse",
    "ClientDetails",
    "PaymentRecordResponse",
    "SlotAvailabilityResponse",
    "SlotBlockRequest",
    "SlotCapacityUpdate",
]
