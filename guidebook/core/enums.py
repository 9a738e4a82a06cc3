"""Enumerations shared by models, services and schemas."""

from enum import Enum


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


TERMINAL_STATUSES = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.REFUNDED}
)


class BookingEventType(str, Enum):
    CREATE = "create"
    CONFIRM = "confirm"
    CANCEL = "cancel"
    CHECK_IN = "check_in"
    COMPLETE = "complete"
    DISPUTE = "dispute"
    RESOLVE_REFUND = "resolve_refund"


class PaymentType(str, Enum):
    FULL = "full"
    DEPOSIT = "deposit"
    INSTALLMENT = "installment"


class PaymentLeg(str, Enum):
    DEPOSIT = "deposit"
    REMAINDER = "remainder"


class PaymentRecordStatus(str, Enum):
    INITIATED = "initiated"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class CancellationPolicyKind(str, Enum):
    FLEXIBLE = "flexible"
    MODERATE = "moderate"
    STRICT = "strict"
    SUPER_STRICT = "super_strict"
    NON_REFUNDABLE = "non_refundable"
