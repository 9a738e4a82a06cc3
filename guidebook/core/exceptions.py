# guidebook/core/exceptions.py
"""
Domain-specific exceptions for the Guidebook booking engine.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def _detail(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }

    def to_http_exception(self) -> HTTPException:
        """Default conversion to HTTPException (override status_code in subclasses)."""
        return HTTPException(status_code=self.status_code, detail=self._detail())


class ValidationException(DomainException):
    """Raised when business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class ForbiddenException(DomainException):
    """Raised when the acting user lacks permission for an action."""

    status_code = status.HTTP_403_FORBIDDEN


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """


# Capacity errors


class InsufficientCapacityException(BusinessRuleException):
    """Raised when a slot cannot take the requested number of participants."""

    def __init__(self, requested: int, available: int, *, slot_date: Optional[str] = None):
        super().__init__(
            message=(
                f"Only {available} spot(s) left for this date; {requested} requested"
                if available > 0
                else "This date is fully booked"
            ),
            code="INSUFFICIENT_CAPACITY",
            details={"requested": requested, "available": available, "date": slot_date},
        )


class DateBlockedException(BusinessRuleException):
    """Raised when the guide has blocked the requested date."""

    def __init__(self, slot_date: str, reason: Optional[str] = None):
        super().__init__(
            message=f"The guide is not available on {slot_date}",
            code="DATE_BLOCKED",
            details={"date": slot_date, "reason": reason},
        )


# Transition errors


class InvalidTransitionException(ConflictException):
    """Raised when an event is not allowed from the booking's current status."""

    def __init__(self, current_status: str, event: str, *, booking_id: Optional[str] = None):
        super().__init__(
            message=f"Cannot {event} a booking that is {current_status}",
            code="INVALID_TRANSITION",
            details={"current_status": current_status, "event": event, "booking_id": booking_id},
        )
        self.current_status = current_status
        self.event = event


# Payment errors


class PaymentException(DomainException):
    """Base class for failures reported by the payment processor."""

    status_code = status.HTTP_502_BAD_GATEWAY


class AuthorizationDeclinedException(PaymentException):
    """The processor declined the charge. Do not retry the same intent."""

    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, message: Optional[str] = None, *, decline_code: Optional[str] = None):
        super().__init__(
            message=message or "Your payment was declined. Please use a different payment method.",
            code="AUTHORIZATION_DECLINED",
            details={"decline_code": decline_code} if decline_code else {},
        )


class ProcessorUnavailableException(PaymentException):
    """Transient processor failure. Safe to retry with the same idempotency key."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: Optional[str] = None, *, retry_after: int = 2):
        super().__init__(
            message=message or "Payment processor is temporarily unavailable. Please try again.",
            code="PROCESSOR_UNAVAILABLE",
            details={"retry_after": retry_after},
        )
        self.retry_after = retry_after

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail=self._detail(),
            headers={"Retry-After": str(self.retry_after)},
        )


class RefundFailedException(PaymentException):
    """
    A refund could not be issued.

    The client is owed money at this point, so this error is escalated with a
    dedicated alert marker instead of being treated as an ordinary failure.
    """

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        booking_id: Optional[str] = None,
        amount: Optional[str] = None,
    ):
        super().__init__(
            message=message or "Refund could not be issued",
            code="REFUND_FAILED",
            details={"booking_id": booking_id, "amount": amount},
        )

    def _detail(self) -> Dict[str, Any]:
        detail = super()._detail()
        detail["alert"] = "refund_failed"
        return detail


class OverpaymentException(PaymentException):
    """
    A leg settled for more than the booking still owes.

    Nothing is credited; the processor holds money the booking does not
    account for, so this is escalated like a failed refund.
    """

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, *, booking_id: str, leg: str, amount_cents: int, amount_due_cents: int):
        super().__init__(
            message="Payment exceeds the amount due on this booking",
            code="PAYMENT_EXCEEDS_DUE",
            details={
                "booking_id": booking_id,
                "leg": leg,
                "amount_cents": amount_cents,
                "amount_due_cents": amount_due_cents,
            },
        )

    def _detail(self) -> Dict[str, Any]:
        detail = super()._detail()
        detail["alert"] = "overpayment"
        return detail


# Check-in errors


class InvalidCheckInCodeException(ValidationException):
    """Raised when the submitted check-in code does not match the booking."""

    def __init__(self, booking_id: Optional[str] = None):
        super().__init__(
            message="Invalid check-in code",
            code="INVALID_CHECK_IN_CODE",
            details={"booking_id": booking_id},
        )


class AlreadyCheckedInException(ConflictException):
    """Raised when a booking has already been checked in."""

    def __init__(self, booking_id: Optional[str] = None):
        super().__init__(
            message="This booking has already been checked in",
            code="ALREADY_CHECKED_IN",
            details={"booking_id": booking_id},
        )


# Policy errors


class UnknownPolicyException(ServiceException):
    """Raised for a cancellation policy kind with no configured tier table."""

    def __init__(self, policy_kind: object):
        super().__init__(
            message=f"Unknown cancellation policy: {policy_kind!r}",
            code="UNKNOWN_POLICY",
            details={"policy_kind": str(policy_kind)},
        )
