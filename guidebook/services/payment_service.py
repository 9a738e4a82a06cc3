# guidebook/services/payment_service.py
"""
Payment orchestration for the two booking legs.

Every processor call about a leg carries the idempotency key stored on that
leg's PaymentRecord, so a retried request (in-process or from a new HTTP
request after a timeout) reaches the processor with the key it used first.
A decline retires the key: the next attempt bumps ``attempt`` and therefore
the key.

This service never commits; BookingService owns the transaction.
"""

from datetime import datetime, timezone
from decimal import Decimal
import logging
import time
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import PaymentLeg, PaymentRecordStatus
from ..core.exceptions import (
    AuthorizationDeclinedException,
    DomainException,
    OverpaymentException,
    ProcessorUnavailableException,
    RefundFailedException,
    ValidationException,
)
from ..core.money import MoneyLike, from_cents, to_cents, to_money
from ..integrations.payment_gateway import (
    BillingDetails,
    PaymentGateway,
    PaymentIntentRequest,
    PaymentIntentResult,
)
from ..models.booking import Booking
from ..models.payment import PaymentRecord
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.payment_repository import PaymentRepository
from .base import BaseService

logger = logging.getLogger(__name__)

# Records in these statuses already moved money for their leg
_SETTLED_STATUSES = frozenset(
    {
        PaymentRecordStatus.AUTHORIZED.value,
        PaymentRecordStatus.CAPTURED.value,
        PaymentRecordStatus.PARTIALLY_REFUNDED.value,
        PaymentRecordStatus.REFUNDED.value,
    }
)
# Authorized legs are "refunded" by capturing less than the hold or voiding it
_REFUNDABLE_STATUSES = frozenset(
    {
        PaymentRecordStatus.AUTHORIZED.value,
        PaymentRecordStatus.CAPTURED.value,
        PaymentRecordStatus.PARTIALLY_REFUNDED.value,
    }
)
_PAID_STATUSES = frozenset({PaymentRecordStatus.AUTHORIZED, PaymentRecordStatus.CAPTURED})


class PaymentOrchestrator(BaseService):
    """Creates, reconciles and refunds processor payment intents for bookings."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        *,
        currency: Optional[str] = None,
        max_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        repository: Optional[PaymentRepository] = None,
    ):
        super().__init__(db)
        self.gateway = gateway
        self.currency = (currency or settings.currency).lower()
        self.max_attempts = max(1, max_attempts or settings.payment_max_attempts)
        self.retry_backoff = (
            settings.payment_retry_backoff_seconds if retry_backoff is None else retry_backoff
        )
        self._sleep = sleep
        self.repository = repository or PaymentRepository(db)

    @staticmethod
    def idempotency_key(booking_id: str, leg: str, attempt: int) -> str:
        return f"{booking_id}:{leg}:{attempt}"

    @BaseService.measure_operation("authorize_deposit")
    def authorize_deposit(
        self,
        booking: Booking,
        amount: MoneyLike,
        billing_details: Optional[BillingDetails] = None,
        payment_method_ref: Optional[str] = None,
    ) -> PaymentRecord:
        """Charge the booking-time leg (the deposit, or the full price for ``full`` bookings)."""
        return self._charge(
            booking,
            PaymentLeg.DEPOSIT.value,
            amount,
            payment_method_ref=payment_method_ref,
            billing_details=billing_details,
        )

    @BaseService.measure_operation("capture_remainder")
    def capture_remainder(
        self,
        booking: Booking,
        amount: MoneyLike,
        payment_method_ref: Optional[str],
    ) -> PaymentRecord:
        return self._charge(
            booking,
            PaymentLeg.REMAINDER.value,
            amount,
            payment_method_ref=payment_method_ref,
        )

    def _find_record(self, booking: Booking, leg: str) -> Optional[PaymentRecord]:
        record = self.repository.get_for_leg(booking.id, leg) if booking.id else None
        if record is None:
            # Look in the in-memory collection too: the booking may not be flushed yet
            record = next((p for p in booking.payments if p.leg == leg), None)
        return record

    def _prepare_record(
        self,
        booking: Booking,
        leg: str,
        amount_cents: int,
        payment_method_ref: Optional[str],
    ) -> PaymentRecord:
        record = self._find_record(booking, leg)

        if record is None:
            record = PaymentRecord(
                booking_id=booking.id,
                leg=leg,
                amount_cents=amount_cents,
                currency=self.currency,
                status=PaymentRecordStatus.INITIATED.value,
                attempt=1,
                idempotency_key=self.idempotency_key(booking.id, leg, 1),
                payment_method_ref=payment_method_ref,
                refunded_cents=0,
                refund_count=0,
            )
            # Forward append so the record follows the booking into the session
            booking.payments.append(record)
            return record

        retire_key = record.status == PaymentRecordStatus.FAILED.value or (
            record.amount_cents != amount_cents
        )
        if retire_key:
            record.attempt = int(record.attempt or 1) + 1
            record.idempotency_key = self.idempotency_key(booking.id, leg, record.attempt)
            record.intent_id = None
            record.client_secret = None
        record.status = PaymentRecordStatus.INITIATED.value
        record.amount_cents = amount_cents
        record.failure_message = None
        if payment_method_ref:
            record.payment_method_ref = payment_method_ref
        return record

    def _charge(
        self,
        booking: Booking,
        leg: str,
        amount: MoneyLike,
        *,
        payment_method_ref: Optional[str] = None,
        billing_details: Optional[BillingDetails] = None,
    ) -> PaymentRecord:
        existing = self._find_record(booking, leg)
        if existing is not None and existing.status in _SETTLED_STATUSES:
            logger.info(
                "payment_leg_already_settled",
                extra={
                    "booking_id": booking.id,
                    "leg": leg,
                    "idempotency_key": existing.idempotency_key,
                },
            )
            return existing

        value = to_money(amount)
        if value <= 0:
            raise ValidationException("Payment amount must be positive", code="INVALID_AMOUNT")
        if value > to_money(booking.amount_due):
            raise ValidationException(
                f"Payment amount {value} exceeds the amount due {to_money(booking.amount_due)}",
                code="AMOUNT_EXCEEDS_DUE",
            )

        record = self._prepare_record(booking, leg, to_cents(value), payment_method_ref)
        request = PaymentIntentRequest(
            amount_cents=record.amount_cents,
            currency=self.currency,
            booking_id=booking.id,
            leg=leg,
            idempotency_key=record.idempotency_key,
            payment_method_ref=record.payment_method_ref,
            billing_details=billing_details,
        )

        try:
            result = self._with_retry(
                "create_intent",
                request.idempotency_key,
                lambda: self.gateway.create_payment_intent(request),
            )
        except AuthorizationDeclinedException as e:
            record.status = PaymentRecordStatus.FAILED.value
            record.failure_message = e.message[:500]
            raise

        self._apply_intent_result(booking, record, result)
        if result.status == PaymentRecordStatus.FAILED:
            record.failure_message = "Payment intent failed"
            raise AuthorizationDeclinedException()

        self.log_operation(
            "payment_leg_charged",
            booking_id=booking.id,
            leg=leg,
            status=record.status,
            idempotency_key=record.idempotency_key,
        )
        return record

    def _with_retry(
        self, operation: str, idempotency_key: str, call: Callable[[], PaymentIntentResult]
    ) -> PaymentIntentResult:
        attempt = 0
        while True:
            attempt += 1
            try:
                result = call()
            except ProcessorUnavailableException:
                prometheus_metrics.record_gateway_call(operation, "unavailable")
                if attempt >= self.max_attempts:
                    self.logger.warning(
                        "Payment processor unavailable, giving up",
                        extra={"idempotency_key": idempotency_key, "attempts": attempt},
                    )
                    raise
                self.logger.info(
                    "Payment processor unavailable, retrying with the same key",
                    extra={"idempotency_key": idempotency_key, "attempt": attempt},
                )
                self._sleep(self.retry_backoff * attempt)
                continue
            except AuthorizationDeclinedException:
                prometheus_metrics.record_gateway_call(operation, "declined")
                raise
            prometheus_metrics.record_gateway_call(operation, result.status.value)
            return result

    def _apply_intent_result(
        self, booking: Booking, record: PaymentRecord, result: PaymentIntentResult
    ) -> None:
        """
        Copy the processor outcome onto the record; credit the booking once per leg.

        A leg whose credit would push ``amount_paid`` past ``total_price`` is
        not applied: OverpaymentException carries it to an operator instead.
        """
        was_paid = PaymentRecordStatus(record.status) in _PAID_STATUSES
        if result.status in _PAID_STATUSES and not was_paid:
            due_cents = to_cents(booking.amount_due or 0)
            if record.amount_cents > due_cents:
                prometheus_metrics.record_gateway_call("credit", "overpayment")
                self.logger.error(
                    "Settled payment exceeds the amount due",
                    extra={
                        "alert": "overpayment",
                        "booking_id": booking.id,
                        "leg": record.leg,
                        "intent_id": result.intent_id,
                        "amount_cents": record.amount_cents,
                        "amount_due_cents": due_cents,
                    },
                )
                raise OverpaymentException(
                    booking_id=booking.id,
                    leg=record.leg,
                    amount_cents=record.amount_cents,
                    amount_due_cents=due_cents,
                )
        record.intent_id = result.intent_id or record.intent_id
        if result.client_secret:
            record.client_secret = result.client_secret
        record.status = result.status.value
        if result.status == PaymentRecordStatus.CAPTURED and record.captured_at is None:
            record.captured_at = datetime.now(timezone.utc)

        if result.status in _PAID_STATUSES and not was_paid:
            paid = to_money(booking.amount_paid or 0) + from_cents(record.amount_cents)
            booking.amount_paid = paid
            booking.amount_due = to_money(booking.total_price) - paid

    @BaseService.measure_operation("refund_payment")
    def refund(
        self, record: PaymentRecord, amount: MoneyLike, *, reason: Optional[str] = None
    ) -> PaymentRecord:
        """
        Refund part or all of a captured leg.

        The refund key is derived from the record's key and its refund count,
        so repeating a failed refund reuses the key until one succeeds.
        """
        if record.status not in _REFUNDABLE_STATUSES:
            raise ValidationException(
                f"Payment in status {record.status} cannot be refunded", code="NOT_REFUNDABLE"
            )
        cents = to_cents(amount)
        if cents <= 0:
            raise ValidationException("Refund amount must be positive", code="INVALID_AMOUNT")
        if cents > record.refundable_cents:
            raise ValidationException(
                "Refund exceeds the captured amount",
                code="REFUND_EXCEEDS_CAPTURED",
                details={"requested_cents": cents, "refundable_cents": record.refundable_cents},
            )
        if not record.intent_id:
            raise RefundFailedException(
                "Payment has no processor reference", booking_id=record.booking_id
            )

        key = f"{record.idempotency_key}:refund:{int(record.refund_count or 0) + 1}"
        released_hold = record.status == PaymentRecordStatus.AUTHORIZED.value
        try:
            if released_hold:
                self._release_hold(record, cents, key)
            else:
                self.gateway.refund(record.intent_id, cents, key)
        except RefundFailedException as e:
            prometheus_metrics.record_gateway_call("refund", "failed")
            e.details.setdefault("booking_id", record.booking_id)
            e.details["amount"] = str(from_cents(cents))
            raise
        except ProcessorUnavailableException as e:
            prometheus_metrics.record_gateway_call("refund", "unavailable")
            raise RefundFailedException(
                e.message, booking_id=record.booking_id, amount=str(from_cents(cents))
            ) from e
        except DomainException as e:
            prometheus_metrics.record_gateway_call("refund", "failed")
            raise RefundFailedException(
                e.message, booking_id=record.booking_id, amount=str(from_cents(cents))
            ) from e
        prometheus_metrics.record_gateway_call("refund", "succeeded")

        record.refunded_cents = int(record.refunded_cents or 0) + cents
        record.refund_count = int(record.refund_count or 0) + 1
        record.refunded_at = datetime.now(timezone.utc)
        record.status = (
            PaymentRecordStatus.REFUNDED.value
            if record.refunded_cents >= record.amount_cents
            else PaymentRecordStatus.PARTIALLY_REFUNDED.value
        )
        self.log_operation(
            "payment_refunded",
            booking_id=record.booking_id,
            leg=record.leg,
            amount_cents=cents,
            idempotency_key=key,
            reason=reason,
            released_hold=released_hold,
        )
        return record

    def _release_hold(self, record: PaymentRecord, cents: int, key: str) -> None:
        """Give back part or all of an uncaptured authorization."""
        keep_cents = int(record.amount_cents) - cents
        if keep_cents > 0:
            self.gateway.capture_intent(record.intent_id, keep_cents, key)
            record.captured_at = datetime.now(timezone.utc)
        else:
            self.gateway.cancel_intent(record.intent_id, key)

    @BaseService.measure_operation("capture_authorized")
    def capture_authorized(self, record: PaymentRecord) -> PaymentRecord:
        """
        Capture a leg the processor only authorized.

        The leg was credited when authorized, so the booking's amounts do
        not change. The capture key is derived from the leg's key, so a
        retried capture is the same capture.
        """
        if record.status != PaymentRecordStatus.AUTHORIZED.value:
            return record
        key = f"{record.idempotency_key}:capture"
        self._with_retry(
            "capture_intent",
            key,
            lambda: self.gateway.capture_intent(record.intent_id, record.amount_cents, key),
        )
        record.status = PaymentRecordStatus.CAPTURED.value
        record.captured_at = datetime.now(timezone.utc)
        self.log_operation(
            "payment_leg_captured",
            booking_id=record.booking_id,
            leg=record.leg,
            idempotency_key=key,
        )
        return record

    @staticmethod
    def is_settled(record: Optional[PaymentRecord]) -> bool:
        """True when the leg holds or has moved money (or was never needed)."""
        return record is None or record.status in _SETTLED_STATUSES

    @BaseService.measure_operation("reconcile_payment")
    def reconcile(self, record: PaymentRecord) -> PaymentRecord:
        """Read the processor's view of an intent and fold it into the record."""
        if not record.intent_id:
            raise ValidationException(
                "Payment has no processor reference to reconcile", code="NOTHING_TO_RECONCILE"
            )
        result = self.gateway.retrieve_intent(record.intent_id)
        prometheus_metrics.record_gateway_call("retrieve_intent", result.status.value)

        if record.status in (
            PaymentRecordStatus.PARTIALLY_REFUNDED.value,
            PaymentRecordStatus.REFUNDED.value,
        ):
            return record

        if result.status == PaymentRecordStatus.INITIATED:
            return record
        if result.status == PaymentRecordStatus.FAILED:
            if PaymentRecordStatus(record.status) in _PAID_STATUSES:
                self.logger.error(
                    "Processor reports a failed intent for a paid record",
                    extra={"booking_id": record.booking_id, "leg": record.leg},
                )
                return record
            record.status = PaymentRecordStatus.FAILED.value
            record.failure_message = "Reconciled as failed"
            return record

        self._apply_intent_result(record.booking, record, result)
        return record

    @staticmethod
    def refundable_total(booking: Booking) -> Decimal:
        cents = sum(p.refundable_cents for p in booking.payments)
        return from_cents(cents)
