# guidebook/services/booking_service.py
"""
Booking Service for the Guidebook booking engine.

The booking lifecycle state machine. This is the only component that
sequences capacity, payments and refunds across a transition, and the only
one allowed to run compensating actions when a later step fails.

Every status change is flushed through the mapper's ``version`` column, so
two concurrent transitions on one booking cannot both commit: the loser gets
StaleDataError, which is translated into InvalidTransitionException (or
AlreadyCheckedInException for a duplicate check-in) after re-reading.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal
import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import pytz
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..core.config import settings
from ..core.enums import (
    BookingEventType,
    BookingStatus,
    PaymentLeg,
    PaymentRecordStatus,
    PaymentType,
)
from ..core.exceptions import (
    AlreadyCheckedInException,
    BusinessRuleException,
    DomainException,
    ForbiddenException,
    InvalidTransitionException,
    NotFoundException,
    RefundFailedException,
    ServiceException,
    ValidationException,
)
from ..core.money import from_cents, percentage_of, to_cents, to_money
from ..core.ulid_helper import generate_booking_number, generate_ulid
from ..integrations.payment_gateway import BillingDetails
from ..models.booking import Booking
from ..models.booking_event import BookingEvent
from ..models.payment import PaymentRecord
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.booking_repository import BookingRepository
from ..repositories.guide_repository import GuideRepository
from ..schemas.booking import BookingCreate, BookingSnapshot
from .availability_service import AvailabilityService
from .base import BaseService
from .cancellation_policy import CancellationPolicyEngine, RefundComputation
from .check_in_service import CheckInVerifier
from .payment_service import PaymentOrchestrator

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

S = BookingStatus
E = BookingEventType

TRANSITIONS: Dict[Tuple[str, str], str] = {
    (S.PENDING.value, E.CONFIRM.value): S.CONFIRMED.value,
    (S.PENDING.value, E.CANCEL.value): S.CANCELLED.value,
    (S.CONFIRMED.value, E.CANCEL.value): S.CANCELLED.value,
    (S.CONFIRMED.value, E.CHECK_IN.value): S.IN_PROGRESS.value,
    (S.IN_PROGRESS.value, E.COMPLETE.value): S.COMPLETED.value,
    (S.PENDING.value, E.DISPUTE.value): S.DISPUTED.value,
    (S.CONFIRMED.value, E.DISPUTE.value): S.DISPUTED.value,
    (S.IN_PROGRESS.value, E.DISPUTE.value): S.DISPUTED.value,
    (S.DISPUTED.value, E.RESOLVE_REFUND.value): S.REFUNDED.value,
}

# Leg order for refunds: deposit money goes back first
_LEG_ORDER = {PaymentLeg.DEPOSIT.value: 0, PaymentLeg.REMAINDER.value: 1}


def next_status(current_status: str, event: str, *, booking_id: Optional[str] = None) -> str:
    """Target status for ``event`` from ``current_status``; InvalidTransitionException otherwise."""
    target = TRANSITIONS.get((current_status, event))
    if target is None:
        raise InvalidTransitionException(current_status, event, booking_id=booking_id)
    return target


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BookingTransition:
    """Result of a lifecycle operation: explicit before/after snapshots."""

    event: str
    before: Optional[BookingSnapshot]
    after: BookingSnapshot
    payment: Optional[PaymentRecord] = None
    refund: Optional[Dict[str, Any]] = field(default=None)


class BookingService(BaseService):
    """
    Service layer for booking operations.

    Operations take the acting identity explicitly (``actor_id``) and return
    a BookingTransition.
    """

    def __init__(
        self,
        db: Session,
        *,
        payments: PaymentOrchestrator,
        availability: Optional[AvailabilityService] = None,
        policy_engine: Optional[CancellationPolicyEngine] = None,
        verifier: Optional[CheckInVerifier] = None,
        clock: Optional[Clock] = None,
        repository: Optional[BookingRepository] = None,
        guide_repository: Optional[GuideRepository] = None,
    ):
        super().__init__(db)
        self.payments = payments
        self.availability = availability or AvailabilityService(db)
        self.policy_engine = policy_engine or CancellationPolicyEngine(
            settings.cancellation_policy_table
        )
        self.verifier = verifier or CheckInVerifier()
        self.clock: Clock = clock or _utcnow
        self.repository = repository or BookingRepository(db)
        self.guide_repository = guide_repository or GuideRepository(db)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        now = self.clock()
        return now if now.tzinfo else now.replace(tzinfo=timezone.utc)

    def _hours_until(self, starts_at: datetime) -> float:
        return (starts_at - self._now()).total_seconds() / 3600.0

    @staticmethod
    def _starts_at(start_date: date, start_time: time) -> datetime:
        tz = pytz.timezone(settings.booking_timezone)
        return tz.localize(datetime.combine(start_date, start_time)).astimezone(pytz.utc)

    @staticmethod
    def snapshot(booking: Booking) -> BookingSnapshot:
        return BookingSnapshot.model_validate(booking)

    def _get_or_404(self, booking_id: str) -> Booking:
        booking = self.repository.get_by_id(booking_id)
        if booking is None:
            raise NotFoundException("Booking not found", code="BOOKING_NOT_FOUND")
        return booking

    @staticmethod
    def _ensure_guide(booking: Booking, actor_id: str) -> None:
        if actor_id != booking.guide_id:
            raise ForbiddenException("Only the guide can perform this action", code="NOT_BOOKING_GUIDE")

    @staticmethod
    def _ensure_party(booking: Booking, actor_id: str) -> None:
        if actor_id not in (booking.client_id, booking.guide_id):
            raise ForbiddenException(
                "You don't have permission to act on this booking", code="NOT_BOOKING_PARTY"
            )

    @contextmanager
    def _claim(self, booking_id: str, event: str) -> Iterator[None]:
        """
        Commit a transition; translate a lost optimistic-concurrency race.

        Usage:
            with self._claim(booking.id, "confirm"):
                booking.status = ...
        """
        try:
            yield
            self.db.commit()
        except (StaleDataError, IntegrityError) as exc:
            self.db.rollback()
            prometheus_metrics.record_transition(event, "conflict")
            current = self.repository.get_fresh(booking_id)
            current_status = current.status if current is not None else "missing"
            self.logger.info(
                "Lost transition race",
                extra={"booking_id": booking_id, "event": event, "current_status": current_status},
            )
            if event == E.CHECK_IN.value and (
                current_status in (S.IN_PROGRESS.value, S.COMPLETED.value)
                or (current is not None and current.checked_in_at is not None)
            ):
                raise AlreadyCheckedInException(booking_id) from exc
            raise InvalidTransitionException(current_status, event, booking_id=booking_id) from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            self.logger.error(f"Transition commit failed: {str(exc)}")
            raise ServiceException(f"Database operation failed: {str(exc)}") from exc
        except Exception:
            self.db.rollback()
            raise

    def _record_event(
        self,
        booking: Booking,
        event: str,
        from_status: Optional[str],
        actor_id: Optional[str],
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.repository.add_event(booking.id, event, from_status, booking.status, actor_id, details)
        prometheus_metrics.record_transition(event, "success")
        self.logger.info(
            f"Booking {booking.id} {event}: {from_status} -> {booking.status}",
            extra={"booking_id": booking.id, "event": event, "actor_id": actor_id},
        )

    def _release_capacity(self, booking: Booking) -> None:
        self.availability.release(
            booking.guide_id, booking.service_id, booking.start_date, booking.participants
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    @BaseService.measure_operation("create_booking")
    def create(self, data: BookingCreate, *, actor_id: str) -> BookingTransition:
        """
        Create a booking: reserve capacity, authorize the booking-time payment, persist.

        Args:
            data: Booking request
            actor_id: The booking client

        Returns:
            BookingTransition with ``before=None``

        Raises:
            NotFoundException: Unknown guide or service
            BusinessRuleException: Inactive guide/service, not enough notice,
                no capacity, or a blocked date
            PaymentException: The processor declined or was unavailable
        """
        # ========== PHASE 1: Validate and price ==========
        guide = self.guide_repository.get_by_id(data.guide_id)
        if guide is None:
            raise NotFoundException("Guide not found", code="GUIDE_NOT_FOUND")
        if not guide.active:
            raise BusinessRuleException("This guide is not accepting bookings", code="GUIDE_INACTIVE")

        service = self.guide_repository.get_service(data.service_id)
        if service is None or service.guide_id != guide.id:
            raise NotFoundException("Service not found", code="SERVICE_NOT_FOUND")
        if not service.active:
            raise BusinessRuleException("This service is not bookable", code="SERVICE_INACTIVE")
        if not service.min_participants <= data.participants <= service.max_participants:
            raise ValidationException(
                f"This service takes {service.min_participants}-{service.max_participants} participants",
                code="PARTICIPANTS_OUT_OF_RANGE",
                details={
                    "min_participants": service.min_participants,
                    "max_participants": service.max_participants,
                },
            )

        now = self._now()
        hours_until_start = self._hours_until(self._starts_at(data.start_date, data.start_time))
        min_notice = max(settings.booking_min_notice_hours, 0)
        if hours_until_start < min_notice:
            message = (
                f"Bookings must be made at least {min_notice} hour(s) before the start time"
                if min_notice
                else "Cannot book a start time in the past"
            )
            raise BusinessRuleException(message, code="INSUFFICIENT_NOTICE")

        unit_price = self.availability.price_for(service, data.start_date)
        total = to_money(unit_price * data.participants)
        payment_type = data.payment_type
        deposit_amount: Optional[Decimal] = None
        if payment_type in (PaymentType.DEPOSIT, PaymentType.INSTALLMENT):
            pct = (
                service.deposit_percentage
                if service.deposit_percentage is not None
                else settings.default_deposit_percentage
            )
            deposit_amount = percentage_of(total, pct)
        charge_now = deposit_amount if deposit_amount is not None else total

        booking = Booking(
            id=generate_ulid(),
            booking_number=generate_booking_number(int(now.timestamp() * 1000)),
            client_id=actor_id,
            guide_id=guide.id,
            service_id=service.id,
            start_date=data.start_date,
            start_time=data.start_time,
            end_time=data.end_time,
            participants=data.participants,
            total_price=total,
            deposit_amount=deposit_amount,
            amount_paid=Decimal("0.00"),
            amount_due=total,
            payment_type=payment_type.value,
            status=S.PENDING.value,
            version=1,
            client_details=data.client_details.model_dump(exclude_none=True),
            special_requests=data.special_requests,
            pickup_location=data.pickup_location,
        )

        # ========== PHASE 2: Reserve capacity ==========
        self.availability.reserve(guide.id, service.id, data.start_date, data.participants)

        # ========== PHASE 3: Authorize payment (compensate on failure) ==========
        record: Optional[PaymentRecord] = None
        try:
            if charge_now > 0:
                billing = (
                    BillingDetails(**data.billing_details.model_dump())
                    if data.billing_details
                    else None
                )
                record = self.payments.authorize_deposit(
                    booking,
                    charge_now,
                    billing_details=billing,
                    payment_method_ref=data.payment_method_ref,
                )
        except Exception:
            self._release_capacity(booking)
            raise

        # ========== PHASE 4: Persist booking, payment record and event ==========
        try:
            with self.transaction():
                self.db.add(booking)
                self._record_event(
                    booking,
                    E.CREATE.value,
                    None,
                    actor_id,
                    {"total_price": str(total), "charged": str(charge_now)},
                )
                if guide.instant_booking_enabled and PaymentOrchestrator.is_settled(record):
                    booking.status = S.CONFIRMED.value
                    booking.confirmed_at = now
                    self._record_event(
                        booking, E.CONFIRM.value, S.PENDING.value, None, {"instant_booking": True}
                    )
        except DomainException as exc:
            self._compensate_failed_persist(booking, record)
            raise ServiceException(
                "Booking could not be saved; any charge has been reversed",
                code="BOOKING_PERSIST_FAILED",
            ) from exc

        self.log_operation(
            "create_booking",
            booking_id=booking.id,
            booking_number=booking.booking_number,
            status=booking.status,
        )
        return BookingTransition(
            event=E.CREATE.value, before=None, after=self.snapshot(booking), payment=record
        )

    def _compensate_failed_persist(self, booking: Booking, record: Optional[PaymentRecord]) -> None:
        self._release_capacity(booking)
        if record is None or record.status not in (
            PaymentRecordStatus.AUTHORIZED.value,
            PaymentRecordStatus.CAPTURED.value,
            PaymentRecordStatus.PARTIALLY_REFUNDED.value,
        ):
            return
        try:
            self.payments.refund(record, from_cents(record.refundable_cents), reason="persist_failed")
        except DomainException as exc:
            self.logger.error(
                "Compensating refund failed after booking persist failure",
                extra={
                    "booking_id": booking.id,
                    "alert": "refund_failed",
                    "idempotency_key": record.idempotency_key,
                    "error": str(exc),
                },
            )

    # ------------------------------------------------------------------
    # Simple transitions
    # ------------------------------------------------------------------

    @BaseService.measure_operation("confirm_booking")
    def confirm(self, booking_id: str, *, actor_id: str) -> BookingTransition:
        booking = self._get_or_404(booking_id)
        self._ensure_guide(booking, actor_id)
        target = next_status(booking.status, E.CONFIRM.value, booking_id=booking.id)
        self._ensure_deposit_settled(booking)
        before = self.snapshot(booking)

        with self._claim(booking.id, E.CONFIRM.value):
            booking.status = target
            booking.confirmed_at = self._now()
            booking.confirmed_by_id = actor_id
            self._record_event(booking, E.CONFIRM.value, before.status.value, actor_id)

        return BookingTransition(E.CONFIRM.value, before, self.snapshot(booking))

    @BaseService.measure_operation("complete_booking")
    def complete(self, booking_id: str, *, actor_id: str) -> BookingTransition:
        booking = self._get_or_404(booking_id)
        self._ensure_guide(booking, actor_id)
        target = next_status(booking.status, E.COMPLETE.value, booking_id=booking.id)
        before = self.snapshot(booking)

        with self._claim(booking.id, E.COMPLETE.value):
            booking.status = target
            booking.completed_at = self._now()
            self._record_event(booking, E.COMPLETE.value, before.status.value, actor_id)

        return BookingTransition(E.COMPLETE.value, before, self.snapshot(booking))

    @BaseService.measure_operation("dispute_booking")
    def dispute(self, booking_id: str, reason: str, *, actor_id: str) -> BookingTransition:
        """Open a dispute. No money moves until it is resolved."""
        booking = self._get_or_404(booking_id)
        self._ensure_party(booking, actor_id)
        target = next_status(booking.status, E.DISPUTE.value, booking_id=booking.id)
        before = self.snapshot(booking)

        with self._claim(booking.id, E.DISPUTE.value):
            booking.status = target
            booking.disputed_at = self._now()
            booking.disputed_by_id = actor_id
            booking.dispute_reason = reason
            self._record_event(
                booking, E.DISPUTE.value, before.status.value, actor_id, {"reason": reason}
            )

        return BookingTransition(E.DISPUTE.value, before, self.snapshot(booking))

    # ------------------------------------------------------------------
    # Check-in
    # ------------------------------------------------------------------

    def check_in_code(self, booking_id: str, *, actor_id: str) -> str:
        booking = self._get_or_404(booking_id)
        self._ensure_party(booking, actor_id)
        return self.verifier.generate_code(booking.id)

    @BaseService.measure_operation("check_in_booking")
    def check_in(
        self,
        booking_id: str,
        code: str,
        *,
        actor_id: str,
        payment_method_ref: Optional[str] = None,
    ) -> BookingTransition:
        """
        Verify the code, capture the remainder and any authorized hold, move
        to in_progress. An unfinished deposit blocks check-in.

        A repeated check-in fails with AlreadyCheckedInException before any
        payment call is made.
        """
        booking = self._get_or_404(booking_id)
        self._ensure_guide(booking, actor_id)
        self.verifier.verify(code, booking)
        target = next_status(booking.status, E.CHECK_IN.value, booking_id=booking.id)
        before = self.snapshot(booking)

        self._ensure_deposit_settled(booking)
        record: Optional[PaymentRecord] = None
        if to_money(booking.amount_due) > 0:
            try:
                record = self.payments.capture_remainder(
                    booking, booking.amount_due, payment_method_ref
                )
            except DomainException:
                # Keep the leg's record (failed or still initiated) so the next
                # attempt picks the right idempotency key
                self._persist_payment_state(booking.id)
                raise
            if record.status == PaymentRecordStatus.INITIATED.value:
                self._persist_payment_state(booking.id)
                raise BusinessRuleException(
                    "The remainder payment needs the client to complete it before check-in",
                    code="REMAINDER_PAYMENT_PENDING",
                    details={"client_secret": record.client_secret},
                )

        held = [p for p in booking.payments if p.status == PaymentRecordStatus.AUTHORIZED.value]
        try:
            for leg_record in held:
                self.payments.capture_authorized(leg_record)
        except DomainException:
            self._persist_payment_state(booking.id)
            raise

        with self._claim(booking.id, E.CHECK_IN.value):
            booking.status = target
            booking.checked_in_at = self._now()
            booking.checked_in_by_id = actor_id
            self._record_event(
                booking,
                E.CHECK_IN.value,
                before.status.value,
                actor_id,
                {"remainder_cents": record.amount_cents if record is not None else 0},
            )

        return BookingTransition(E.CHECK_IN.value, before, self.snapshot(booking), payment=record)

    def _ensure_deposit_settled(self, booking: Booking) -> None:
        deposit = next((p for p in booking.payments if p.leg == PaymentLeg.DEPOSIT.value), None)
        if PaymentOrchestrator.is_settled(deposit):
            return
        raise BusinessRuleException(
            "The deposit payment has not completed yet",
            code="DEPOSIT_PAYMENT_PENDING",
            details={"status": deposit.status, "client_secret": deposit.client_secret},
        )

    def _persist_payment_state(self, booking_id: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            self.logger.error(
                f"Could not save payment state: {str(exc)}", extra={"booking_id": booking_id}
            )

    # ------------------------------------------------------------------
    # Cancellation and refunds
    # ------------------------------------------------------------------

    def _compute_refund(self, booking: Booking) -> RefundComputation:
        hours = self._hours_until(booking.starts_at())
        return self.policy_engine.compute_refund(
            booking.guide.cancellation_policy, hours, to_money(booking.amount_paid or 0)
        )

    def quote_refund(self, booking_id: str, *, actor_id: str) -> RefundComputation:
        """What a cancellation right now would refund. Read-only."""
        booking = self._get_or_404(booking_id)
        self._ensure_party(booking, actor_id)
        return self._compute_refund(booking)

    @BaseService.measure_operation("cancel_booking")
    def cancel(
        self, booking_id: str, *, actor_id: str, reason: Optional[str] = None
    ) -> BookingTransition:
        """
        Cancel a booking and refund per the guide's policy.

        The cancellation is claimed first; refunds and the capacity release
        follow. A failed refund leaves the booking cancelled with
        ``refund_error`` set, still releases capacity, and raises
        RefundFailedException.
        """
        booking = self._get_or_404(booking_id)
        self._ensure_party(booking, actor_id)
        target = next_status(booking.status, E.CANCEL.value, booking_id=booking.id)
        # An unknown policy aborts here, before any state change
        computation = self._compute_refund(booking)
        before = self.snapshot(booking)

        # ========== PHASE 1: Claim the transition ==========
        with self._claim(booking.id, E.CANCEL.value):
            booking.status = target
            booking.cancelled_at = self._now()
            booking.cancelled_by_id = actor_id
            booking.cancellation_reason = reason
            booking.cancellation_fee = computation.cancellation_fee
            booking.refund_amount = computation.refund_amount
            self._record_event(
                booking, E.CANCEL.value, before.status.value, actor_id, computation.to_payload()
            )

        # ========== PHASE 2 + 3: Refund, then release capacity ==========
        self._settle_refund(booking, computation.refund_amount, reason=reason, release=True)
        return BookingTransition(
            E.CANCEL.value, before, self.snapshot(booking), refund=computation.to_payload()
        )

    @BaseService.measure_operation("resolve_dispute_refund")
    def resolve_refund(
        self,
        booking_id: str,
        amount: Optional[Decimal] = None,
        *,
        actor_id: str,
        reason: Optional[str] = None,
    ) -> BookingTransition:
        """Close a dispute with a refund (default: everything still refundable)."""
        booking = self._get_or_404(booking_id)
        target = next_status(booking.status, E.RESOLVE_REFUND.value, booking_id=booking.id)
        refundable = PaymentOrchestrator.refundable_total(booking)
        refund_amount = refundable if amount is None else to_money(amount)
        if refund_amount < 0 or refund_amount > refundable:
            raise ValidationException(
                f"Refund {refund_amount} exceeds the refundable {refundable}",
                code="REFUND_EXCEEDS_CAPTURED",
                details={"refundable": str(refundable)},
            )
        before = self.snapshot(booking)
        never_started = booking.checked_in_at is None

        with self._claim(booking.id, E.RESOLVE_REFUND.value):
            booking.status = target
            booking.refund_amount = refund_amount
            self._record_event(
                booking,
                E.RESOLVE_REFUND.value,
                before.status.value,
                actor_id,
                {"refund_amount": str(refund_amount), "reason": reason},
            )

        self._settle_refund(booking, refund_amount, reason=reason, release=never_started)
        return BookingTransition(
            E.RESOLVE_REFUND.value,
            before,
            self.snapshot(booking),
            refund={"refund_amount": str(refund_amount)},
        )

    @BaseService.measure_operation("retry_refund")
    def retry_refund(self, booking_id: str, *, actor_id: str) -> BookingTransition:
        """Re-attempt an outstanding refund with the idempotency key of the failed attempt."""
        booking = self._get_or_404(booking_id)
        self._ensure_party(booking, actor_id)
        if booking.status not in (S.CANCELLED.value, S.REFUNDED.value) or not booking.refund_error:
            raise BusinessRuleException("No failed refund to retry", code="NO_REFUND_PENDING")
        before = self.snapshot(booking)

        outstanding = self._outstanding_refund(booking)
        self._settle_refund(booking, outstanding, reason="retry", release=False)

        with self._claim(booking.id, "retry_refund"):
            self._record_event(
                booking, "retry_refund", before.status.value, actor_id, {"amount": str(outstanding)}
            )
        return BookingTransition(
            "retry_refund", before, self.snapshot(booking), refund={"refund_amount": str(outstanding)}
        )

    @staticmethod
    def _outstanding_refund(booking: Booking) -> Decimal:
        refunded = from_cents(sum(int(p.refunded_cents or 0) for p in booking.payments))
        return max(to_money(booking.refund_amount or 0) - refunded, Decimal("0.00"))

    def _issue_refunds(self, booking: Booking, amount: Decimal, reason: Optional[str]) -> None:
        """Spread ``amount`` over captured legs, deposit first."""
        remaining = to_cents(amount)
        for record in sorted(booking.payments, key=lambda p: _LEG_ORDER.get(p.leg, 99)):
            if remaining <= 0:
                break
            take = min(record.refundable_cents, remaining)
            if take <= 0:
                continue
            self.payments.refund(record, from_cents(take), reason=reason)
            remaining -= take
        if remaining > 0:
            raise RefundFailedException(
                "Refund exceeds the captured payments on this booking",
                booking_id=booking.id,
                amount=str(from_cents(remaining)),
            )

    def _settle_refund(
        self, booking: Booking, amount: Decimal, *, reason: Optional[str], release: bool
    ) -> None:
        failure: Optional[RefundFailedException] = None
        if amount > 0:
            try:
                self._issue_refunds(booking, amount, reason)
            except RefundFailedException as exc:
                failure = exc

        with self._claim(booking.id, "refund"):
            if failure is not None:
                booking.refund_error = failure.message[:500]
            else:
                booking.refund_error = None
                if amount > 0:
                    booking.refund_issued_at = self._now()

        if release:
            self._release_capacity(booking)

        if failure is not None:
            self.logger.error(
                "Refund failed for booking",
                extra={
                    "alert": "refund_failed",
                    "booking_id": booking.id,
                    "amount": str(amount),
                    "error": failure.message,
                },
            )
            prometheus_metrics.record_transition("refund", "failed")
            failure.details["booking_id"] = booking.id
            raise failure

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    @BaseService.measure_operation("reconcile_booking_payment")
    def reconcile_payment(self, booking_id: str, leg: str, *, actor_id: str) -> BookingTransition:
        """Fold the processor's view of a leg (e.g. after a timed-out capture) into the booking."""
        booking = self._get_or_404(booking_id)
        self._ensure_party(booking, actor_id)
        record = next((p for p in booking.payments if p.leg == leg), None)
        if record is None:
            raise NotFoundException("No payment for this leg", code="PAYMENT_NOT_FOUND")
        before = self.snapshot(booking)

        with self._claim(booking.id, "reconcile_payment"):
            self.payments.reconcile(record)
            self._record_event(
                booking,
                "reconcile_payment",
                before.status.value,
                actor_id,
                {"leg": leg, "payment_status": record.status},
            )
        return BookingTransition("reconcile_payment", before, self.snapshot(booking), payment=record)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_booking(self, booking_id: str) -> Booking:
        return self._get_or_404(booking_id)

    def get_by_number(self, booking_number: str) -> Booking:
        booking = self.repository.get_by_number(booking_number)
        if booking is None:
            raise NotFoundException("Booking not found", code="BOOKING_NOT_FOUND")
        return booking

    def list_for_guide(self, guide_id: str, status: Optional[str] = None) -> List[Booking]:
        return self.repository.list_for_guide(guide_id, status)

    def list_for_client(self, client_id: str, status: Optional[str] = None) -> List[Booking]:
        return self.repository.list_for_client(client_id, status)

    def events_for(self, booking_id: str) -> List[BookingEvent]:
        self._get_or_404(booking_id)
        return self.repository.list_events(booking_id)
