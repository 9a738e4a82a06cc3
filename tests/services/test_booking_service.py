"""
BookingService lifecycle tests against an in-memory database and a fake
payment processor.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

from conftest import (
    CHECK_IN_SECRET,
    FIXED_NOW,
    TRIP_DATE,
    TRIP_TIME,
    build_booking_service,
)
import pytest
from sqlalchemy import func, select

from guidebook.core.config import settings
from guidebook.core.enums import PaymentRecordStatus
from guidebook.core.exceptions import (
    AlreadyCheckedInException,
    AuthorizationDeclinedException,
    BusinessRuleException,
    DateBlockedException,
    ForbiddenException,
    InsufficientCapacityException,
    InvalidCheckInCodeException,
    InvalidTransitionException,
    NotFoundException,
    OverpaymentException,
    ProcessorUnavailableException,
    RefundFailedException,
    UnknownPolicyException,
    ValidationException,
)
from guidebook.core.ulid_helper import generate_ulid
from guidebook.models import Booking, BookingEvent
from guidebook.schemas.booking import BookingCreate
from guidebook.services.availability_service import AvailabilityService
from guidebook.services.check_in_service import CheckInVerifier

CLIENT_ID = generate_ulid()


def _request(guide, service, participants=4, **overrides):
    payload = {
        "guide_id": guide.id,
        "service_id": service.id,
        "start_date": TRIP_DATE,
        "start_time": TRIP_TIME,
        "participants": participants,
        "client_details": {"name": "Ada Lovelace", "email": "ada@example.com", "phone": "555-0100"},
    }
    payload.update(overrides)
    return BookingCreate(**payload)


def _reserved(db, service, slot_date=TRIP_DATE):
    slot = AvailabilityService(db).get_slot(service.guide_id, service.id, slot_date)
    return slot.reserved_count


def _events(db, booking_id):
    return [e.event for e in db.execute(
        select(BookingEvent).where(BookingEvent.booking_id == booking_id).order_by(BookingEvent.id)
    ).scalars()]


def _code(booking_id):
    return CheckInVerifier(CHECK_IN_SECRET).generate_code(booking_id)


@pytest.fixture
def confirmed(booking_service, trip):
    """A confirmed 4-person booking with the deposit captured."""
    guide, service, _ = trip
    created = booking_service.create(_request(guide, service), actor_id=CLIENT_ID)
    booking_service.confirm(created.after.id, actor_id=guide.id)
    return booking_service.get_booking(created.after.id)


class TestCreateBooking:
    def test_deposit_booking_amounts(self, booking_service, trip, gateway, db):
        guide, service, _ = trip

        result = booking_service.create(_request(guide, service), actor_id=CLIENT_ID)

        after = result.after
        assert result.before is None
        assert after.status.value == "pending"
        assert after.total_price == Decimal("1000.00")
        assert after.deposit_amount == Decimal("250.00")
        assert after.amount_paid == Decimal("250.00")
        assert after.amount_due == Decimal("750.00")
        assert after.booking_number.startswith("BK-")
        assert _reserved(db, service) == 4
        assert [r.amount_cents for r in gateway.intent_requests] == [25000]
        assert gateway.intent_requests[0].idempotency_key == f"{after.id}:deposit:1"
        assert _events(db, after.id) == ["create"]

    def test_full_payment_charges_total(self, booking_service, trip):
        guide, service, _ = trip

        result = booking_service.create(
            _request(guide, service, participants=2, payment_type="full"), actor_id=CLIENT_ID
        )

        assert result.after.deposit_amount is None
        assert result.after.amount_paid == Decimal("500.00")
        assert result.after.amount_due == Decimal("0.00")

    def test_service_deposit_percentage_overrides_default(
        self, booking_service, make_guide, make_service, make_slot
    ):
        guide = make_guide()
        service = make_service(guide, deposit_percentage=40)
        make_slot(service)

        result = booking_service.create(_request(guide, service, participants=1), actor_id=CLIENT_ID)

        assert result.after.deposit_amount == Decimal("100.00")

    def test_slot_price_override_applies(self, booking_service, make_guide, make_service, make_slot):
        guide = make_guide()
        service = make_service(guide)
        make_slot(service, price_override="300.00")

        result = booking_service.create(_request(guide, service, participants=2), actor_id=CLIENT_ID)

        assert result.after.total_price == Decimal("600.00")

    def test_instant_booking_confirms_immediately(
        self, booking_service, make_guide, make_service, make_slot, db
    ):
        guide = make_guide(instant_booking=True)
        service = make_service(guide)
        make_slot(service)

        result = booking_service.create(_request(guide, service), actor_id=CLIENT_ID)

        assert result.after.status.value == "confirmed"
        assert result.after.confirmed_at is not None
        assert _events(db, result.after.id) == ["create", "confirm"]

    def test_instant_booking_waits_for_unfinished_deposit(
        self, booking_service, make_guide, make_service, make_slot, gateway, db
    ):
        guide = make_guide(instant_booking=True)
        service = make_service(guide)
        make_slot(service)
        gateway.intent_status = PaymentRecordStatus.INITIATED

        result = booking_service.create(_request(guide, service), actor_id=CLIENT_ID)

        assert result.after.status.value == "pending"
        assert result.after.confirmed_at is None
        assert _events(db, result.after.id) == ["create"]

    def test_declined_deposit_releases_capacity(self, booking_service, trip, gateway, db):
        guide, service, _ = trip
        gateway.create_errors = [AuthorizationDeclinedException(decline_code="insufficient_funds")]

        with pytest.raises(AuthorizationDeclinedException):
            booking_service.create(_request(guide, service), actor_id=CLIENT_ID)

        assert _reserved(db, service) == 0
        assert db.execute(select(func.count()).select_from(Booking)).scalar() == 0

    def test_unavailable_processor_retries_then_releases(self, booking_service, trip, gateway, db, sleeps):
        guide, service, _ = trip
        gateway.create_errors = [ProcessorUnavailableException() for _ in range(3)]

        with pytest.raises(ProcessorUnavailableException):
            booking_service.create(_request(guide, service), actor_id=CLIENT_ID)

        assert len(gateway.intent_requests) == 3
        assert len(gateway.distinct_keys()) == 1
        assert sleeps == [0.5, 1.0]
        assert _reserved(db, service) == 0

    def test_not_enough_capacity(self, booking_service, make_guide, make_service, make_slot, db):
        guide = make_guide()
        service = make_service(guide)
        make_slot(service, total=6, reserved=3)

        with pytest.raises(InsufficientCapacityException) as exc_info:
            booking_service.create(_request(guide, service), actor_id=CLIENT_ID)

        assert exc_info.value.details["available"] == 3
        assert _reserved(db, service) == 3

    def test_blocked_date(self, booking_service, make_guide, make_service, make_slot, gateway):
        guide = make_guide()
        service = make_service(guide)
        make_slot(service, blocked=True)

        with pytest.raises(DateBlockedException):
            booking_service.create(_request(guide, service), actor_id=CLIENT_ID)

        assert gateway.intent_requests == []

    def test_unknown_guide(self, booking_service, trip):
        _, service, _ = trip
        request = _request(trip[0], service, guide_id=generate_ulid())

        with pytest.raises(NotFoundException) as exc_info:
            booking_service.create(request, actor_id=CLIENT_ID)

        assert exc_info.value.code == "GUIDE_NOT_FOUND"

    def test_inactive_guide(self, booking_service, make_guide, make_service, make_slot):
        guide = make_guide(active=False)
        service = make_service(guide)
        make_slot(service)

        with pytest.raises(BusinessRuleException) as exc_info:
            booking_service.create(_request(guide, service), actor_id=CLIENT_ID)

        assert exc_info.value.code == "GUIDE_INACTIVE"

    def test_participants_outside_service_range(self, booking_service, trip):
        guide, service, _ = trip

        with pytest.raises(ValidationException) as exc_info:
            booking_service.create(_request(guide, service, participants=11), actor_id=CLIENT_ID)

        assert exc_info.value.code == "PARTICIPANTS_OUT_OF_RANGE"

    def test_start_in_the_past_rejected(self, booking_service, trip):
        guide, service, _ = trip

        with pytest.raises(BusinessRuleException) as exc_info:
            booking_service.create(
                _request(guide, service, start_date=date(2029, 12, 31)), actor_id=CLIENT_ID
            )

        assert exc_info.value.code == "INSUFFICIENT_NOTICE"

    def test_minimum_notice_enforced(self, booking_service, trip):
        guide, service, _ = trip

        with patch.object(settings, "booking_min_notice_hours", 48):
            with pytest.raises(BusinessRuleException) as exc_info:
                booking_service.create(
                    _request(guide, service, start_date=date(2030, 1, 2)), actor_id=CLIENT_ID
                )

        assert "48 hour" in exc_info.value.message

    def test_initiated_intent_persists_without_credit(self, booking_service, trip, gateway):
        guide, service, _ = trip
        gateway.intent_status = PaymentRecordStatus.INITIATED

        result = booking_service.create(_request(guide, service), actor_id=CLIENT_ID)

        assert result.payment.status == "initiated"
        assert result.payment.client_secret
        assert result.after.amount_paid == Decimal("0.00")
        assert result.after.amount_due == Decimal("1000.00")


class TestSimpleTransitions:
    def test_guide_confirms(self, booking_service, trip, db):
        guide, service, _ = trip
        created = booking_service.create(_request(guide, service), actor_id=CLIENT_ID)

        result = booking_service.confirm(created.after.id, actor_id=guide.id)

        assert result.before.status.value == "pending"
        assert result.after.status.value == "confirmed"
        assert result.after.version == result.before.version + 1
        assert _events(db, created.after.id) == ["create", "confirm"]

    def test_confirm_waits_for_unfinished_deposit(self, booking_service, trip, gateway, db):
        guide, service, _ = trip
        gateway.intent_status = PaymentRecordStatus.INITIATED
        created = booking_service.create(_request(guide, service), actor_id=CLIENT_ID)

        with pytest.raises(BusinessRuleException) as exc_info:
            booking_service.confirm(created.after.id, actor_id=guide.id)

        assert exc_info.value.code == "DEPOSIT_PAYMENT_PENDING"
        assert exc_info.value.details["client_secret"] == created.payment.client_secret
        assert booking_service.get_booking(created.after.id).status == "pending"
        assert _events(db, created.after.id) == ["create"]

        gateway.retrieve_status = PaymentRecordStatus.CAPTURED
        booking_service.reconcile_payment(created.after.id, "deposit", actor_id=CLIENT_ID)
        result = booking_service.confirm(created.after.id, actor_id=guide.id)

        assert result.after.status.value == "confirmed"

    def test_client_cannot_confirm(self, booking_service, trip):
        guide, service, _ = trip
        created = booking_service.create(_request(guide, service), actor_id=CLIENT_ID)

        with pytest.raises(ForbiddenException):
            booking_service.confirm(created.after.id, actor_id=CLIENT_ID)

    def test_confirm_twice_is_invalid(self, booking_service, confirmed):
        with pytest.raises(InvalidTransitionException) as exc_info:
            booking_service.confirm(confirmed.id, actor_id=confirmed.guide_id)

        assert exc_info.value.current_status == "confirmed"

    def test_unknown_booking(self, booking_service):
        with pytest.raises(NotFoundException):
            booking_service.confirm(generate_ulid(), actor_id=generate_ulid())

    def test_complete_requires_check_in(self, booking_service, confirmed):
        with pytest.raises(InvalidTransitionException):
            booking_service.complete(confirmed.id, actor_id=confirmed.guide_id)

    def test_complete_after_check_in(self, booking_service, confirmed):
        booking_service.check_in(confirmed.id, _code(confirmed.id), actor_id=confirmed.guide_id)

        result = booking_service.complete(confirmed.id, actor_id=confirmed.guide_id)

        assert result.after.status.value == "completed"
        assert result.after.completed_at is not None


class TestCheckIn:
    def test_check_in_captures_remainder(self, booking_service, confirmed, gateway):
        result = booking_service.check_in(
            confirmed.id, _code(confirmed.id), actor_id=confirmed.guide_id
        )

        assert result.after.status.value == "in_progress"
        assert result.after.amount_paid == Decimal("1000.00")
        assert result.after.amount_due == Decimal("0.00")
        assert result.payment.leg == "remainder"
        assert result.payment.status == "captured"
        assert result.payment.amount_cents == 75000
        assert gateway.charges_for_leg("remainder")[0].idempotency_key == f"{confirmed.id}:remainder:1"

    def test_second_check_in_never_charges_again(self, booking_service, confirmed, gateway):
        code = _code(confirmed.id)
        booking_service.check_in(confirmed.id, code, actor_id=confirmed.guide_id)

        with pytest.raises(AlreadyCheckedInException):
            booking_service.check_in(confirmed.id, code, actor_id=confirmed.guide_id)

        assert len(gateway.charges_for_leg("remainder")) == 1

    def test_wrong_code_leaves_booking_untouched(self, booking_service, confirmed, gateway):
        with pytest.raises(InvalidCheckInCodeException):
            booking_service.check_in(confirmed.id, "ZZZZZZZZ", actor_id=confirmed.guide_id)

        assert booking_service.get_booking(confirmed.id).status == "confirmed"
        assert gateway.charges_for_leg("remainder") == []

    def test_pending_booking_cannot_check_in(self, booking_service, trip):
        guide, service, _ = trip
        created = booking_service.create(_request(guide, service), actor_id=CLIENT_ID)

        with pytest.raises(InvalidTransitionException):
            booking_service.check_in(created.after.id, _code(created.after.id), actor_id=guide.id)

    def test_only_guide_checks_in(self, booking_service, confirmed):
        with pytest.raises(ForbiddenException):
            booking_service.check_in(confirmed.id, _code(confirmed.id), actor_id=CLIENT_ID)

    def test_fully_paid_booking_skips_capture(self, booking_service, trip, gateway):
        guide, service, _ = trip
        created = booking_service.create(
            _request(guide, service, payment_type="full"), actor_id=CLIENT_ID
        )
        booking_service.confirm(created.after.id, actor_id=guide.id)

        result = booking_service.check_in(created.after.id, _code(created.after.id), actor_id=guide.id)

        assert result.payment is None
        assert gateway.charges_for_leg("remainder") == []

    def test_declined_remainder_retires_key(self, booking_service, confirmed, gateway):
        code = _code(confirmed.id)
        gateway.create_errors = [AuthorizationDeclinedException()]

        with pytest.raises(AuthorizationDeclinedException):
            booking_service.check_in(confirmed.id, code, actor_id=confirmed.guide_id)
        assert booking_service.get_booking(confirmed.id).status == "confirmed"

        result = booking_service.check_in(confirmed.id, code, actor_id=confirmed.guide_id)

        keys = [r.idempotency_key for r in gateway.charges_for_leg("remainder")]
        assert keys == [f"{confirmed.id}:remainder:1", f"{confirmed.id}:remainder:2"]
        assert result.after.status.value == "in_progress"

    def test_remainder_needing_client_action_blocks_check_in(self, booking_service, confirmed, gateway):
        gateway.intent_status = PaymentRecordStatus.INITIATED

        with pytest.raises(BusinessRuleException) as exc_info:
            booking_service.check_in(confirmed.id, _code(confirmed.id), actor_id=confirmed.guide_id)

        assert exc_info.value.code == "REMAINDER_PAYMENT_PENDING"
        booking = booking_service.get_booking(confirmed.id)
        assert booking.status == "confirmed"
        assert booking.amount_due == Decimal("750.00")

    def test_unfinished_deposit_blocks_check_in(self, booking_service, confirmed, gateway, db):
        deposit = next(p for p in confirmed.payments if p.leg == "deposit")
        deposit.status = PaymentRecordStatus.INITIATED.value
        confirmed.amount_paid = Decimal("0.00")
        confirmed.amount_due = Decimal("1000.00")
        db.commit()

        with pytest.raises(BusinessRuleException) as exc_info:
            booking_service.check_in(confirmed.id, _code(confirmed.id), actor_id=confirmed.guide_id)

        assert exc_info.value.code == "DEPOSIT_PAYMENT_PENDING"
        assert gateway.charges_for_leg("remainder") == []
        assert booking_service.get_booking(confirmed.id).status == "confirmed"

    def test_authorized_deposit_is_captured_at_check_in(self, booking_service, trip, gateway):
        guide, service, _ = trip
        gateway.intent_status = PaymentRecordStatus.AUTHORIZED
        created = booking_service.create(_request(guide, service), actor_id=CLIENT_ID)
        booking_service.confirm(created.after.id, actor_id=guide.id)
        gateway.intent_status = PaymentRecordStatus.CAPTURED

        result = booking_service.check_in(created.after.id, _code(created.after.id), actor_id=guide.id)

        assert gateway.capture_calls == [("pi_1", 25000, f"{created.after.id}:deposit:1:capture")]
        booking = booking_service.get_booking(created.after.id)
        deposit = next(p for p in booking.payments if p.leg == "deposit")
        assert deposit.status == "captured"
        assert result.after.amount_paid == Decimal("1000.00")
        assert result.after.status.value == "in_progress"

    def test_check_in_code_for_parties_only(self, booking_service, confirmed):
        assert booking_service.check_in_code(confirmed.id, actor_id=CLIENT_ID) == _code(confirmed.id)
        with pytest.raises(ForbiddenException):
            booking_service.check_in_code(confirmed.id, actor_id=generate_ulid())


class TestCancellation:
    def test_cancel_far_out_refunds_everything(self, booking_service, confirmed, gateway, db):
        result = booking_service.cancel(confirmed.id, actor_id=CLIENT_ID, reason="Plans changed")

        assert result.after.status.value == "cancelled"
        assert result.after.refund_amount == Decimal("250.00")
        assert result.after.cancellation_fee == Decimal("0.00")
        assert result.after.refund_issued_at is not None
        assert result.refund["refund_percentage"] == 100
        assert gateway.refund_calls == [("pi_1", 25000, f"{confirmed.id}:deposit:1:refund:1")]
        assert _reserved(db, confirmed.service) == 0

    def test_cancel_with_authorized_deposit_voids_the_hold(self, booking_service, trip, gateway):
        guide, service, _ = trip
        gateway.intent_status = PaymentRecordStatus.AUTHORIZED
        created = booking_service.create(_request(guide, service), actor_id=CLIENT_ID)
        booking_service.confirm(created.after.id, actor_id=guide.id)

        result = booking_service.cancel(created.after.id, actor_id=CLIENT_ID)

        assert result.after.status.value == "cancelled"
        assert result.after.refund_amount == Decimal("250.00")
        assert gateway.cancel_calls == [("pi_1", f"{created.after.id}:deposit:1:refund:1")]
        assert gateway.refund_calls == []

    def test_moderate_policy_two_days_out(self, db, gateway, confirmed):
        starts = datetime.combine(TRIP_DATE, TRIP_TIME, tzinfo=timezone.utc)
        service = build_booking_service(db, gateway, clock=lambda: starts - timedelta(hours=50))

        result = service.cancel(confirmed.id, actor_id=confirmed.guide_id)

        assert result.after.refund_amount == Decimal("125.00")
        assert result.after.cancellation_fee == Decimal("125.00")
        assert gateway.refund_calls[0][1] == 12500
        deposit = next(p for p in service.get_booking(confirmed.id).payments if p.leg == "deposit")
        assert deposit.status == "partially_refunded"

    def test_unknown_policy_aborts_before_any_change(
        self, booking_service, make_guide, make_service, make_slot, gateway, db
    ):
        guide = make_guide(policy="lenient")
        service = make_service(guide)
        make_slot(service)
        created = booking_service.create(_request(guide, service), actor_id=CLIENT_ID)

        with pytest.raises(UnknownPolicyException):
            booking_service.cancel(created.after.id, actor_id=CLIENT_ID)

        assert booking_service.get_booking(created.after.id).status == "pending"
        assert gateway.refund_calls == []
        assert _reserved(db, service) == 4

    def test_refund_failure_keeps_cancellation(self, booking_service, confirmed, gateway, db):
        gateway.refund_errors = [RefundFailedException("Processor rejected the refund")]

        with pytest.raises(RefundFailedException) as exc_info:
            booking_service.cancel(confirmed.id, actor_id=CLIENT_ID)

        assert exc_info.value.to_http_exception().detail["alert"] == "refund_failed"
        booking = booking_service.get_booking(confirmed.id)
        assert booking.status == "cancelled"
        assert booking.refund_error == "Processor rejected the refund"
        assert booking.refund_issued_at is None
        assert _reserved(db, confirmed.service) == 0

    def test_retry_refund_reuses_key(self, booking_service, confirmed, gateway, db):
        gateway.refund_errors = [RefundFailedException("timeout")]
        with pytest.raises(RefundFailedException):
            booking_service.cancel(confirmed.id, actor_id=CLIENT_ID)

        result = booking_service.retry_refund(confirmed.id, actor_id=CLIENT_ID)

        assert result.after.refund_error is None
        assert result.after.refund_issued_at is not None
        assert [call[2] for call in gateway.refund_calls] == [
            f"{confirmed.id}:deposit:1:refund:1",
            f"{confirmed.id}:deposit:1:refund:1",
        ]
        assert _events(db, confirmed.id)[-1] == "retry_refund"
        assert _reserved(db, confirmed.service) == 0

    def test_retry_without_failed_refund(self, booking_service, confirmed):
        with pytest.raises(BusinessRuleException) as exc_info:
            booking_service.retry_refund(confirmed.id, actor_id=CLIENT_ID)

        assert exc_info.value.code == "NO_REFUND_PENDING"

    def test_cannot_cancel_after_check_in(self, booking_service, confirmed):
        booking_service.check_in(confirmed.id, _code(confirmed.id), actor_id=confirmed.guide_id)

        with pytest.raises(InvalidTransitionException):
            booking_service.cancel(confirmed.id, actor_id=CLIENT_ID)

    def test_cancel_without_payment_skips_refund(self, booking_service, trip, gateway, db):
        guide, service, _ = trip
        gateway.intent_status = PaymentRecordStatus.INITIATED
        created = booking_service.create(_request(guide, service), actor_id=CLIENT_ID)

        result = booking_service.cancel(created.after.id, actor_id=CLIENT_ID)

        assert result.after.refund_amount == Decimal("0.00")
        assert result.after.refund_error is None
        assert gateway.refund_calls == []
        assert _reserved(db, service) == 0

    def test_quote_is_read_only(self, booking_service, confirmed):
        quote = booking_service.quote_refund(confirmed.id, actor_id=CLIENT_ID)

        assert quote.refund_amount == Decimal("250.00")
        assert booking_service.get_booking(confirmed.id).status == "confirmed"


class TestDisputes:
    def test_dispute_then_full_refund(self, booking_service, confirmed, gateway, db):
        booking_service.check_in(confirmed.id, _code(confirmed.id), actor_id=confirmed.guide_id)
        booking_service.dispute(confirmed.id, "Trip cut short", actor_id=CLIENT_ID)

        result = booking_service.resolve_refund(confirmed.id, actor_id=generate_ulid())

        assert result.after.status.value == "refunded"
        assert result.after.refund_amount == Decimal("1000.00")
        assert [(c[1]) for c in gateway.refund_calls] == [25000, 75000]
        # Checked-in trips keep their capacity
        assert _reserved(db, confirmed.service) == 4

    def test_partial_refund_takes_deposit_first(self, booking_service, confirmed, gateway):
        booking_service.check_in(confirmed.id, _code(confirmed.id), actor_id=confirmed.guide_id)
        booking_service.dispute(confirmed.id, "Late pickup", actor_id=CLIENT_ID)

        booking_service.resolve_refund(confirmed.id, Decimal("300"), actor_id=generate_ulid())

        assert [c[1] for c in gateway.refund_calls] == [25000, 5000]

    def test_dispute_before_trip_releases_capacity(self, booking_service, confirmed, db):
        booking_service.dispute(confirmed.id, "Guide unresponsive", actor_id=CLIENT_ID)

        booking_service.resolve_refund(confirmed.id, actor_id=generate_ulid())

        assert _reserved(db, confirmed.service) == 0

    def test_refund_above_captured_rejected(self, booking_service, confirmed):
        booking_service.dispute(confirmed.id, "Guide unresponsive", actor_id=CLIENT_ID)

        with pytest.raises(ValidationException) as exc_info:
            booking_service.resolve_refund(confirmed.id, Decimal("250.01"), actor_id=generate_ulid())

        assert exc_info.value.code == "REFUND_EXCEEDS_CAPTURED"
        assert booking_service.get_booking(confirmed.id).status == "disputed"

    def test_outsider_cannot_dispute(self, booking_service, confirmed):
        with pytest.raises(ForbiddenException):
            booking_service.dispute(confirmed.id, "?", actor_id=generate_ulid())


class TestReconcile:
    def test_reconcile_credits_completed_intent(self, booking_service, trip, gateway):
        guide, service, _ = trip
        gateway.intent_status = PaymentRecordStatus.INITIATED
        created = booking_service.create(_request(guide, service), actor_id=CLIENT_ID)
        gateway.retrieve_status = PaymentRecordStatus.CAPTURED

        result = booking_service.reconcile_payment(created.after.id, "deposit", actor_id=CLIENT_ID)

        assert result.payment.status == "captured"
        assert result.after.amount_paid == Decimal("250.00")
        assert result.after.amount_due == Decimal("750.00")

    def test_settlement_beyond_amount_due_is_escalated(self, booking_service, trip, gateway, db):
        guide, service, _ = trip
        gateway.intent_status = PaymentRecordStatus.INITIATED
        created = booking_service.create(_request(guide, service), actor_id=CLIENT_ID)
        booking = booking_service.get_booking(created.after.id)
        booking.amount_paid = Decimal("1000.00")
        booking.amount_due = Decimal("0.00")
        db.commit()
        gateway.retrieve_status = PaymentRecordStatus.CAPTURED

        with pytest.raises(OverpaymentException) as exc_info:
            booking_service.reconcile_payment(created.after.id, "deposit", actor_id=CLIENT_ID)

        assert exc_info.value.code == "PAYMENT_EXCEEDS_DUE"
        booking = booking_service.get_booking(created.after.id)
        assert booking.amount_paid == Decimal("1000.00")
        assert booking.amount_due == Decimal("0.00")
        assert next(p for p in booking.payments if p.leg == "deposit").status == "initiated"

    def test_reconcile_missing_leg(self, booking_service, confirmed):
        with pytest.raises(NotFoundException):
            booking_service.reconcile_payment(confirmed.id, "remainder", actor_id=CLIENT_ID)


class TestReads:
    def test_lists_and_lookup(self, booking_service, confirmed):
        assert [b.id for b in booking_service.list_for_client(CLIENT_ID)] == [confirmed.id]
        assert [b.id for b in booking_service.list_for_guide(confirmed.guide_id, "confirmed")] == [
            confirmed.id
        ]
        assert booking_service.list_for_guide(confirmed.guide_id, "cancelled") == []
        assert booking_service.get_by_number(confirmed.booking_number).id == confirmed.id

    def test_events_carry_actors(self, booking_service, confirmed):
        events = booking_service.events_for(confirmed.id)

        assert [(e.event, e.from_status, e.to_status) for e in events] == [
            ("create", None, "pending"),
            ("confirm", "pending", "confirmed"),
        ]
        assert events[0].actor_id == CLIENT_ID
        assert events[1].actor_id == confirmed.guide_id

    def test_clock_is_injected(self, booking_service, confirmed):
        assert booking_service.get_booking(confirmed.id).confirmed_at.replace(
            tzinfo=timezone.utc
        ) == FIXED_NOW
