"""
Shared fixtures for the Guidebook test suite.

Every test gets a fresh in-memory SQLite database (StaticPool, so every
session sees the same connection), a FakeGateway standing in for the payment
processor, and a fixed clock.
"""

import os

# Settings are read at import time; pin them before importing the package
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SLOT_LOCK_BACKEND", "local")
os.environ.setdefault("PAYMENT_GATEWAY", "http")
os.environ.setdefault("CHECK_IN_SECRET", "test-check-in-secret")
os.environ.setdefault("BOOKING_TIMEZONE", "UTC")

from dataclasses import replace  # noqa: E402
from datetime import date, datetime, time, timedelta, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402
import threading  # noqa: E402
from typing import Callable, Dict, List, Optional, Tuple  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from guidebook.core.enums import CancellationPolicyKind, PaymentRecordStatus, PaymentType  # noqa: E402
from guidebook.core.ulid_helper import generate_booking_number, generate_ulid  # noqa: E402
from guidebook.database import create_db_engine, init_db  # noqa: E402
from guidebook.integrations.payment_gateway import (  # noqa: E402
    PaymentIntentRequest,
    PaymentIntentResult,
    RefundResult,
)
from guidebook.models import AvailabilitySlot, Booking, Guide, GuideService  # noqa: E402
from guidebook.services.availability_service import AvailabilityService  # noqa: E402
from guidebook.services.booking_service import BookingService  # noqa: E402
from guidebook.services.cancellation_policy import CancellationPolicyEngine  # noqa: E402
from guidebook.services.check_in_service import CheckInVerifier  # noqa: E402
from guidebook.services.payment_service import PaymentOrchestrator  # noqa: E402

FIXED_NOW = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
TRIP_DATE = date(2030, 3, 1)
TRIP_TIME = time(9, 0)
CHECK_IN_SECRET = "test-check-in-secret"


def _enable_foreign_keys(dbapi_connection, _record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class FakeGateway:
    """
    In-memory PaymentGateway.

    Intents are keyed by idempotency key, so replaying a key returns the
    original intent exactly like a real processor does. ``create_errors``,
    ``refund_errors`` and ``capture_errors`` are raised (in order) before any
    successful call.
    """

    name = "fake"

    def __init__(self) -> None:
        self.intent_status = PaymentRecordStatus.CAPTURED
        self.retrieve_status: Optional[PaymentRecordStatus] = None
        self.create_errors: List[Exception] = []
        self.refund_errors: List[Exception] = []
        self.intent_requests: List[PaymentIntentRequest] = []
        self.refund_calls: List[Tuple[str, int, str]] = []
        self.capture_calls: List[Tuple[str, int, str]] = []
        self.cancel_calls: List[Tuple[str, str]] = []
        self.capture_errors: List[Exception] = []
        self._intents: Dict[str, PaymentIntentResult] = {}
        self._lock = threading.Lock()

    def create_payment_intent(self, request: PaymentIntentRequest) -> PaymentIntentResult:
        with self._lock:
            self.intent_requests.append(request)
            if self.create_errors:
                raise self.create_errors.pop(0)
            existing = self._intents.get(request.idempotency_key)
            if existing is not None:
                return existing
            intent_id = f"pi_{len(self._intents) + 1}"
            result = PaymentIntentResult(
                intent_id=intent_id,
                status=self.intent_status,
                client_secret=f"{intent_id}_secret_test",
                amount_cents=request.amount_cents,
            )
            self._intents[request.idempotency_key] = result
            return result

    def refund(self, intent_id: str, amount_cents: int, idempotency_key: str) -> RefundResult:
        with self._lock:
            self.refund_calls.append((intent_id, amount_cents, idempotency_key))
            if self.refund_errors:
                raise self.refund_errors.pop(0)
            return RefundResult(refund_id=f"re_{len(self.refund_calls)}", amount_cents=amount_cents)

    def capture_intent(self, intent_id: str, amount_cents: int, idempotency_key: str) -> PaymentIntentResult:
        with self._lock:
            self.capture_calls.append((intent_id, amount_cents, idempotency_key))
            if self.capture_errors:
                raise self.capture_errors.pop(0)
            return self._set_status(intent_id, PaymentRecordStatus.CAPTURED, amount_cents)

    def cancel_intent(self, intent_id: str, idempotency_key: str) -> PaymentIntentResult:
        with self._lock:
            self.cancel_calls.append((intent_id, idempotency_key))
            return self._set_status(intent_id, PaymentRecordStatus.FAILED)

    def _set_status(
        self, intent_id: str, status: PaymentRecordStatus, amount_cents: Optional[int] = None
    ) -> PaymentIntentResult:
        for key, result in self._intents.items():
            if result.intent_id == intent_id:
                updated = replace(
                    result,
                    status=status,
                    amount_cents=result.amount_cents if amount_cents is None else amount_cents,
                )
                self._intents[key] = updated
                return updated
        raise KeyError(intent_id)

    def retrieve_intent(self, intent_id: str) -> PaymentIntentResult:
        for result in self._intents.values():
            if result.intent_id == intent_id:
                status = self.retrieve_status or result.status
                return PaymentIntentResult(
                    intent_id=intent_id,
                    status=status,
                    client_secret=result.client_secret,
                    amount_cents=result.amount_cents,
                )
        raise KeyError(intent_id)

    def charges_for_leg(self, leg: str) -> List[PaymentIntentRequest]:
        return [r for r in self.intent_requests if r.leg == leg]

    def distinct_keys(self) -> set:
        return {r.idempotency_key for r in self.intent_requests}


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(test_engine, "connect", _enable_foreign_keys)
    init_db(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory) -> Session:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW


@pytest.fixture
def verifier() -> CheckInVerifier:
    return CheckInVerifier(CHECK_IN_SECRET)


@pytest.fixture
def sleeps() -> List[float]:
    return []


def build_booking_service(
    db: Session,
    gateway: FakeGateway,
    *,
    clock: Callable[[], datetime] = lambda: FIXED_NOW,
    verifier: Optional[CheckInVerifier] = None,
    sleeps: Optional[List[float]] = None,
    policy_table=None,
) -> BookingService:
    sink = sleeps if sleeps is not None else []
    payments = PaymentOrchestrator(
        db, gateway, currency="usd", max_attempts=3, retry_backoff=0.5, sleep=sink.append
    )
    return BookingService(
        db,
        payments=payments,
        availability=AvailabilityService(db),
        policy_engine=CancellationPolicyEngine(policy_table),
        verifier=verifier or CheckInVerifier(CHECK_IN_SECRET),
        clock=clock,
    )


@pytest.fixture
def booking_service(db, gateway, clock, verifier, sleeps) -> BookingService:
    return build_booking_service(db, gateway, clock=clock, verifier=verifier, sleeps=sleeps)


@pytest.fixture
def make_guide(db) -> Callable[..., Guide]:
    def _make(
        *,
        policy: str = CancellationPolicyKind.MODERATE.value,
        instant_booking: bool = False,
        active: bool = True,
    ) -> Guide:
        guide = Guide(
            id=generate_ulid(),
            business_name="Ridge Line Guiding",
            cancellation_policy=policy,
            instant_booking_enabled=instant_booking,
            active=active,
        )
        db.add(guide)
        db.commit()
        return guide

    return _make


@pytest.fixture
def make_service(db) -> Callable[..., GuideService]:
    def _make(
        guide: Guide,
        *,
        price: str = "250.00",
        deposit_percentage: Optional[int] = None,
        min_participants: int = 1,
        max_participants: int = 10,
        active: bool = True,
    ) -> GuideService:
        service = GuideService(
            id=generate_ulid(),
            guide_id=guide.id,
            title="Glacier day hike",
            price_per_person=Decimal(price),
            deposit_percentage=deposit_percentage,
            min_participants=min_participants,
            max_participants=max_participants,
            duration_hours=Decimal("8"),
            active=active,
        )
        db.add(service)
        db.commit()
        return service

    return _make


@pytest.fixture
def make_slot(db) -> Callable[..., AvailabilitySlot]:
    def _make(
        service: GuideService,
        *,
        slot_date: date = TRIP_DATE,
        total: int = 6,
        reserved: int = 0,
        blocked: bool = False,
        price_override: Optional[str] = None,
    ) -> AvailabilitySlot:
        slot = AvailabilitySlot(
            id=generate_ulid(),
            guide_id=service.guide_id,
            service_id=service.id,
            slot_date=slot_date,
            total_capacity=total,
            reserved_count=reserved,
            is_blocked=blocked,
            price_override=Decimal(price_override) if price_override else None,
        )
        db.add(slot)
        db.commit()
        return slot

    return _make


@pytest.fixture
def make_booking(db) -> Callable[..., Booking]:
    """Insert a booking row directly (no reservation, no payment)."""

    def _make(
        service: GuideService,
        *,
        total: str = "1000.00",
        paid: str = "0.00",
        status: str = "pending",
        participants: int = 4,
        client_id: Optional[str] = None,
        start_date: date = TRIP_DATE,
    ) -> Booking:
        total_dec = Decimal(total)
        paid_dec = Decimal(paid)
        booking = Booking(
            id=generate_ulid(),
            booking_number=generate_booking_number(),
            client_id=client_id or generate_ulid(),
            guide_id=service.guide_id,
            service_id=service.id,
            start_date=start_date,
            start_time=TRIP_TIME,
            participants=participants,
            total_price=total_dec,
            deposit_amount=Decimal("250.00"),
            amount_paid=paid_dec,
            amount_due=total_dec - paid_dec,
            payment_type=PaymentType.DEPOSIT.value,
            status=status,
            client_details={"name": "Ada", "email": "ada@example.com", "phone": "555-0100"},
        )
        db.add(booking)
        db.commit()
        return booking

    return _make


@pytest.fixture
def trip(make_guide, make_service, make_slot):
    """A moderate-policy guide with a $250/person service and a 6-spot slot."""
    guide = make_guide()
    service = make_service(guide)
    slot = make_slot(service)
    return guide, service, slot


@pytest.fixture
def file_engine(tmp_path):
    """File-backed SQLite: one connection per session, as in production."""
    test_engine = create_db_engine(f"sqlite:///{tmp_path / 'guidebook-test.db'}")
    init_db(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def file_session_factory(file_engine):
    return sessionmaker(bind=file_engine, autocommit=False, autoflush=False, expire_on_commit=False)


def future(days: int) -> date:
    return FIXED_NOW.date() + timedelta(days=days)
