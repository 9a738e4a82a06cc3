# guidebook/api/dependencies.py
"""
Dependency providers for the HTTP layer.

Each request gets one SQLAlchemy session; every service built for that
request shares it.
"""

from functools import lru_cache
import logging
from typing import Generator

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import ValidationException
from ..core.ulid_helper import is_valid_ulid
from ..database import get_db as original_get_db
from ..integrations import PaymentGateway, build_payment_gateway
from ..services.availability_service import AvailabilityService
from ..services.booking_service import BookingService
from ..services.cancellation_policy import CancellationPolicyEngine
from ..services.check_in_service import CheckInVerifier
from ..services.payment_service import PaymentOrchestrator

logger = logging.getLogger(__name__)


def get_db() -> Generator[Session, None, None]:
    """
    Get database session dependency.

    Yields:
        Database session that will be closed after use
    """
    yield from original_get_db()


def get_actor_id(x_actor_id: str = Header(..., alias="X-Actor-Id")) -> str:
    """Acting identity supplied by the upstream auth layer."""
    actor_id = x_actor_id.strip()
    if not is_valid_ulid(actor_id):
        raise ValidationException("X-Actor-Id must be a ULID", code="INVALID_ACTOR")
    return actor_id


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGateway:
    """Process-wide payment gateway built from settings."""
    gateway = build_payment_gateway(settings)
    logger.info("Payment gateway initialized: %s", gateway.name)
    return gateway


@lru_cache(maxsize=1)
def get_policy_engine() -> CancellationPolicyEngine:
    return CancellationPolicyEngine(settings.cancellation_policy_table)


@lru_cache(maxsize=1)
def get_check_in_verifier() -> CheckInVerifier:
    return CheckInVerifier(settings.check_in_secret)


def get_availability_service(db: Session = Depends(get_db)) -> AvailabilityService:
    return AvailabilityService(db)


def get_payment_orchestrator(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(db, gateway)


def get_booking_service(
    db: Session = Depends(get_db),
    availability: AvailabilityService = Depends(get_availability_service),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
    policy_engine: CancellationPolicyEngine = Depends(get_policy_engine),
    verifier: CheckInVerifier = Depends(get_check_in_verifier),
) -> BookingService:
    """
    Get booking service instance with all dependencies.

    Returns:
        BookingService sharing the request's session with its collaborators
    """
    return BookingService(
        db,
        payments=payments,
        availability=availability,
        policy_engine=policy_engine,
        verifier=verifier,
    )
