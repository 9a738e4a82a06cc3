# guidebook/models/booking.py
"""
Booking model for the Guidebook platform.

A booking reserves participants on a guide's service for one date and is
paid in up to two legs (deposit at booking time, remainder at check-in).
Rows are mutated only through BookingService transitions and are never
hard-deleted; cancelled/refunded/completed are terminal statuses.

Concurrency: ``version`` is the mapper's version_id_col, so every flush of a
changed booking issues ``UPDATE ... WHERE id = :id AND version = :seen`` and
raises StaleDataError if another writer got there first.
"""

from datetime import datetime
import logging
from typing import Any

import pytz
from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Time,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..core.config import settings
from ..core.enums import BookingStatus, PaymentType
from ..database import Base

logger = logging.getLogger(__name__)

IS_SQLITE = settings.database_url.lower().startswith("sqlite")


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    booking_number = Column(String(32), nullable=False, unique=True, index=True)

    client_id = Column(String(26), nullable=False, index=True)
    guide_id = Column(String(26), ForeignKey("guides.id"), nullable=False, index=True)
    service_id = Column(String(26), ForeignKey("guide_services.id"), nullable=False)

    start_date = Column(Date, nullable=False, index=True)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=True)
    participants = Column(Integer, nullable=False)

    # Money (dollars, 2dp). amount_paid + amount_due == total_price always.
    total_price = Column(Numeric(10, 2), nullable=False)
    deposit_amount = Column(Numeric(10, 2), nullable=True)
    amount_paid = Column(Numeric(10, 2), nullable=False, default=0)
    amount_due = Column(Numeric(10, 2), nullable=False)
    payment_type = Column(String(20), nullable=False, default=PaymentType.DEPOSIT.value)

    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value, index=True)
    version = Column(Integer, nullable=False, default=1)

    client_details = Column(JSON, nullable=False, default=dict)
    special_requests = Column(Text, nullable=True)
    pickup_location = Column(Text, nullable=True)

    # Cancellation / refund
    cancellation_reason = Column(Text, nullable=True)
    cancellation_fee = Column(Numeric(10, 2), nullable=True)
    refund_amount = Column(Numeric(10, 2), nullable=True)
    refund_error = Column(String(500), nullable=True)
    dispute_reason = Column(Text, nullable=True)

    # Actors
    confirmed_by_id = Column(String(26), nullable=True)
    checked_in_by_id = Column(String(26), nullable=True)
    cancelled_by_id = Column(String(26), nullable=True)
    disputed_by_id = Column(String(26), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    checked_in_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    disputed_at = Column(DateTime(timezone=True), nullable=True)
    refund_issued_at = Column(DateTime(timezone=True), nullable=True)

    guide = relationship("Guide")
    service = relationship("GuideService")
    payments = relationship(
        "PaymentRecord", back_populates="booking", order_by="PaymentRecord.created_at"
    )
    events = relationship(
        "BookingEvent", back_populates="booking", order_by="BookingEvent.id"
    )

    _table_constraints = [
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'in_progress', 'completed', "
            "'cancelled', 'disputed', 'refunded')",
            name="ck_bookings_status",
        ),
        CheckConstraint(
            "payment_type IN ('full', 'deposit', 'installment')",
            name="ck_bookings_payment_type",
        ),
        CheckConstraint("participants > 0", name="ck_bookings_participants_positive"),
        CheckConstraint("total_price >= 0", name="ck_bookings_price_non_negative"),
        CheckConstraint("amount_paid >= 0", name="ck_bookings_paid_non_negative"),
        CheckConstraint("amount_due >= 0", name="ck_bookings_due_non_negative"),
    ]

    if not IS_SQLITE:
        # SQLite stores NUMERIC with float affinity, so exact sums are only
        # enforced by the database on real dialects
        _table_constraints.append(
            CheckConstraint(
                "amount_paid + amount_due = total_price", name="ck_bookings_amounts_balance"
            )
        )

    __table_args__ = tuple(_table_constraints)
    __mapper_args__ = {"version_id_col": version}

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if not self.status:
            self.status = BookingStatus.PENDING.value

    def __repr__(self) -> str:
        return (
            f"<Booking {self.id} ({self.booking_number}): guide={self.guide_id}, "
            f"date={self.start_date}, participants={self.participants}, status={self.status}>"
        )

    @property
    def status_enum(self) -> BookingStatus:
        return BookingStatus(self.status)

    def starts_at(self, tz_name: str | None = None) -> datetime:
        """Scheduled start as an aware UTC datetime."""
        tz = pytz.timezone(tz_name or settings.booking_timezone)
        local = tz.localize(datetime.combine(self.start_date, self.start_time))
        return local.astimezone(pytz.utc)
