"""
Payment records for booking legs.

Each booking has at most one record per leg (deposit, remainder). The
record carries the processor intent id and the idempotency key used for
every call about that leg, so a retried operation reaches the processor with
the key it used the first time.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
import ulid

from ..core.enums import PaymentRecordStatus
from ..database import Base

if TYPE_CHECKING:
    from .booking import Booking


class PaymentRecord(Base):
    """Processor payment intent for one booking leg."""

    __tablename__ = "payment_records"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("bookings.id"), nullable=False, index=True
    )
    leg: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, comment="Amount in cents")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PaymentRecordStatus.INITIATED.value
    )

    intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    client_secret: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    payment_method_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    refunded_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refund_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_message: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )
    captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    booking: Mapped["Booking"] = relationship("Booking", back_populates="payments")

    __table_args__ = (UniqueConstraint("booking_id", "leg", name="uq_payment_records_booking_leg"),)

    @property
    def refundable_cents(self) -> int:
        if self.status not in (
            PaymentRecordStatus.AUTHORIZED.value,
            PaymentRecordStatus.CAPTURED.value,
            PaymentRecordStatus.PARTIALLY_REFUNDED.value,
        ):
            return 0
        return max(int(self.amount_cents) - int(self.refunded_cents or 0), 0)

    def __repr__(self) -> str:
        return (
            f"<PaymentRecord(booking_id={self.booking_id}, leg={self.leg}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )
