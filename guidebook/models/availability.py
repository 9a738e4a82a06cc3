# guidebook/models/availability.py
"""
Availability models.

AvailabilitySlot has one row per (guide, service, date) holding the
participant capacity pool. reserved_count is maintained exclusively by
AvailabilityRepository's conditional updates so it always equals the sum
of active bookings' participants. RecurringAvailability supplies defaults
for dates that have no slot row yet.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func
import ulid

from ..database import Base


class AvailabilitySlot(Base):
    __tablename__ = "availability_slots"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    guide_id = Column(String(26), ForeignKey("guides.id"), nullable=False)
    service_id = Column(String(26), ForeignKey("guide_services.id"), nullable=False)
    slot_date = Column(Date, nullable=False, index=True)

    total_capacity = Column(Integer, nullable=False, default=0)
    reserved_count = Column(Integer, nullable=False, default=0)
    is_blocked = Column(Boolean, nullable=False, default=False)
    blocked_reason = Column(String(255), nullable=True)
    price_override = Column(Numeric(10, 2), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("guide_id", "service_id", "slot_date", name="uq_availability_slot"),
        CheckConstraint("total_capacity >= 0", name="ck_availability_total_non_negative"),
        CheckConstraint("reserved_count >= 0", name="ck_availability_reserved_non_negative"),
        CheckConstraint(
            "reserved_count <= total_capacity", name="ck_availability_reserved_within_total"
        ),
    )

    @property
    def available(self) -> int:
        """Free spots; a blocked slot has none regardless of numeric slack."""
        if self.is_blocked:
            return 0
        return max(int(self.total_capacity or 0) - int(self.reserved_count or 0), 0)

    def __repr__(self) -> str:
        return (
            f"<AvailabilitySlot {self.guide_id}/{self.service_id} {self.slot_date}: "
            f"{self.reserved_count}/{self.total_capacity} blocked={self.is_blocked}>"
        )


class RecurringAvailability(Base):
    """
    Weekly default capacity for a service.

    A date with no slot row takes its capacity (and price override) from the
    pattern for its weekday; the row is only written once the date is
    reserved, blocked or edited. ``weekday`` follows ``date.weekday()``
    (Monday is 0).
    """

    __tablename__ = "recurring_availability"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    guide_id = Column(String(26), ForeignKey("guides.id"), nullable=False)
    service_id = Column(String(26), ForeignKey("guide_services.id"), nullable=False)
    weekday = Column(Integer, nullable=False)
    total_capacity = Column(Integer, nullable=False)
    price_override = Column(Numeric(10, 2), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("guide_id", "service_id", "weekday", name="uq_recurring_availability_weekday"),
        CheckConstraint("weekday >= 0 AND weekday <= 6", name="ck_recurring_availability_weekday"),
        CheckConstraint("total_capacity >= 0", name="ck_recurring_availability_total_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"<RecurringAvailability {self.guide_id}/{self.service_id} "
            f"weekday={self.weekday} capacity={self.total_capacity}>"
        )
