"""Append-only log of booking state transitions."""

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..database import Base


class BookingEvent(Base):
    __tablename__ = "booking_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(String(26), ForeignKey("bookings.id"), nullable=False, index=True)
    event = Column(String(32), nullable=False)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    actor_id = Column(String(26), nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    booking = relationship("Booking", back_populates="events")

    def __repr__(self) -> str:
        return (
            f"<BookingEvent {self.booking_id} {self.event}: "
            f"{self.from_status} -> {self.to_status} by {self.actor_id}>"
        )
