# guidebook/repositories/booking_repository.py
"""
Booking Repository

Data access for bookings and their transition log. Status changes are not
written here directly: BookingService mutates the mapped instance and the
mapper's version_id_col turns the flush into a compare-and-swap.
"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.booking import Booking
from ..models.booking_event import BookingEvent
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class BookingRepository(BaseRepository[Booking]):
    def __init__(self, db: Session):
        super().__init__(db, Booking)

    def get_fresh(self, booking_id: str) -> Optional[Booking]:
        """Load a booking bypassing the identity map (used after a lost race)."""
        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        try:
            return self.db.execute(stmt).scalars().first()
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to reload booking: {str(e)}")

    def get_by_number(self, booking_number: str) -> Optional[Booking]:
        return self.find_one_by(booking_number=booking_number)

    def list_for_guide(self, guide_id: str, status: Optional[str] = None) -> List[Booking]:
        stmt = select(Booking).where(Booking.guide_id == guide_id)
        if status:
            stmt = stmt.where(Booking.status == status)
        stmt = stmt.order_by(Booking.start_date, Booking.start_time)
        return list(self.db.execute(stmt).scalars().all())

    def list_for_client(self, client_id: str, status: Optional[str] = None) -> List[Booking]:
        stmt = select(Booking).where(Booking.client_id == client_id)
        if status:
            stmt = stmt.where(Booking.status == status)
        stmt = stmt.order_by(Booking.start_date.desc(), Booking.start_time.desc())
        return list(self.db.execute(stmt).scalars().all())

    def add_event(
        self,
        booking_id: str,
        event: str,
        from_status: Optional[str],
        to_status: str,
        actor_id: Optional[str],
        details: Optional[dict] = None,
    ) -> BookingEvent:
        entry = BookingEvent(
            booking_id=booking_id,
            event=event,
            from_status=from_status,
            to_status=to_status,
            actor_id=actor_id,
            details=details or {},
        )
        self.db.add(entry)
        return entry

    def list_events(self, booking_id: str) -> List[BookingEvent]:
        stmt = (
            select(BookingEvent)
            .where(BookingEvent.booking_id == booking_id)
            .order_by(BookingEvent.id)
        )
        return list(self.db.execute(stmt).scalars().all())
