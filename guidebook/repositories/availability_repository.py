# guidebook/repositories/availability_repository.py
"""
Availability Repository

Capacity counters are only ever changed through single conditional UPDATE
statements so the database, not the Python process, decides whether a
reservation fits:

    UPDATE availability_slots
       SET reserved_count = reserved_count + :n
     WHERE guide_id = :g AND service_id = :s AND slot_date = :d
       AND is_blocked = false
       AND reserved_count + :n <= total_capacity

A rowcount of 0 means the reservation did not fit (or the slot is blocked
or missing); the caller re-reads the slot to say which.
"""

from datetime import date
import logging
from typing import List, Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.availability import AvailabilitySlot, RecurringAvailability
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class AvailabilityRepository(BaseRepository[AvailabilitySlot]):
    def __init__(self, db: Session):
        super().__init__(db, AvailabilitySlot)

    def get_slot(self, guide_id: str, service_id: str, slot_date: date) -> Optional[AvailabilitySlot]:
        # populate_existing: counters change through Core UPDATEs behind the identity map
        stmt = (
            select(AvailabilitySlot)
            .where(
                AvailabilitySlot.guide_id == guide_id,
                AvailabilitySlot.service_id == service_id,
                AvailabilitySlot.slot_date == slot_date,
            )
            .execution_options(populate_existing=True)
        )
        try:
            return self.db.execute(stmt).scalars().first()
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load availability slot: {str(e)}")

    def get_slots_in_range(
        self, guide_id: str, service_id: str, start_date: date, end_date: date
    ) -> List[AvailabilitySlot]:
        stmt = (
            select(AvailabilitySlot)
            .where(
                AvailabilitySlot.guide_id == guide_id,
                AvailabilitySlot.service_id == service_id,
                AvailabilitySlot.slot_date >= start_date,
                AvailabilitySlot.slot_date <= end_date,
            )
            .order_by(AvailabilitySlot.slot_date)
            .execution_options(populate_existing=True)
        )
        try:
            return list(self.db.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load availability range: {str(e)}")

    def try_reserve(self, guide_id: str, service_id: str, slot_date: date, participants: int) -> bool:
        """Atomically add participants if they fit. Returns whether a row was updated."""
        stmt = (
            update(AvailabilitySlot)
            .where(
                AvailabilitySlot.guide_id == guide_id,
                AvailabilitySlot.service_id == service_id,
                AvailabilitySlot.slot_date == slot_date,
                AvailabilitySlot.is_blocked.is_(False),
                AvailabilitySlot.reserved_count + participants <= AvailabilitySlot.total_capacity,
            )
            .values(reserved_count=AvailabilitySlot.reserved_count + participants)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
        except SQLAlchemyError as e:
            self.logger.error("Conditional reserve failed: %s", e)
            raise RepositoryException(f"Failed to reserve capacity: {str(e)}")
        return result.rowcount == 1

    def release(self, guide_id: str, service_id: str, slot_date: date, participants: int) -> bool:
        """Subtract participants, flooring at zero. Returns whether a slot row exists."""
        stmt = (
            update(AvailabilitySlot)
            .where(
                AvailabilitySlot.guide_id == guide_id,
                AvailabilitySlot.service_id == service_id,
                AvailabilitySlot.slot_date == slot_date,
            )
            .values(
                reserved_count=case(
                    (
                        AvailabilitySlot.reserved_count >= participants,
                        AvailabilitySlot.reserved_count - participants,
                    ),
                    else_=0,
                )
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
        except SQLAlchemyError as e:
            self.logger.error("Capacity release failed: %s", e)
            raise RepositoryException(f"Failed to release capacity: {str(e)}")
        return result.rowcount == 1

    def unblock_range(self, guide_id: str, service_id: str, start_date: date, end_date: date) -> int:
        """Clear the block flag on every slot row in the range. Returns rows changed."""
        stmt = (
            update(AvailabilitySlot)
            .where(
                AvailabilitySlot.guide_id == guide_id,
                AvailabilitySlot.service_id == service_id,
                AvailabilitySlot.slot_date >= start_date,
                AvailabilitySlot.slot_date <= end_date,
                AvailabilitySlot.is_blocked.is_(True),
            )
            .values(is_blocked=False, blocked_reason=None)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
        except SQLAlchemyError as e:
            self.logger.error("Range unblock failed: %s", e)
            raise RepositoryException(f"Failed to unblock dates: {str(e)}")
        return int(result.rowcount or 0)

    # Weekly patterns

    def get_pattern(
        self, guide_id: str, service_id: str, weekday: int
    ) -> Optional[RecurringAvailability]:
        stmt = select(RecurringAvailability).where(
            RecurringAvailability.guide_id == guide_id,
            RecurringAvailability.service_id == service_id,
            RecurringAvailability.weekday == weekday,
        )
        try:
            return self.db.execute(stmt).scalars().first()
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load recurring availability: {str(e)}")

    def get_patterns(self, guide_id: str, service_id: str) -> List[RecurringAvailability]:
        stmt = (
            select(RecurringAvailability)
            .where(
                RecurringAvailability.guide_id == guide_id,
                RecurringAvailability.service_id == service_id,
            )
            .order_by(RecurringAvailability.weekday)
        )
        try:
            return list(self.db.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load recurring availability: {str(e)}")

    def add_pattern(self, **kwargs) -> RecurringAvailability:
        pattern = RecurringAvailability(**kwargs)
        try:
            self.db.add(pattern)
            self.db.flush()
        except IntegrityError as e:
            self.logger.error("Recurring availability conflict: %s", e)
            raise RepositoryException(f"Integrity constraint violated: {e.orig}")
        return pattern

    def delete_pattern(self, pattern: RecurringAvailability) -> None:
        try:
            self.db.delete(pattern)
            self.db.flush()
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to delete recurring availability: {str(e)}")
