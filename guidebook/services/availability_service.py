# guidebook/services/availability_service.py
"""
Availability Service for the Guidebook booking engine.

Owns the per-(guide, service, date) participant capacity pool. Reservations
run under the slot mutex from ``core.slot_lock`` and are decided by the
repository's conditional UPDATE, so two reservers can never both take the
last spot.

Weekly patterns (RecurringAvailability) fill in dates the guide never set
explicitly. Reads compute those dates on the fly; the first reservation or
block writes the slot row, which from then on owns the date.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
import logging
from typing import Dict, Iterator, List, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import (
    BusinessRuleException,
    DateBlockedException,
    ForbiddenException,
    InsufficientCapacityException,
    NotFoundException,
    ValidationException,
)
from ..core.money import MoneyLike, to_money
from ..core.slot_lock import slot_lock
from ..models.availability import AvailabilitySlot, RecurringAvailability
from ..models.guide import GuideService
from ..repositories.availability_repository import AvailabilityRepository
from .base import BaseService

logger = logging.getLogger(__name__)

MAX_QUERY_RANGE_DAYS = 366
WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def _validate_range(start_date: date, end_date: date) -> None:
    if end_date < start_date:
        raise ValidationException("end_date must not be before start_date", code="INVALID_RANGE")
    if (end_date - start_date) > timedelta(days=MAX_QUERY_RANGE_DAYS):
        raise ValidationException(
            f"Date range cannot exceed {MAX_QUERY_RANGE_DAYS} days", code="INVALID_RANGE"
        )


def _each_day(start_date: date, end_date: date) -> Iterator[date]:
    day = start_date
    while day <= end_date:
        yield day
        day += timedelta(days=1)


@dataclass(frozen=True)
class SlotAvailability:
    slot_date: date
    total_capacity: int
    reserved_count: int
    available: int
    is_blocked: bool
    price_override: Optional[Decimal] = None
    blocked_reason: Optional[str] = None
    is_computed: bool = False

    @classmethod
    def from_slot(cls, slot: AvailabilitySlot) -> "SlotAvailability":
        return cls(
            slot_date=slot.slot_date,
            total_capacity=int(slot.total_capacity or 0),
            reserved_count=int(slot.reserved_count or 0),
            available=slot.available,
            is_blocked=bool(slot.is_blocked),
            price_override=to_money(slot.price_override) if slot.price_override is not None else None,
            blocked_reason=slot.blocked_reason,
        )

    @classmethod
    def computed(cls, slot_date: date, pattern: RecurringAvailability) -> "SlotAvailability":
        """A date with no slot row, read through its weekly pattern."""
        capacity = int(pattern.total_capacity or 0)
        return cls(
            slot_date=slot_date,
            total_capacity=capacity,
            reserved_count=0,
            available=capacity,
            is_blocked=False,
            price_override=(
                to_money(pattern.price_override) if pattern.price_override is not None else None
            ),
            is_computed=True,
        )


@dataclass(frozen=True)
class WeeklyPattern:
    weekday: int
    total_capacity: int
    price_override: Optional[Decimal] = None

    @property
    def weekday_name(self) -> str:
        return WEEKDAY_NAMES[self.weekday]

    @classmethod
    def from_model(cls, pattern: RecurringAvailability) -> "WeeklyPattern":
        return cls(
            weekday=int(pattern.weekday),
            total_capacity=int(pattern.total_capacity),
            price_override=(
                to_money(pattern.price_override) if pattern.price_override is not None else None
            ),
        )


class AvailabilityService(BaseService):
    """Capacity reservation, release and guide-side slot management."""

    def __init__(self, db: Session, repository: Optional[AvailabilityRepository] = None):
        super().__init__(db)
        self.repository = repository or AvailabilityRepository(db)

    @BaseService.measure_operation("reserve_capacity")
    def reserve(self, guide_id: str, service_id: str, slot_date: date, participants: int) -> None:
        """
        Atomically add ``participants`` to the slot's reserved count.

        Raises:
            ValidationException: participants < 1
            DateBlockedException: the guide blocked the date
            InsufficientCapacityException: not enough free spots (or no slot row or pattern)
        """
        if participants < 1:
            raise ValidationException("At least one participant is required", code="INVALID_PARTICIPANTS")

        with slot_lock(guide_id, service_id, slot_date):
            with self.transaction():
                self._materialize(guide_id, service_id, slot_date)
                reserved = self.repository.try_reserve(guide_id, service_id, slot_date, participants)

            if reserved:
                self.log_operation(
                    "reserve_capacity",
                    guide_id=guide_id,
                    service_id=service_id,
                    slot_date=slot_date.isoformat(),
                    participants=participants,
                )
                return

            # The conditional update refused; re-read to report the reason
            slot = self.repository.get_slot(guide_id, service_id, slot_date)

        if slot is None:
            raise InsufficientCapacityException(participants, 0, slot_date=slot_date.isoformat())
        if slot.is_blocked:
            raise DateBlockedException(slot_date.isoformat(), slot.blocked_reason)
        raise InsufficientCapacityException(
            participants, slot.available, slot_date=slot_date.isoformat()
        )

    @BaseService.measure_operation("release_capacity")
    def release(self, guide_id: str, service_id: str, slot_date: date, participants: int) -> None:
        """Give ``participants`` back to the pool; never drops below zero."""
        with slot_lock(guide_id, service_id, slot_date):
            with self.transaction():
                found = self.repository.release(guide_id, service_id, slot_date, participants)
        if not found:
            self.logger.warning(
                "Release against missing availability slot",
                extra={
                    "guide_id": guide_id,
                    "service_id": service_id,
                    "slot_date": slot_date.isoformat(),
                    "participants": participants,
                },
            )

    def query(
        self, guide_id: str, service_id: str, start_date: date, end_date: date
    ) -> List[SlotAvailability]:
        """
        Read-only view of [start_date, end_date].

        Dates with a slot row report it; other dates fall back to the weekly
        pattern for their weekday (``is_computed``) or are left out.
        """
        _validate_range(start_date, end_date)
        slots = self.repository.get_slots_in_range(guide_id, service_id, start_date, end_date)
        patterns: Dict[int, RecurringAvailability] = {
            p.weekday: p for p in self.repository.get_patterns(guide_id, service_id)
        }
        if not patterns:
            return [SlotAvailability.from_slot(slot) for slot in slots]

        by_date = {slot.slot_date: slot for slot in slots}
        result: List[SlotAvailability] = []
        for day in _each_day(start_date, end_date):
            slot = by_date.get(day)
            if slot is not None:
                result.append(SlotAvailability.from_slot(slot))
            elif day.weekday() in patterns:
                result.append(SlotAvailability.computed(day, patterns[day.weekday()]))
        return result

    def get_slot(self, guide_id: str, service_id: str, slot_date: date) -> Optional[AvailabilitySlot]:
        return self.repository.get_slot(guide_id, service_id, slot_date)

    def price_for(self, guide_service: GuideService, slot_date: date) -> Decimal:
        """Per-person price: slot override, then the weekly pattern's, then the service's."""
        slot = self.repository.get_slot(guide_service.guide_id, guide_service.id, slot_date)
        if slot is not None:
            if slot.price_override is not None:
                return to_money(slot.price_override)
        else:
            pattern = self.repository.get_pattern(
                guide_service.guide_id, guide_service.id, slot_date.weekday()
            )
            if pattern is not None and pattern.price_override is not None:
                return to_money(pattern.price_override)
        return to_money(guide_service.price_per_person)

    # Guide-side slot management

    @staticmethod
    def _ensure_guide(guide_id: str, actor_id: str) -> None:
        if actor_id != guide_id:
            raise ForbiddenException(
                "Only the guide can change this availability", code="NOT_SLOT_OWNER"
            )

    def _ensure_service(self, guide_id: str, service_id: str) -> None:
        service = self.db.get(GuideService, service_id)
        if service is None or service.guide_id != guide_id:
            raise NotFoundException("Service not found", code="SERVICE_NOT_FOUND")

    @BaseService.measure_operation("set_capacity")
    def set_capacity(
        self,
        guide_id: str,
        service_id: str,
        slot_date: date,
        total_capacity: int,
        price_override: Optional[MoneyLike] = None,
        notes: Optional[str] = None,
        *,
        actor_id: str,
    ) -> SlotAvailability:
        self._ensure_guide(guide_id, actor_id)
        if total_capacity < 0:
            raise ValidationException("Capacity cannot be negative", code="INVALID_CAPACITY")
        self._ensure_service(guide_id, service_id)

        with slot_lock(guide_id, service_id, slot_date):
            with self.transaction():
                slot = self.repository.get_slot(guide_id, service_id, slot_date)
                if slot is None:
                    slot = self.repository.create(
                        guide_id=guide_id,
                        service_id=service_id,
                        slot_date=slot_date,
                        total_capacity=total_capacity,
                        reserved_count=0,
                    )
                elif total_capacity < slot.reserved_count:
                    raise BusinessRuleException(
                        f"Capacity {total_capacity} is below the {slot.reserved_count} spots already booked",
                        code="CAPACITY_BELOW_RESERVED",
                        details={"reserved_count": slot.reserved_count},
                    )
                slot.total_capacity = total_capacity
                slot.price_override = to_money(price_override) if price_override is not None else None
                if notes is not None:
                    slot.notes = notes
                result = SlotAvailability.from_slot(slot)

        self.log_operation(
            "set_capacity",
            guide_id=guide_id,
            service_id=service_id,
            slot_date=slot_date.isoformat(),
            total_capacity=total_capacity,
        )
        return result

    @BaseService.measure_operation("block_date")
    def block_date(
        self,
        guide_id: str,
        service_id: str,
        slot_date: date,
        reason: Optional[str] = None,
        *,
        actor_id: str,
    ) -> SlotAvailability:
        """Block a date. Existing reservations keep their spots; no new ones fit."""
        self._ensure_guide(guide_id, actor_id)
        self._ensure_service(guide_id, service_id)

        with slot_lock(guide_id, service_id, slot_date):
            with self.transaction():
                slot = self._block(guide_id, service_id, slot_date, reason)
                result = SlotAvailability.from_slot(slot)
        return result

    @BaseService.measure_operation("unblock_date")
    def unblock_date(
        self, guide_id: str, service_id: str, slot_date: date, *, actor_id: str
    ) -> SlotAvailability:
        self._ensure_guide(guide_id, actor_id)

        with slot_lock(guide_id, service_id, slot_date):
            with self.transaction():
                slot = self.repository.get_slot(guide_id, service_id, slot_date)
                if slot is None:
                    raise NotFoundException("No availability for this date", code="SLOT_NOT_FOUND")
                slot.is_blocked = False
                slot.blocked_reason = None
                result = SlotAvailability.from_slot(slot)
        return result

    @BaseService.measure_operation("block_range")
    def block_range(
        self,
        guide_id: str,
        service_id: str,
        start_date: date,
        end_date: date,
        reason: Optional[str] = None,
        *,
        actor_id: str,
    ) -> List[SlotAvailability]:
        """
        Block every date in [start_date, end_date].

        Each date is blocked under its own slot lock and commits on its own,
        so a failure part way leaves the earlier dates blocked; repeating the
        call finishes the rest.
        """
        self._ensure_guide(guide_id, actor_id)
        _validate_range(start_date, end_date)
        self._ensure_service(guide_id, service_id)

        blocked: List[SlotAvailability] = []
        for day in _each_day(start_date, end_date):
            with slot_lock(guide_id, service_id, day):
                with self.transaction():
                    slot = self._block(guide_id, service_id, day, reason)
                    blocked.append(SlotAvailability.from_slot(slot))

        self.log_operation(
            "block_range",
            guide_id=guide_id,
            service_id=service_id,
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
            days=len(blocked),
        )
        return blocked

    @BaseService.measure_operation("unblock_range")
    def unblock_range(
        self, guide_id: str, service_id: str, start_date: date, end_date: date, *, actor_id: str
    ) -> List[SlotAvailability]:
        """Lift every block in the range and return the range as it now reads."""
        self._ensure_guide(guide_id, actor_id)
        _validate_range(start_date, end_date)

        with self.transaction():
            changed = self.repository.unblock_range(guide_id, service_id, start_date, end_date)

        self.log_operation(
            "unblock_range",
            guide_id=guide_id,
            service_id=service_id,
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
            days=changed,
        )
        return self.query(guide_id, service_id, start_date, end_date)

    def _block(
        self, guide_id: str, service_id: str, slot_date: date, reason: Optional[str]
    ) -> AvailabilitySlot:
        # A blocked date keeps its pattern capacity so unblocking restores it
        slot = self._materialize(guide_id, service_id, slot_date)
        if slot is None:
            slot = self.repository.create(
                guide_id=guide_id,
                service_id=service_id,
                slot_date=slot_date,
                total_capacity=0,
                reserved_count=0,
            )
        slot.is_blocked = True
        slot.blocked_reason = reason
        return slot

    def _materialize(
        self, guide_id: str, service_id: str, slot_date: date
    ) -> Optional[AvailabilitySlot]:
        """
        Return the date's slot row, writing it from the weekly pattern if needed.

        Runs inside the caller's transaction and slot lock. None means the
        date has neither a row nor a pattern.
        """
        slot = self.repository.get_slot(guide_id, service_id, slot_date)
        if slot is not None:
            return slot
        pattern = self.repository.get_pattern(guide_id, service_id, slot_date.weekday())
        if pattern is None:
            return None
        return self.repository.create(
            guide_id=guide_id,
            service_id=service_id,
            slot_date=slot_date,
            total_capacity=pattern.total_capacity,
            reserved_count=0,
            price_override=pattern.price_override,
        )

    # Weekly patterns

    def list_recurring_patterns(self, guide_id: str, service_id: str) -> List[WeeklyPattern]:
        return [WeeklyPattern.from_model(p) for p in self.repository.get_patterns(guide_id, service_id)]

    @BaseService.measure_operation("set_recurring_pattern")
    def set_recurring_pattern(
        self,
        guide_id: str,
        service_id: str,
        weekday: int,
        total_capacity: int,
        price_override: Optional[MoneyLike] = None,
        *,
        actor_id: str,
    ) -> WeeklyPattern:
        """
        Set the default capacity for one weekday, replacing any earlier pattern.

        Dates that already have a slot row keep it; the pattern only speaks
        for dates nobody has touched.
        """
        self._ensure_guide(guide_id, actor_id)
        if weekday not in range(7):
            raise ValidationException(
                "weekday must be 0 (Monday) to 6 (Sunday)", code="INVALID_WEEKDAY"
            )
        if total_capacity < 0:
            raise ValidationException("Capacity cannot be negative", code="INVALID_CAPACITY")
        self._ensure_service(guide_id, service_id)

        price = to_money(price_override) if price_override is not None else None
        with self.transaction():
            pattern = self.repository.get_pattern(guide_id, service_id, weekday)
            if pattern is None:
                pattern = self.repository.add_pattern(
                    guide_id=guide_id,
                    service_id=service_id,
                    weekday=weekday,
                    total_capacity=total_capacity,
                    price_override=price,
                )
            else:
                pattern.total_capacity = total_capacity
                pattern.price_override = price
            result = WeeklyPattern.from_model(pattern)

        self.log_operation(
            "set_recurring_pattern",
            guide_id=guide_id,
            service_id=service_id,
            weekday=WEEKDAY_NAMES[weekday],
            total_capacity=total_capacity,
        )
        return result

    @BaseService.measure_operation("remove_recurring_pattern")
    def remove_recurring_pattern(
        self, guide_id: str, service_id: str, weekday: int, *, actor_id: str
    ) -> None:
        """Drop a weekday's pattern. Slot rows it already produced stay."""
        self._ensure_guide(guide_id, actor_id)
        with self.transaction():
            pattern = self.repository.get_pattern(guide_id, service_id, weekday)
            if pattern is None:
                raise NotFoundException(
                    "No recurring availability for this weekday", code="PATTERN_NOT_FOUND"
                )
            self.repository.delete_pattern(pattern)

        self.log_operation(
            "remove_recurring_pattern",
            guide_id=guide_id,
            service_id=service_id,
            weekday=weekday,
        )
