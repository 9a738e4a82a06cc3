"""Availability slot and weekly pattern schemas."""

from datetime import date
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from ._strict_base import StrictModel, StrictRequestModel
from .booking import Money


class SlotCapacityUpdate(StrictRequestModel):
    total_capacity: int = Field(..., ge=0, le=10000)
    price_override: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=2000)


class SlotBlockRequest(StrictRequestModel):
    reason: Optional[str] = Field(None, max_length=255)


class SlotAvailabilityResponse(StrictModel):
    slot_date: date
    total_capacity: int
    reserved_count: int
    available: int
    is_blocked: bool
    price_override: Optional[Money] = None
    blocked_reason: Optional[str] = None
    is_computed: bool = False


class AvailabilityRangeResponse(BaseModel):
    guide_id: str
    service_id: str
    start_date: date
    end_date: date
    slots: List[SlotAvailabilityResponse]


class DateRangeRequest(StrictRequestModel):
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def _ordered(self) -> "DateRangeRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class DateRangeBlockRequest(DateRangeRequest):
    reason: Optional[str] = Field(None, max_length=255)


class RecurringPatternUpdate(StrictRequestModel):
    total_capacity: int = Field(..., ge=0, le=10000)
    price_override: Optional[Decimal] = Field(None, ge=0)


class RecurringPatternResponse(StrictModel):
    weekday: int
    weekday_name: str
    total_capacity: int
    price_override: Optional[Money] = None
