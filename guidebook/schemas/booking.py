# guidebook/schemas/booking.py
"""
Booking request and response schemas.

Money travels as Decimal in Python and as a fixed two-decimal string in JSON
so totals never pick up float rounding on the way out.
"""

from datetime import date, datetime, time
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, PlainSerializer, field_validator, model_validator

from ..core.enums import BookingStatus, PaymentLeg, PaymentType
from ..core.money import to_money
from ._strict_base import StrictModel, StrictRequestModel

Money = Annotated[
    Decimal,
    PlainSerializer(lambda v: f"{to_money(v):.2f}", return_type=str, when_used="json"),
]


class ClientDetails(StrictRequestModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    phone: str = Field(..., min_length=3, max_length=40)
    emergency_contact: Optional[str] = Field(None, max_length=255)


class BillingDetailsIn(StrictRequestModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    postal_code: Optional[str] = Field(None, max_length=20)


class BookingCreate(StrictRequestModel):
    """Create a booking for one guide service on one date."""

    guide_id: str = Field(..., description="Guide to book")
    service_id: str = Field(..., description="Guide service being booked")
    start_date: date
    start_time: time
    end_time: Optional[time] = None
    participants: int = Field(..., ge=1, le=500)
    payment_type: PaymentType = PaymentType.DEPOSIT
    client_details: ClientDetails
    special_requests: Optional[str] = Field(None, max_length=2000)
    pickup_location: Optional[str] = Field(None, max_length=500)
    payment_method_ref: Optional[str] = Field(
        None, description="Processor payment method used to confirm the intent immediately"
    )
    billing_details: Optional[BillingDetailsIn] = None

    @model_validator(mode="after")
    def _check_times(self) -> "BookingCreate":
        if self.end_time is not None and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class BookingCancel(StrictRequestModel):
    reason: Optional[str] = Field(None, max_length=1000)


class BookingCheckIn(StrictRequestModel):
    code: str = Field(..., min_length=1, max_length=32)
    payment_method_ref: Optional[str] = None


class BookingDispute(StrictRequestModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class BookingResolveRefund(StrictRequestModel):
    amount: Optional[Decimal] = Field(
        None, ge=0, description="Refund amount; defaults to everything still refundable"
    )
    reason: Optional[str] = Field(None, max_length=1000)


class BookingReconcile(StrictRequestModel):
    leg: PaymentLeg = PaymentLeg.REMAINDER


class BookingSnapshot(StrictModel):
    """Point-in-time view of a booking returned with every transition."""

    id: str
    booking_number: str
    status: BookingStatus
    client_id: str
    guide_id: str
    service_id: str
    start_date: date
    start_time: time
    end_time: Optional[time] = None
    participants: int
    payment_type: PaymentType
    total_price: Money
    deposit_amount: Optional[Money] = None
    amount_paid: Money
    amount_due: Money
    cancellation_fee: Optional[Money] = None
    refund_amount: Optional[Money] = None
    refund_error: Optional[str] = None
    cancellation_reason: Optional[str] = None
    dispute_reason: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None
    refund_issued_at: Optional[datetime] = None
    version: int

    @field_validator("total_price", "amount_paid", "amount_due", mode="before")
    @classmethod
    def _quantize(cls, value: Any) -> Decimal:
        return to_money(value if value is not None else 0)

    @field_validator("deposit_amount", "cancellation_fee", "refund_amount", mode="before")
    @classmethod
    def _quantize_optional(cls, value: Any) -> Optional[Decimal]:
        return to_money(value) if value is not None else None


class PaymentRecordResponse(StrictModel):
    id: str
    leg: PaymentLeg
    status: str
    amount_cents: int
    refunded_cents: int
    currency: str
    intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    idempotency_key: str
    attempt: int


class BookingTransitionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event: str
    before: Optional[BookingSnapshot] = None
    after: BookingSnapshot
    payment: Optional[PaymentRecordResponse] = None
    refund: Optional[Dict[str, Any]] = None


class BookingEventResponse(StrictModel):
    id: int
    event: str
    from_status: Optional[str] = None
    to_status: str
    actor_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class BookingListResponse(BaseModel):
    items: List[BookingSnapshot]
    total: int


class CheckInCodeResponse(BaseModel):
    booking_id: str
    code: str
