# guidebook/routes/v1/bookings.py
"""
Booking routes - API v1

Versioned booking endpoints under /api/v1/bookings.
All business logic delegated to BookingService.

Endpoints:
    POST / - Create a booking (reserve + booking-time payment)
    GET /guide/{guide_id} - Bookings for a guide
    GET /client/{client_id} - Bookings for a client
    GET /by-number/{booking_number} - Look up by booking number
    GET /{booking_id} - Booking snapshot
    GET /{booking_id}/events - Transition log
    GET /{booking_id}/check-in-code - Code to show at check-in
    GET /{booking_id}/refund-quote - What cancelling now would refund
    POST /{booking_id}/confirm - Guide confirms
    POST /{booking_id}/cancel - Cancel and refund per policy
    POST /{booking_id}/check-in - Verify code and capture the remainder
    POST /{booking_id}/complete - Guide marks the trip completed
    POST /{booking_id}/dispute - Open a dispute
    POST /{booking_id}/resolve-refund - Close a dispute with a refund
    POST /{booking_id}/retry-refund - Retry a failed refund
    POST /{booking_id}/reconcile-payment - Re-read a leg from the processor
"""

import asyncio
import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.params import Path

from ...api.dependencies import get_actor_id, get_booking_service
from ...core.enums import BookingStatus
from ...core.exceptions import DomainException, ForbiddenException
from ...schemas.booking import (
    BookingCancel,
    BookingCheckIn,
    BookingCreate,
    BookingDispute,
    BookingEventResponse,
    BookingListResponse,
    BookingReconcile,
    BookingResolveRefund,
    BookingSnapshot,
    BookingTransitionResponse,
    CheckInCodeResponse,
    PaymentRecordResponse,
)
from ...services.booking_service import BookingService, BookingTransition

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["bookings-v1"])

ULID_PATH_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _to_response(result: BookingTransition) -> BookingTransitionResponse:
    return BookingTransitionResponse(
        event=result.event,
        before=result.before,
        after=result.after,
        payment=PaymentRecordResponse.model_validate(result.payment) if result.payment else None,
        refund=result.refund,
    )


# ============================================================================
# SECTION 1: Static routes (no booking id)
# ============================================================================


@router.post("", response_model=BookingTransitionResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_data: BookingCreate = Body(...),
    actor_id: str = Depends(get_actor_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingTransitionResponse:
    """Create a booking for the acting client."""
    try:
        result = await asyncio.to_thread(booking_service.create, booking_data, actor_id=actor_id)
        return _to_response(result)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/guide/{guide_id}", response_model=BookingListResponse)
async def list_guide_bookings(
    guide_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    actor_id: str = Depends(get_actor_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingListResponse:
    try:
        if actor_id != guide_id:
            raise ForbiddenException("You can only list your own bookings")
        bookings = await asyncio.to_thread(
            booking_service.list_for_guide,
            guide_id,
            status_filter.value if status_filter else None,
        )
        items = [BookingSnapshot.model_validate(b) for b in bookings]
        return BookingListResponse(items=items, total=len(items))
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/client/{client_id}", response_model=BookingListResponse)
async def list_client_bookings(
    client_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    actor_id: str = Depends(get_actor_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingListResponse:
    try:
        if actor_id != client_id:
            raise ForbiddenException("You can only list your own bookings")
        bookings = await asyncio.to_thread(
            booking_service.list_for_client,
            client_id,
            status_filter.value if status_filter else None,
        )
        items = [BookingSnapshot.model_validate(b) for b in bookings]
        return BookingListResponse(items=items, total=len(items))
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/by-number/{booking_number}", response_model=BookingSnapshot)
async def get_booking_by_number(
    booking_number: str = Path(..., max_length=32),
    actor_id: str = Depends(get_actor_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingSnapshot:
    try:
        booking = await asyncio.to_thread(booking_service.get_by_number, booking_number)
        if actor_id not in (booking.client_id, booking.guide_id):
            raise ForbiddenException("You don't have permission to view this booking")
        return BookingSnapshot.model_validate(booking)
    except DomainException as e:
        handle_domain_exception(e)


# ============================================================================
# SECTION 2: Booking reads
# ============================================================================


@router.get("/{booking_id}", response_model=BookingSnapshot)
async def get_booking(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    actor_id: str = Depends(get_actor_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingSnapshot:
    try:
        booking = await asyncio.to_thread(booking_service.get_booking, booking_id)
        if actor_id not in (booking.client_id, booking.guide_id):
            raise ForbiddenException("You don't have permission to view this booking")
        return BookingSnapshot.model_validate(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/{booking_id}/events", response_model=list[BookingEventResponse])
async def get_booking_events(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    actor_id: str = Depends(get_actor_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> list[BookingEventResponse]:
    try:
        booking = await asyncio.to_thread(booking_service.get_booking, booking_id)
        if actor_id not in (booking.client_id, booking.guide_id):
            raise ForbiddenException("You don't have permission to view this booking")
        events = await asyncio.to_thread(booking_service.events_for, booking_id)
        return [BookingEventResponse.model_validate(e) for e in events]
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/{booking_id}/check-in-code", response_model=CheckInCodeResponse)
async def get_check_in_code(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    actor_id: str = Depends(get_actor_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> CheckInCodeResponse:
    try:
        code = await asyncio.to_thread(booking_service.check_in_code, booking_id, actor_id=actor_id)
        return CheckInCodeResponse(booking_id=booking_id, code=code)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/{booking_id}/refund-quote")
async def get_refund_quote(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    actor_id: str = Depends(get_actor_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> dict[str, object]:
    try:
        quote = await asyncio.to_thread(booking_service.quote_refund, booking_id, actor_id=actor_id)
        return quote.to_payload()
    except DomainException as e:
        handle_domain_exception(e)


# ============================================================================
# SECTION 3: Transitions
# ============================================================================


@router.post("/{booking_id}/confirm", response_model=BookingTransitionResponse)
async def confirm_booking(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    actor_id: str = Depends(get_actor_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingTransitionResponse:
    try:
        result = await asyncio.to_thread(booking_service.confirm, booking_id, actor_id=actor_id)
        return _to_response(result)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/cancel", response_model=BookingTransitionResponse)
async def cancel_booking(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    cancel_data: Optional[BookingCancel] = Body(None),
    actor_id: str = Depends(get_actor_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingTransitionResponse:
    """Cancel a booking."""
    try:
        result = await asyncio.to_thread(
            booking_service.cancel,
            booking_id,
            actor_id=actor_id,
            reason=cancel_data.reason if cancel_data else None,
        )
        return _to_response(result)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/check-in", response_model=BookingTransitionResponse)
async def check_in_booking(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    check_in_data: BookingCheckIn = Body(...),
    actor_id: str = Depends(get_actor_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingTransitionResponse:
    try:
        result = await asyncio.to_thread(
            booking_service.check_in,
            booking_id,
            check_in_data.code,
            actor_id=actor_id,
            payment_method_ref=check_in_data.payment_method_ref,
        )
        return _to_response(result)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/complete", response_model=BookingTransitionResponse)
async def complete_booking(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    actor_id: str = Depends(get_actor_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingTransitionResponse:
    try:
        result = await asyncio.to_thread(booking_service.complete, booking_id, actor_id=actor_id)
        return _to_response(result)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/dispute", response_model=BookingTransitionResponse)
async def dispute_booking(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    dispute_data: BookingDispute = Body(...),
    actor_id: str = Depends(get_actor_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingTransitionResponse:
    try:
        result = await asyncio.to_thread(
            booking_service.dispute, booking_id, dispute_data.reason, actor_id=actor_id
        )
        return _to_response(result)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/resolve-refund", response_model=BookingTransitionResponse)
async def resolve_dispute_refund(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    resolve_data: Optional[BookingResolveRefund] = Body(None),
    actor_id: str = Depends(get_actor_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingTransitionResponse:
    resolve_data = resolve_data or BookingResolveRefund()
    try:
        result = await asyncio.to_thread(
            booking_service.resolve_refund,
            booking_id,
            resolve_data.amount,
            actor_id=actor_id,
            reason=resolve_data.reason,
        )
        return _to_response(result)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/retry-refund", response_model=BookingTransitionResponse)
async def retry_booking_refund(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    actor_id: str = Depends(get_actor_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingTransitionResponse:
    try:
        result = await asyncio.to_thread(booking_service.retry_refund, booking_id, actor_id=actor_id)
        return _to_response(result)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/reconcile-payment", response_model=BookingTransitionResponse)
async def reconcile_booking_payment(
    booking_id: str = Path(..., description="Booking ULID", pattern=ULID_PATH_PATTERN),
    reconcile_data: Optional[BookingReconcile] = Body(None),
    actor_id: str = Depends(get_actor_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingTransitionResponse:
    reconcile_data = reconcile_data or BookingReconcile()
    try:
        result = await asyncio.to_thread(
            booking_service.reconcile_payment,
            booking_id,
            reconcile_data.leg.value,
            actor_id=actor_id,
        )
        return _to_response(result)
    except DomainException as e:
        handle_domain_exception(e)
