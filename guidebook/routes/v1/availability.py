# guidebook/routes/v1/availability.py
"""
Availability routes - API v1

Endpoints (mounted under /api/v1/guides):
    GET /{guide_id}/services/{service_id}/availability - Slots in a date range
    PUT /{guide_id}/services/{service_id}/availability/{slot_date} - Set capacity / price
    POST /{guide_id}/services/{service_id}/availability/{slot_date}/block - Block a date
    POST /{guide_id}/services/{service_id}/availability/{slot_date}/unblock - Unblock a date
    POST /{guide_id}/services/{service_id}/availability/block-range - Block a date range
    POST /{guide_id}/services/{service_id}/availability/unblock-range - Unblock a date range
    GET /{guide_id}/services/{service_id}/recurring-availability - Weekly patterns
    PUT /{guide_id}/services/{service_id}/recurring-availability/{weekday} - Set a weekday pattern
    DELETE /{guide_id}/services/{service_id}/recurring-availability/{weekday} - Remove it
"""

import asyncio
from datetime import date
import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, Response, status
from fastapi.params import Path

from ...api.dependencies import get_actor_id, get_availability_service
from ...core.exceptions import DomainException
from ...schemas.availability import (
    AvailabilityRangeResponse,
    DateRangeBlockRequest,
    DateRangeRequest,
    RecurringPatternResponse,
    RecurringPatternUpdate,
    SlotAvailabilityResponse,
    SlotBlockRequest,
    SlotCapacityUpdate,
)
from ...services.availability_service import AvailabilityService, SlotAvailability
from .bookings import ULID_PATH_PATTERN, handle_domain_exception

logger = logging.getLogger(__name__)

router = APIRouter(tags=["availability-v1"])


def _slot_response(slot: SlotAvailability) -> SlotAvailabilityResponse:
    return SlotAvailabilityResponse.model_validate(slot)


def _range_response(
    guide_id: str, service_id: str, start_date: date, end_date: date, slots: List[SlotAvailability]
) -> AvailabilityRangeResponse:
    return AvailabilityRangeResponse(
        guide_id=guide_id,
        service_id=service_id,
        start_date=start_date,
        end_date=end_date,
        slots=[_slot_response(s) for s in slots],
    )


@router.get(
    "/{guide_id}/services/{service_id}/availability",
    response_model=AvailabilityRangeResponse,
)
async def get_service_availability(
    guide_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    service_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    start_date: date = Query(...),
    end_date: date = Query(...),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> AvailabilityRangeResponse:
    """Public read of capacity for a service over a date range."""
    try:
        slots = await asyncio.to_thread(
            availability_service.query, guide_id, service_id, start_date, end_date
        )
        return _range_response(guide_id, service_id, start_date, end_date, slots)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{guide_id}/services/{service_id}/availability/block-range",
    response_model=AvailabilityRangeResponse,
)
async def block_date_range(
    block: DateRangeBlockRequest = Body(...),
    guide_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    service_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    actor_id: str = Depends(get_actor_id),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> AvailabilityRangeResponse:
    try:
        slots = await asyncio.to_thread(
            availability_service.block_range,
            guide_id,
            service_id,
            block.start_date,
            block.end_date,
            block.reason,
            actor_id=actor_id,
        )
        return _range_response(guide_id, service_id, block.start_date, block.end_date, slots)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{guide_id}/services/{service_id}/availability/unblock-range",
    response_model=AvailabilityRangeResponse,
)
async def unblock_date_range(
    unblock: DateRangeRequest = Body(...),
    guide_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    service_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    actor_id: str = Depends(get_actor_id),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> AvailabilityRangeResponse:
    try:
        slots = await asyncio.to_thread(
            availability_service.unblock_range,
            guide_id,
            service_id,
            unblock.start_date,
            unblock.end_date,
            actor_id=actor_id,
        )
        return _range_response(guide_id, service_id, unblock.start_date, unblock.end_date, slots)
    except DomainException as e:
        handle_domain_exception(e)

@router.put(
    "/{guide_id}/services/{service_id}/availability/{slot_date}",
    response_model=SlotAvailabilityResponse,
)
async def set_slot_capacity(
    slot_date: date,
    update: SlotCapacityUpdate = Body(...),
    guide_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    service_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    actor_id: str = Depends(get_actor_id),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> SlotAvailabilityResponse:
    try:
        slot = await asyncio.to_thread(
            availability_service.set_capacity,
            guide_id,
            service_id,
            slot_date,
            update.total_capacity,
            update.price_override,
            update.notes,
            actor_id=actor_id,
        )
        return _slot_response(slot)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{guide_id}/services/{service_id}/availability/{slot_date}/block",
    response_model=SlotAvailabilityResponse,
)
async def block_slot_date(
    slot_date: date,
    block: Optional[SlotBlockRequest] = Body(None),
    guide_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    service_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    actor_id: str = Depends(get_actor_id),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> SlotAvailabilityResponse:
    try:
        slot = await asyncio.to_thread(
            availability_service.block_date,
            guide_id,
            service_id,
            slot_date,
            block.reason if block else None,
            actor_id=actor_id,
        )
        return _slot_response(slot)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{guide_id}/services/{service_id}/availability/{slot_date}/unblock",
    response_model=SlotAvailabilityResponse,
)
async def unblock_slot_date(
    slot_date: date,
    guide_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    service_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    actor_id: str = Depends(get_actor_id),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> SlotAvailabilityResponse:
    try:
        slot = await asyncio.to_thread(
            availability_service.unblock_date, guide_id, service_id, slot_date, actor_id=actor_id
        )
        return _slot_response(slot)
    except DomainException as e:
        handle_domain_exception(e)


@router.get(
    "/{guide_id}/services/{service_id}/recurring-availability",
    response_model=list[RecurringPatternResponse],
)
async def list_recurring_availability(
    guide_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    service_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> list[RecurringPatternResponse]:
    try:
        patterns = await asyncio.to_thread(
            availability_service.list_recurring_patterns, guide_id, service_id
        )
        return [RecurringPatternResponse.model_validate(p) for p in patterns]
    except DomainException as e:
        handle_domain_exception(e)


@router.put(
    "/{guide_id}/services/{service_id}/recurring-availability/{weekday}",
    response_model=RecurringPatternResponse,
)
async def set_recurring_availability(
    weekday: int = Path(..., ge=0, le=6),
    update: RecurringPatternUpdate = Body(...),
    guide_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    service_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    actor_id: str = Depends(get_actor_id),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> RecurringPatternResponse:
    try:
        pattern = await asyncio.to_thread(
            availability_service.set_recurring_pattern,
            guide_id,
            service_id,
            weekday,
            update.total_capacity,
            update.price_override,
            actor_id=actor_id,
        )
        return RecurringPatternResponse.model_validate(pattern)
    except DomainException as e:
        handle_domain_exception(e)


@router.delete(
    "/{guide_id}/services/{service_id}/recurring-availability/{weekday}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def remove_recurring_availability(
    weekday: int = Path(..., ge=0, le=6),
    guide_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    service_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    actor_id: str = Depends(get_actor_id),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> Response:
    try:
        await asyncio.to_thread(
            availability_service.remove_recurring_pattern,
            guide_id,
            service_id,
            weekday,
            actor_id=actor_id,
        )
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except DomainException as e:
        handle_domain_exception(e)
