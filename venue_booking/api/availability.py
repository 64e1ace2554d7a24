"""
REST API endpoint for table availability.
"""
from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from venue_booking.api.deps import get_booking_engine
from venue_booking.schemas.availability import AvailabilityResponse, AvailabilitySlotRead
from venue_booking.schemas.waitlist import Floor
from venue_booking.services.booking_engine import BookingEngine

router = APIRouter(prefix="/api/v1", tags=["availability"])


@router.get("/availability", response_model=AvailabilityResponse)
async def get_availability(
    slot_date: date = Query(..., alias="date", description="Booking date (YYYY-MM-DD)"),
    party_size: int = Query(..., description="Number of guests"),
    floor: Optional[Floor] = Query(None, description="Restrict to one floor"),
    time: Optional[str] = Query(None, description="Arrival time (HH:MM)"),
    engine: BookingEngine = Depends(get_booking_engine),
) -> AvailabilityResponse:
    """
    Resolve which tables can seat a party on a date.

    Single tables are preferred; combinable pairs are only offered to large
    parties no single table can seat. An empty list means the waitlist
    should be offered instead.
    """
    slots = await engine.resolve_availability(
        slot_date,
        party_size,
        floor=floor.value if floor else None,
        time_slot=time,
    )
    return AvailabilityResponse(
        date=slot_date,
        party_size=party_size,
        floor=floor.value if floor else None,
        slots=[AvailabilitySlotRead.model_validate(s) for s in slots],
        waitlist_available=not slots,
    )
