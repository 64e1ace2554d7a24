"""
REST API endpoints for confirmed bookings.
"""
from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends

from venue_booking.api.deps import get_booking_engine
from venue_booking.schemas.booking import BookingCancelResponse, BookingRead
from venue_booking.services.booking_engine import BookingEngine

router = APIRouter(prefix="/api/v1/bookings", tags=["bookings"])


@router.post("/{booking_id}/cancel", response_model=BookingCancelResponse)
async def cancel_booking(
    booking_id: UUID,
    engine: BookingEngine = Depends(get_booking_engine),
) -> BookingCancelResponse:
    """
    Cancel a booking.

    The freed tables are offered to the waitlist straight away.
    """
    result = await engine.cancel_booking(booking_id)
    return BookingCancelResponse(
        booking=BookingRead.model_validate(result.booking),
        freed_table_ids=list(result.match.slot.table_ids),
        offered_to=[entry.id for entry in result.match.offers],
    )
