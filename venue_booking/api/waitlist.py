"""
REST API endpoints for the waitlist.
"""
from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status

from venue_booking.api.deps import get_booking_engine
from venue_booking.api.limits import to_limit_response
from venue_booking.schemas.booking import BookingRead
from venue_booking.schemas.waitlist import (
    WaitlistCancelResponse,
    WaitlistCreate,
    WaitlistEnrollmentResponse,
    WaitlistRead,
)
from venue_booking.services.booking_engine import BookingEngine
from venue_booking.services.waitlist_state import WaitlistPreferences, WaitlistRecord

router = APIRouter(prefix="/api/v1/waitlist", tags=["waitlist"])


def to_waitlist_read(record: WaitlistRecord, position: Optional[int] = None) -> WaitlistRead:
    prefs = record.preferences
    return WaitlistRead(
        id=record.id,
        customer_id=record.customer_id,
        preferred_date=prefs.preferred_date,
        preferred_time=prefs.preferred_time,
        party_size=prefs.party_size,
        floor=prefs.floor,
        alternative_times=list(prefs.alternative_times),
        accepts_combination=prefs.accepts_combination,
        notification_channels=list(prefs.notification_channels),
        loyalty_tier=record.loyalty_tier,
        priority=record.priority,
        status=record.status.value,
        position=position,
        notified_at=record.notified_at,
        reservation_expires_at=record.reservation_expires_at,
        offered_table_ids=list(record.offered_table_ids),
        offered_time_slot=record.offered_time_slot,
        requeue_count=record.requeue_count,
        booking_id=record.booking_id,
        created_at=record.created_at,
    )


@router.post("", response_model=WaitlistEnrollmentResponse, status_code=status.HTTP_201_CREATED)
async def enroll(
    data: WaitlistCreate,
    engine: BookingEngine = Depends(get_booking_engine),
) -> WaitlistEnrollmentResponse:
    """
    Join the waitlist for a date.

    Rejected with 409 when the customer already has the maximum number of
    open entries or the limit check blocks the request.
    """
    preferences = WaitlistPreferences(
        preferred_date=data.preferred_date,
        preferred_time=data.preferred_time,
        party_size=data.party_size,
        floor=data.floor.value if data.floor else None,
        alternative_times=tuple(data.alternative_times),
        accepts_combination=data.accepts_combination,
        special_occasion=data.special_occasion,
        notification_channels=tuple(c.value for c in data.notification_channels),
    )
    result = await engine.enroll_waitlist(
        data.customer_id,
        preferences,
        payment_method_id=data.payment_method_id,
    )
    return WaitlistEnrollmentResponse(
        entry=to_waitlist_read(result.entry, result.position),
        position=result.position,
        estimated_wait=result.estimated_wait,
        risk=to_limit_response(result.limits, result.assessment),
    )


@router.get("/{entry_id}", response_model=WaitlistRead)
async def get_entry(
    entry_id: UUID,
    engine: BookingEngine = Depends(get_booking_engine),
) -> WaitlistRead:
    """Get a waitlist entry with its current queue position."""
    entry, position = await engine.get_entry(entry_id)
    return to_waitlist_read(entry, position)


@router.post("/{entry_id}/convert", response_model=BookingRead)
async def convert(
    entry_id: UUID,
    engine: BookingEngine = Depends(get_booking_engine),
) -> BookingRead:
    """
    Accept an offer and confirm the booking.

    Repeating the call returns the same booking. A late call gets 410.
    """
    booking = await engine.convert(entry_id)
    return BookingRead.model_validate(booking)


@router.post("/{entry_id}/cancel", response_model=WaitlistCancelResponse)
async def cancel(
    entry_id: UUID,
    engine: BookingEngine = Depends(get_booking_engine),
) -> WaitlistCancelResponse:
    """Leave the waitlist, releasing any table held for an open offer."""
    result = await engine.cancel(entry_id)
    reoffered_to = None
    if result.rematch is not None and result.rematch.entry is not None:
        reoffered_to = result.rematch.entry.id
    return WaitlistCancelResponse(entry=to_waitlist_read(result.entry), reoffered_to=reoffered_to)
