"""Shared FastAPI dependencies."""
from __future__ import annotations

from fastapi import Request

from venue_booking.services.booking_engine import BookingEngine


def get_booking_engine(request: Request) -> BookingEngine:
    """The engine built during application startup."""
    return request.app.state.booking_engine
