"""Service for loading customer limit records and describing the configured limits."""
from __future__ import annotations

from datetime import date
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from venue_booking.errors import NotFound
from venue_booking.models.booking import Booking
from venue_booking.models.customer import Customer
from venue_booking.services.risk_validator import (
    HIGH_RISK_THRESHOLD,
    MEDIUM_RISK_THRESHOLD,
    VERY_HIGH_RISK_THRESHOLD,
    CustomerLimitRecord,
    LimitPolicy,
)


async def fetch_customer_limits(
    session: AsyncSession,
    customer_id: UUID,
    booking_date: date,
    exclude_booking_id: Optional[UUID] = None,
) -> CustomerLimitRecord:
    """
    Build a fresh limit record for a customer and date.

    ``exclude_booking_id`` leaves out a booking being modified so it does
    not count against its own limits.
    """
    customer = await session.get(Customer, customer_id)
    if customer is None:
        raise NotFound(f"Customer {customer_id} not found")

    stmt = (
        select(Booking)
        .where(Booking.customer_id == customer_id)
        .where(Booking.booking_date == booking_date)
        .where(Booking.status == "confirmed")
    )
    if exclude_booking_id is not None:
        stmt = stmt.where(Booking.id != exclude_booking_id)
    result = await session.execute(stmt)
    bookings = result.scalars().all()

    tables_reserved = []
    for booking in bookings:
        tables_reserved.extend(booking.table_ids or ())

    return CustomerLimitRecord(
        customer_id=customer.id,
        bookings_count=len(bookings),
        tables_reserved=tables_reserved,
        attempted_excess_bookings=customer.attempted_excess_bookings or 0,
        is_vip_customer=bool(customer.is_vip),
        loyalty_tier=customer.loyalty_tier or "BRONZE",
        risk_flags=list(customer.risk_flags or ()),
    )


def limit_information(policy: LimitPolicy) -> Dict[str, Any]:
    """Describe the configured limits and risk thresholds."""
    return {
        "limits": {
            "max_bookings_per_day": policy.max_bookings_per_day,
            "max_tables_per_customer": policy.max_tables_per_customer,
            "max_party_size": policy.max_party_size,
            "vip_bonuses": {
                "extra_bookings": 1,
                "extra_tables": policy.max_tables_per_vip_customer - policy.max_tables_per_customer,
            },
        },
        "risk_thresholds": {
            "low": MEDIUM_RISK_THRESHOLD,
            "medium": HIGH_RISK_THRESHOLD,
            "high": VERY_HIGH_RISK_THRESHOLD,
        },
    }

