from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional
import uuid

from sqlalchemy import JSON, Date, ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from venue_booking.database import Base


class Booking(Base):
    """Confirmed table booking."""

    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    reference: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)  # BRL-YYYY-NNNNN
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False
    )

    booking_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    time_slot: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)  # HH:MM
    table_ids: Mapped[List[int]] = mapped_column(JSON, nullable=False)
    party_size: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String(20), default="confirmed")  # confirmed, cancelled
    payment_method_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Set when the booking came from a waitlist offer; unique so conversion stays idempotent
    waitlist_entry_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), nullable=True, unique=True
    )

    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<Booking(id={self.id}, ref={self.reference}, tables={self.table_ids})>"
