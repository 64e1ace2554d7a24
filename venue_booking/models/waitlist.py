from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional
import uuid

from sqlalchemy import JSON, Boolean, Date, Float, Index, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from venue_booking.database import Base


class WaitlistEntry(Base):
    """Standing request to be offered a table that is not free yet."""

    __tablename__ = "waitlist_entries"
    __table_args__ = (
        Index("ix_waitlist_date_status", "preferred_date", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )

    # Preferences
    preferred_date: Mapped[date] = mapped_column(Date, nullable=False)
    preferred_time: Mapped[str] = mapped_column(String(5), nullable=False)  # HH:MM
    party_size: Mapped[int] = mapped_column(Integer, nullable=False)
    floor: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # upstairs, downstairs
    alternative_times: Mapped[List[str]] = mapped_column(JSON, default=list)
    accepts_combination: Mapped[bool] = mapped_column(Boolean, default=True)
    special_occasion: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    notification_channels: Mapped[List[str]] = mapped_column(JSON, default=list)

    # Ranking
    loyalty_tier: Mapped[str] = mapped_column(String(20), default="BRONZE")
    rank: Mapped[float] = mapped_column(Float, default=0.0)
    priority: Mapped[float] = mapped_column(Float, default=0.0)

    # active, notified, converted, expired, cancelled
    status: Mapped[str] = mapped_column(String(20), default="active")
    notified_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    reservation_expires_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    offered_table_ids: Mapped[List[int]] = mapped_column(JSON, default=list)
    offered_time_slot: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)
    requeue_count: Mapped[int] = mapped_column(Integer, default=0)

    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    converted_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<WaitlistEntry(id={self.id}, status={self.status}, size={self.party_size})>"


class SlotHold(Base):
    """Table held for a waitlist offer on a given date."""

    __tablename__ = "slot_holds"
    __table_args__ = (
        UniqueConstraint("booking_date", "table_id", name="uq_slot_hold_date_table"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    table_id: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<SlotHold(date={self.booking_date}, table={self.table_id}, entry={self.entry_id})>"
