from __future__ import annotations

from datetime import datetime
from typing import List, Optional
import uuid

from sqlalchemy import JSON, Boolean, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from venue_booking.database import Base


class Customer(Base):
    """Customer record with loyalty standing, risk counters and contact consent."""

    __tablename__ = "customers"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    phone: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    push_token: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    loyalty_tier: Mapped[str] = mapped_column(String(20), default="BRONZE")  # BRONZE, SILVER, GOLD, PLATINUM
    is_vip: Mapped[bool] = mapped_column(Boolean, default=False)
    attempted_excess_bookings: Mapped[int] = mapped_column(Integer, default=0)
    risk_flags: Mapped[List[str]] = mapped_column(JSON, default=list)

    # Transactional email needs no consent; these gate the other channels
    consent_sms: Mapped[bool] = mapped_column(Boolean, default=False)
    consent_push: Mapped[bool] = mapped_column(Boolean, default=False)
    consent_marketing_email: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, email={self.email}, tier={self.loyalty_tier})>"
