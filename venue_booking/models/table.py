from __future__ import annotations

from datetime import datetime
from typing import List

from sqlalchemy import JSON, Boolean, CheckConstraint, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from venue_booking.database import Base


class Table(Base):
    """Physical tables in the venue."""

    __tablename__ = "venue_tables"
    __table_args__ = (
        CheckConstraint("capacity_min <= capacity_max", name="ck_table_capacity_range"),
    )

    # Table number doubles as the primary key; the floor plan numbers tables 1..N
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    capacity_min: Mapped[int] = mapped_column(Integer, nullable=False)
    capacity_max: Mapped[int] = mapped_column(Integer, nullable=False)
    floor: Mapped[str] = mapped_column(String(20), nullable=False)  # upstairs, downstairs
    combinable_with: Mapped[List[int]] = mapped_column(JSON, default=list)

    # available, booked, pending, maintenance
    status: Mapped[str] = mapped_column(String(20), default="available")
    features: Mapped[List[str]] = mapped_column(JSON, default=list)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<Table(id={self.id}, capacity={self.capacity_min}-{self.capacity_max}, "
            f"floor={self.floor}, status={self.status})>"
        )
