"""Service for seeding the default venue layout to handle cold start scenarios."""
from __future__ import annotations

import logging
from typing import List

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from venue_booking.models.customer import Customer
from venue_booking.models.table import Table

logger = logging.getLogger(__name__)


# Default floor plan: two floors, the larger downstairs tables can be pushed together
DEFAULT_TABLES = [
    {"id": 1, "capacity_min": 2, "capacity_max": 4, "floor": "upstairs", "features": ["Window view"]},
    {"id": 2, "capacity_min": 4, "capacity_max": 6, "floor": "upstairs", "features": ["Premium seating"]},
    {"id": 3, "capacity_min": 2, "capacity_max": 4, "floor": "upstairs", "features": []},
    {"id": 4, "capacity_min": 6, "capacity_max": 8, "floor": "upstairs", "features": ["VIP section"]},
    {"id": 5, "capacity_min": 2, "capacity_max": 4, "floor": "downstairs", "features": [], "combinable_with": [6]},
    {"id": 6, "capacity_min": 4, "capacity_max": 6, "floor": "downstairs", "features": [], "combinable_with": [5]},
    {"id": 7, "capacity_min": 6, "capacity_max": 8, "floor": "downstairs", "features": [], "combinable_with": [8]},
    {"id": 8, "capacity_min": 8, "capacity_max": 10, "floor": "downstairs", "features": ["Dance floor adjacent"], "combinable_with": [7]},
]

# Default customers for local development
DEFAULT_CUSTOMERS = [
    {
        "name": "Alice Johnson",
        "email": "alice@example.com",
        "phone": "+447700900001",
        "loyalty_tier": "GOLD",
        "consent_sms": True,
    },
    {
        "name": "Bob Smith",
        "email": "bob@example.com",
        "phone": "+447700900002",
        "loyalty_tier": "BRONZE",
    },
    {
        "name": "Carol Williams",
        "email": "carol@example.com",
        "loyalty_tier": "PLATINUM",
        "is_vip": True,
        "push_token": "demo-push-token",
        "consent_push": True,
    },
]


class SeedService:
    """Service for seeding the default venue for development and demos."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def ensure_default_data(self) -> dict:
        """
        Ensure the default venue exists for cold start.

        Creates the floor plan and a handful of customers if no tables exist.

        Returns:
            Dict with created counts
        """
        result = {
            "tables_created": 0,
            "customers_created": 0,
            "already_seeded": False,
        }

        if await self._count_tables() > 0:
            result["already_seeded"] = True
            logger.info("Database already has tables, skipping seed")
            return result

        logger.info("Cold start detected, seeding default venue...")

        tables = await self._create_default_tables()
        result["tables_created"] = len(tables)

        customers = await self._create_default_customers()
        result["customers_created"] = len(customers)

        await self.session.commit()

        logger.info(
            "Seed complete: %s tables, %s customers",
            result["tables_created"],
            result["customers_created"],
        )
        return result

    async def _count_tables(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(Table))
        return int(result.scalar_one())

    async def _create_default_tables(self) -> List[Table]:
        tables = [
            Table(
                id=spec["id"],
                capacity_min=spec["capacity_min"],
                capacity_max=spec["capacity_max"],
                floor=spec["floor"],
                features=spec["features"],
                combinable_with=spec.get("combinable_with", []),
                status="available",
                is_active=True,
            )
            for spec in DEFAULT_TABLES
        ]
        self.session.add_all(tables)
        await self.session.flush()
        return tables

    async def _create_default_customers(self) -> List[Customer]:
        existing = await self.session.execute(select(Customer.email))
        known = set(existing.scalars().all())
        customers = [Customer(**spec) for spec in DEFAULT_CUSTOMERS if spec["email"] not in known]
        self.session.add_all(customers)
        await self.session.flush()
        return customers
