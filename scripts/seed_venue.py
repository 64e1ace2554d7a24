from __future__ import annotations

import asyncio
import random
from datetime import date, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from venue_booking.config import get_settings
from venue_booking.database import Base
from venue_booking.models import Booking, Customer
from venue_booking.services.booking_gateway import generate_reference
from venue_booking.services.seed_service import SeedService
from venue_booking.services.waitlist_state import WaitlistPreferences
from venue_booking.services.waitlist_store import SqlWaitlistStore


async def seed_data():
    settings = get_settings()
    engine = create_async_engine(settings.async_database_url, echo=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    SessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with SessionLocal() as session:
        print("🌱 Seeding venue data...")

        result = await SeedService(session).ensure_default_data()
        customers = (await session.execute(select(Customer))).scalars().all()

        # Fill the upstairs floor for the next few evenings
        today = date.today()
        bookings = []
        for offset in range(1, 4):
            night = today + timedelta(days=offset)
            for table_id in (1, 2, 3, 4):
                customer = random.choice(customers)
                bookings.append(Booking(
                    reference=generate_reference(night.year),
                    customer_id=customer.id,
                    booking_date=night,
                    time_slot=random.choice(["20:00", "21:00", "22:00"]),
                    table_ids=[table_id],
                    party_size=random.randint(2, 4),
                    status="confirmed",
                ))
        session.add_all(bookings)
        await session.commit()

    store = SqlWaitlistStore(SessionLocal)
    entries = []
    for customer in customers:
        preferences = WaitlistPreferences(
            preferred_date=today + timedelta(days=1),
            preferred_time=random.choice(["20:00", "21:00", "22:00"]),
            party_size=random.randint(2, 6),
            floor="upstairs",
            alternative_times=("23:00",),
            notification_channels=("email", "sms"),
        )
        entries.append(await store.enroll(customer.id, preferences, loyalty_tier=customer.loyalty_tier))

    print(f"✅ {result['tables_created']} tables, {result['customers_created']} customers")
    print(f"✅ {len(bookings)} bookings, {len(entries)} waitlist entries")
    print("🎉 Database seeded!")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed_data())
