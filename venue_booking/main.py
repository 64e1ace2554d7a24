from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from venue_booking.config import get_settings
from venue_booking.database import async_session_factory, close_db, get_session_context, init_db
from venue_booking.errors import BookingEngineError, LimitExceeded
from venue_booking.services.booking_engine import create_booking_engine
from venue_booking.services.conversion import ExpirySweeper
from venue_booking.services.seed_service import SeedService

# Import all models to register them with Base BEFORE init_db
# This ensures create_all() sees all tables
from venue_booking.models import (  # noqa: F401
    Table,
    Customer,
    Booking,
    WaitlistEntry,
    SlotHold,
    NotificationDelivery,
)

settings = get_settings()
LOGGER = logging.getLogger("venue-booking")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown events."""
    # Startup - always create tables if they don't exist
    # This is safe because create_all() is idempotent
    try:
        await init_db()
        LOGGER.info("Database initialized")
    except Exception as e:
        LOGGER.error("Database initialization failed: %s", e)
        raise

    # Auto-seed the default venue in development if DB is empty
    if settings.is_development:
        try:
            async with get_session_context() as session:
                result = await SeedService(session).ensure_default_data()
                if result.get("tables_created", 0) > 0:
                    LOGGER.info("Seeded default data: %s", result)
                else:
                    LOGGER.info("Default data already present; skipping seeding")
        except Exception as e:
            LOGGER.warning("Default data seeding failed: %s", e)

    engine = create_booking_engine(settings, async_session_factory)
    app.state.booking_engine = engine
    engine.dispatcher.start()

    stop_event = asyncio.Event()
    sweeper = ExpirySweeper(
        engine.coordinator,
        interval_seconds=settings.expiry_sweep_interval_seconds,
        stop_event=stop_event,
    )
    sweeper_task = asyncio.create_task(sweeper.run(), name="expiry-sweeper")
    LOGGER.info(
        "Booking engine started (reservation window %s min, sweep every %ss)",
        settings.reservation_window_minutes,
        settings.expiry_sweep_interval_seconds,
    )

    yield

    # Shutdown
    stop_event.set()
    await sweeper_task
    await engine.dispatcher.stop()
    await close_db()


app = FastAPI(
    title="Venue Booking Engine",
    description="Table availability, booking limits and waitlist allocation for the venue",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS (needed for browser preflight requests)
if settings.is_development:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(BookingEngineError)
async def booking_engine_error_handler(request: Request, exc: BookingEngineError) -> JSONResponse:
    """Translate engine errors into JSON bodies carrying the error kind."""
    body = {"detail": exc.message, "error": exc.kind}
    if exc.details:
        body["details"] = exc.details
    if isinstance(exc, LimitExceeded) and exc.assessment is not None:
        body["assessment"] = exc.assessment.to_dict()
    return JSONResponse(status_code=exc.status_code, content=body)


@app.get("/healthz")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok", "service": "venue-booking-engine"}


@app.get("/")
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "Venue Booking Engine",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/healthz",
    }


# Include API routers
from venue_booking.api import (
    availability_router,
    bookings_router,
    limits_router,
    waitlist_router,
)

app.include_router(availability_router)
app.include_router(limits_router)
app.include_router(waitlist_router)
app.include_router(bookings_router)
