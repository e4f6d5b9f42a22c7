"""
Event Booking Engine - Main Application Entry Point

Seat reservation and payment reconciliation for event ticketing:
- Pessimistic row locks on the event seat ledger (no oversell)
- Time-boxed seat locks, released inline and by a background sweeper
- Mock payments, Stripe intents and signed webhooks
- Structured logging with request correlation, Prometheus metrics
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from booking_engine.api.middleware import RequestLoggingMiddleware
from booking_engine.api.router import api_router
from booking_engine.core.config import get_settings
from booking_engine.core.exceptions import BookingEngineError, booking_error_handler
from booking_engine.core.logging import get_logger, setup_logging
from booking_engine.core.metrics import metrics_endpoint
from booking_engine.db.session import AsyncSessionLocal
from booking_engine.infrastructure.redis_client import close_redis, get_redis
from booking_engine.services.seat_lock import SeatLockSweeper

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown hooks."""
    setup_logging()
    logger = get_logger(__name__)

    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        lock_minutes=settings.BOOKING_LOCK_MINUTES,
        payment_provider="stripe" if settings.stripe_enabled else "mock",
    )

    redis_client = await get_redis()
    if redis_client:
        logger.info("redis_ready")
    else:
        logger.warning("redis_unavailable", message="Running without audit log")

    sweeper = None
    if settings.SWEEPER_ENABLED:
        sweeper = SeatLockSweeper(AsyncSessionLocal)
        sweeper.start()
    app.state.sweeper = sweeper

    yield

    # Cleanup
    if sweeper is not None:
        await sweeper.stop()
    await close_redis()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Seat reservation and payment reconciliation engine",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Custom middleware
app.add_middleware(RequestLoggingMiddleware)

app.add_exception_handler(BookingEngineError, booking_error_handler)

# Routes
app.include_router(api_router)


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for Docker and load balancers."""
    redis_client = await get_redis()
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "redis": "connected" if redis_client else "disabled",
        "sweeper": "running" if getattr(app.state, "sweeper", None) else "disabled",
        "payment_provider": "stripe" if settings.stripe_enabled else "mock",
    }


@app.get("/metrics", tags=["Health"], include_in_schema=False)
def metrics():
    return metrics_endpoint()


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
