"""
Activity Booking Engine - Main Application Entry Point

Booking and payment reconciliation for a multi-vendor activity marketplace:
- Per-slot capacity reservation that never overbooks under concurrency
- Frozen pricing snapshots and time-tiered cancellation refunds
- Idempotent, monotonic payment reconciliation from signed webhooks
- Transactional outbox for refunds and community rating aggregates
- Structured logging with request correlation and Prometheus metrics
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from activity_booking.api.middleware import RequestLoggingMiddleware
from activity_booking.api.router import api_router
from activity_booking.core.config import get_settings
from activity_booking.core.exceptions import BookingEngineError, IntegrityViolation
from activity_booking.core.logging import get_logger, setup_logging
from activity_booking.core.metrics import metrics_endpoint
from activity_booking.db.session import AsyncSessionLocal
from activity_booking.infrastructure.payment_gateway import PaymentGateway
from activity_booking.infrastructure.redis_client import close_redis, get_redis
from activity_booking.services.cache_service import get_cache_stats
from activity_booking.services.catalog_factory import build_catalog
from activity_booking.services.worker import worker_loop

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown hooks."""
    setup_logging()

    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
    )

    app.state.payment_gateway = PaymentGateway.from_settings(settings)
    app.state.catalog = build_catalog(settings)
    if not settings.PAYMENT_WEBHOOK_SECRET:
        logger.warning("webhook_secret_missing", message="All payment webhooks will be rejected")

    redis_client = await get_redis()
    if redis_client:
        logger.info("redis_ready")
    else:
        logger.warning("redis_unavailable", message="Running without cache")

    stop_event = asyncio.Event()
    worker_task = None
    if settings.BACKGROUND_WORKER_ENABLED:
        worker_task = asyncio.create_task(
            worker_loop(
                stop_event,
                AsyncSessionLocal,
                app.state.payment_gateway,
                settings.BACKGROUND_WORKER_INTERVAL_SECONDS,
            )
        )

    yield

    stop_event.set()
    if worker_task is not None:
        await worker_task
    await app.state.payment_gateway.close()
    await app.state.catalog.close()
    await close_redis()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Booking and payment reconciliation engine for an activity marketplace",
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

# Routes
app.include_router(api_router)


@app.exception_handler(BookingEngineError)
async def booking_engine_error_handler(request: Request, exc: BookingEngineError) -> JSONResponse:
    if isinstance(exc, IntegrityViolation):
        logger.error("integrity_violation", error=exc.message, details=exc.details, path=request.url.path)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": "Internal error", "code": exc.code, "category": exc.category},
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for Docker and load balancers."""
    cache_stats = await get_cache_stats()
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "cache": cache_stats,
    }


@app.get("/metrics", include_in_schema=False)
def metrics():
    return metrics_endpoint()


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
