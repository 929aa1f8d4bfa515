"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from billing.core.config import settings
from billing.core.exceptions import BillingError, ConfigurationError
from billing.core.logging import setup_logging
from billing.core.middleware import access_log_middleware, setup_cors_middleware
from billing.core import otel
from billing.db.redis import get_redis_client
from billing.db.session import SessionLocal, engine, init_db
from billing.api import accounts, admin, events, subscriptions, tiers, usage
from billing.services.tier_catalog import TierCatalog, seed_default_tiers

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    otel_initialized = otel.initialize_otel()
    if otel_initialized:
        if otel.setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
        otel.instrument_sqlalchemy(engine)
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        db = SessionLocal()
        try:
            seed_default_tiers(db)
            TierCatalog.reload(db)
        finally:
            db.close()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    try:
        get_redis_client().ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    background_tasks = []
    if settings.ENABLE_SCHEDULER:
        logger.info("Starting scheduler tasks...")
        from billing.tasks.scheduler import rollover_scheduler_task, transition_dispatch_task

        background_tasks.append(asyncio.create_task(rollover_scheduler_task()))
        background_tasks.append(asyncio.create_task(transition_dispatch_task()))
        logger.info("Scheduler tasks started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    for task in background_tasks:
        task.cancel()


# Create FastAPI app
app = FastAPI(
    title="Billing Engine",
    description="Subscription billing and usage metering",
    version="1.0.0",
    lifespan=lifespan
)

otel.instrument_fastapi(app)
setup_cors_middleware(app)
app.middleware("http")(access_log_middleware)

# Include routers
app.include_router(accounts.router)
app.include_router(tiers.router)
app.include_router(events.router)
app.include_router(subscriptions.router)
app.include_router(usage.router)
app.include_router(usage.access_router)
app.include_router(admin.router)


@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    """Map domain errors to HTTP status codes"""
    if isinstance(exc, ConfigurationError):
        logger.error(f"Configuration error on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__}
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
