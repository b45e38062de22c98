"""FastAPI application entry point"""
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing.core.config import settings
from billing.core.errors import BillingError
from billing.core.logging import setup_logging
from billing.core.otel import initialize_otel, instrument_fastapi, instrument_sqlalchemy, setup_otel_logging
from billing.core.security import log_api_access
from billing.db.redis import ping_redis
from billing.db.session import SessionLocal, engine, init_db
from billing.services.catalog_sync import CatalogSynchronizer
from billing.services.plan_service import seed_default_plans
from billing.services.stripe_gateway import get_stripe_gateway

# Import routers
from billing.api import admin, monitoring, plans, subscriptions
from billing.api import billing as billing_router
from billing.api import stripe as stripe_router

setup_logging()
logger = logging.getLogger(__name__)


def bootstrap_catalog():
    """Seed the default plans on an empty catalog, then push unsynced plans to Stripe"""
    db = SessionLocal()
    try:
        if settings.SEED_DEFAULT_PLANS:
            seed_default_plans(db)
        if settings.SYNC_PLANS_ON_STARTUP:
            report = CatalogSynchronizer(get_stripe_gateway()).sync_all_plans(db)
            for failure in report.failed:
                logger.error(f"Startup sync failed for plan {failure['name']}: {failure['error']}")
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        if setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
        instrument_sqlalchemy(engine)
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    if ping_redis():
        logger.info("Redis connection successful")
    else:
        logger.warning("Redis unavailable - authenticated routes will fail until it recovers")

    bootstrap_catalog()

    yield

    # Shutdown
    logger.info("Shutting down...")


# Create FastAPI app
app = FastAPI(
    title="Billing Backend",
    description="Plan catalog, Stripe checkout and subscription reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

# Instrument FastAPI with OpenTelemetry
if settings.OTEL_EXPORTER_OTLP_ENDPOINT:
    instrument_fastapi(app)

# CORS middleware
allowed_origins = [settings.FRONTEND_URL]
if settings.ENVIRONMENT == "development":
    allowed_origins.extend([
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(plans.router)
app.include_router(admin.router)
app.include_router(stripe_router.router)
app.include_router(subscriptions.router)
app.include_router(billing_router.router)
app.include_router(monitoring.router)


@app.middleware("http")
async def access_log_middleware(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    log_api_access(request, response.status_code, (time.perf_counter() - started) * 1000)
    return response


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    """Map the billing error taxonomy onto HTTP responses"""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )
