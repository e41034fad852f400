"""
Checkout Microservice
Order creation, online payment confirmation and delivery lifecycle
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import asyncio
import subprocess
import os
import sys

# Add shared modules to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../../"))

from shared.core import ServiceHealth, setup_logging, RequestLoggingMiddleware, get_logger
from app.api.routes import router as checkout_router, notifications_router
from app.application.payment_verifier import PaymentVerifier
from app.application.notifier import CheckoutNotifier
from app.application.reconciliation import PaymentReconciler, run_periodically
from app.core_settings import get_settings
from app.domain.errors import CheckoutError
from app.infrastructure.db import SessionLocal, engine, init_models, wait_for_database
from app.infrastructure.notifications import PlatformNotificationSink, build_broadcaster, build_mailer
from app.infrastructure.paystack import PaystackClient
from app.infrastructure.repository import NotificationRepository

# Service configuration
SERVICE_NAME = "checkout-service"
SERVICE_VERSION = os.getenv("SERVICE_VERSION", "1.0.0")
SERVICE_DESCRIPTION = "Checkout, payment and delivery lifecycle microservice"

setup_logging(
    service_name=SERVICE_NAME,
    level=os.getenv("LOG_LEVEL", "INFO")
)

logger = get_logger(__name__)
settings = get_settings()


def build_verifier(db) -> PaymentVerifier:
    sink = PlatformNotificationSink(NotificationRepository(db), build_broadcaster(settings), build_mailer(settings))
    return PaymentVerifier(db, PaystackClient.from_settings(settings), CheckoutNotifier(sink, settings.CURRENCY), settings)


reconciler = PaymentReconciler(
    session_factory=SessionLocal,
    verifier_factory=build_verifier,
    min_age_minutes=settings.RECONCILE_MIN_AGE_MINUTES,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    logger.info(f"Starting {SERVICE_NAME} version {SERVICE_VERSION}")

    await asyncio.to_thread(wait_for_database)

    try:
        logger.info("Running database migrations")
        result = subprocess.run(
            ["alembic", "upgrade", "head"],
            cwd=os.path.join(os.path.dirname(__file__), ".."),
            capture_output=True,
            text=True,
            check=False
        )
        if result.returncode != 0:
            logger.warning(f"Migration output: {result.stderr}")
        else:
            logger.info("Database migrations completed")
    except Exception as e:
        logger.error(f"Migration error: {e}")

    try:
        init_models()
        logger.info("Database models initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database models: {e}")
        raise

    sweeper = None
    if settings.RECONCILE_INTERVAL_SECONDS > 0:
        sweeper = asyncio.create_task(run_periodically(reconciler, settings.RECONCILE_INTERVAL_SECONDS))
        logger.info(f"Payment reconciliation every {settings.RECONCILE_INTERVAL_SECONDS}s")

    logger.info(f"{SERVICE_NAME} started successfully")

    yield

    logger.info(f"Shutting down {SERVICE_NAME}")
    if sweeper is not None:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title=SERVICE_NAME,
    description=SERVICE_DESCRIPTION,
    version=SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )


health_service = ServiceHealth(
    SERVICE_NAME,
    SERVICE_VERSION,
    engine=engine,
    redis_url=settings.REDIS_URL,
    required_settings={
        "PAYSTACK_SECRET_KEY": settings.PAYSTACK_SECRET_KEY,
        "JWT_SECRET": settings.JWT_SECRET,
    },
    readiness_checks={"worker:payment_reconciliation": reconciler.health_check},
)
app.include_router(health_service.create_health_router())

app.include_router(checkout_router)
app.include_router(notifications_router)


@app.get("/")
async def root():
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "running",
        "docs": "/api/docs"
    }


@app.get("/info")
async def info():
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "description": SERVICE_DESCRIPTION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "endpoints": {
            "checkouts": "/checkouts",
            "webhook": "/checkouts/webhook",
            "notifications": "/notifications",
            "health": "/health",
            "ready": "/health/ready",
            "live": "/health/live",
            "metrics": "/metrics",
            "docs": "/api/docs"
        }
    }
