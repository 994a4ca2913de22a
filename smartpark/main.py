"""
Smart Parking Reservation Core - Main Application
FastAPI application wiring the reservation engine, telemetry reconciler,
registries, expiry sweeper and notification dispatcher
"""
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

import redis.asyncio as redis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from . import metrics
from .config import Settings, get_settings
from .database import Database
from .dependencies import ServiceContainer
from .events import ChangeFeed
from .exceptions import ParkingException
from .logging_config import configure_logging
from .middleware import RequestIDMiddleware
from .notifications import LoggingSink, NotificationDispatcher, RedisListSink
from .registry import DeviceRegistry, SlotRegistry
from .reservations import ReservationEngine
from .routers import changes_router, devices_router, internal_router, reservations_router, slots_router
from .schemas import HealthStatus
from .secrets import log_secret_sources
from .sweeper import ExpirySweeper
from .telemetry import TelemetryReconciler
from .utils import utcnow

logger = logging.getLogger(__name__)


def build_services(settings: Settings, redis_client=None, clock: Callable = utcnow) -> ServiceContainer:
    """Construct every component from settings; nothing is started here"""
    database = Database(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_pool_max_overflow,
        echo=settings.debug,
    )
    feed = ChangeFeed(history=settings.change_feed_history)

    sinks = [LoggingSink()]
    if redis_client is not None:
        sinks.append(RedisListSink(redis_client, settings.notification_redis_key))
    notifier = NotificationDispatcher(
        sinks,
        max_queue=settings.notification_queue_size,
        max_attempts=settings.notification_max_attempts,
    )

    engine = ReservationEngine(
        database,
        feed,
        notifier,
        default_minutes=settings.default_reservation_minutes,
        max_minutes=settings.max_reservation_minutes,
        clock=clock,
    )
    reconciler = TelemetryReconciler(
        database,
        feed,
        bcrypt_rounds=settings.device_key_bcrypt_rounds,
        offline_after_seconds=settings.device_offline_after_seconds,
        clock_skew_seconds=settings.device_clock_skew_seconds,
        clock=clock,
    )
    sweeper = ExpirySweeper(
        engine,
        reconciler,
        notifier,
        redis_client=redis_client,
        interval_seconds=settings.sweep_interval_seconds,
        lock_ttl_seconds=settings.sweep_lock_ttl_seconds,
    )

    return ServiceContainer(
        settings=settings,
        database=database,
        feed=feed,
        notifier=notifier,
        engine=engine,
        reconciler=reconciler,
        slots=SlotRegistry(database, feed, clock=clock),
        devices=DeviceRegistry(database, feed, bcrypt_rounds=settings.device_key_bcrypt_rounds, clock=clock),
        sweeper=sweeper,
        redis=redis_client,
    )


# ============================================================
# Application Lifecycle Management
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle (startup/shutdown)
    Initializes all required services and cleans up on shutdown
    """
    settings: Settings = app.state.settings
    logger.info(f">> Starting {settings.app_name} v{settings.app_version} ({settings.environment})")
    log_secret_sources()

    redis_client: Optional[redis.Redis] = None
    if settings.redis_url:
        redis_client = redis.from_url(settings.redis_url, decode_responses=True)
        await redis_client.ping()
        logger.info("[OK] Redis connected")

    services = build_services(settings, redis_client)
    await services.database.initialize(create_schema=settings.auto_create_schema)
    app.state.services = services
    logger.info("[OK] Database initialized")

    await services.notifier.start()
    logger.info("[OK] Notification dispatcher started")

    if settings.sweeper_enabled:
        await services.sweeper.start()
        logger.info("[OK] Expiry sweeper started")

    logger.info(f">> {settings.app_name} is ready")

    yield

    logger.info(">> Shutting down application...")

    await services.sweeper.stop()
    await services.notifier.stop()
    logger.info("[OK] Background workers stopped")

    if redis_client is not None:
        await redis_client.aclose()
        logger.info("[OK] Redis closed")

    await services.database.close()
    logger.info("[OK] Database closed")


# ============================================================
# Application Factory
# ============================================================

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.json_logs, settings.environment)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Smart parking reservation lifecycle service",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings

    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    app.include_router(reservations_router)
    app.include_router(slots_router)
    app.include_router(devices_router)
    app.include_router(internal_router)
    app.include_router(changes_router)

    register_exception_handlers(app)
    register_system_routes(app)
    return app


# ============================================================
# Exception Handlers
# ============================================================

def register_exception_handlers(app: FastAPI):

    @app.exception_handler(ParkingException)
    async def parking_exception_handler(request: Request, exc: ParkingException):
        """Handle custom parking exceptions"""
        if exc.status_code >= 500:
            logger.error(f"{exc.error_code}: {exc.message}")
            return JSONResponse(
                status_code=exc.status_code,
                content={"error": exc.error_code, "message": "Service temporarily unavailable", "details": {}},
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Request validation errors use the same 400 shape as ValidationError"""
        return JSONResponse(
            status_code=400,
            content={
                "error": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": {
                    "errors": [
                        {"field": ".".join(str(part) for part in err["loc"]), "error": err["msg"]}
                        for err in exc.errors()
                    ]
                },
            },
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions"""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "INTERNAL_SERVER_ERROR",
                "message": "An unexpected error occurred",
                "request_id": getattr(request.state, "request_id", None),
            }
        )


# ============================================================
# Health & Metrics
# ============================================================

def register_system_routes(app: FastAPI):

    @app.get("/health", response_model=HealthStatus, tags=["System"])
    async def health_check(request: Request):
        """Database and Redis reachability"""
        services: ServiceContainer = request.app.state.services
        checks = {}
        overall_status = "healthy"

        try:
            await services.database.ping()
            checks["database"] = "healthy"
        except Exception as e:
            logger.warning(f"Health check: database unhealthy: {e}")
            checks["database"] = "unhealthy"
            overall_status = "unhealthy"

        if services.redis is not None:
            try:
                await services.redis.ping()
                checks["redis"] = "healthy"
            except Exception as e:
                logger.warning(f"Health check: redis unhealthy: {e}")
                checks["redis"] = "unhealthy"
                overall_status = "unhealthy"
        else:
            checks["redis"] = "not configured"

        checks["sweeper"] = "running" if services.sweeper.running else "stopped"
        checks["notifications"] = f"{services.notifier.pending} pending"

        health = HealthStatus(
            status=overall_status,
            version=services.settings.app_version,
            timestamp=utcnow(),
            checks=checks,
        )
        status_code = 200 if overall_status == "healthy" else 503
        return JSONResponse(status_code=status_code, content=health.model_dump(mode="json"))

    @app.get("/metrics", tags=["System"])
    async def prometheus_metrics():
        """Prometheus exposition format"""
        return Response(content=metrics.get_metrics_text(), media_type=metrics.get_metrics_content_type())


app = create_app()
