"""
GameZone order service application.

The lifespan builds the order repository, inventory aggregator, payment and
fulfillment adapters and the lifecycle manager, keeps them on ``app.state``
and starts the background inventory refresh.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from orderflow.api.deps import http_error
from orderflow.api.v1 import inventory_router, orders_router, payments_router
from orderflow.cache.redis_client import RedisClient, get_redis_client
from orderflow.core.config import Settings, get_settings
from orderflow.core.exceptions import OrderflowError
from orderflow.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from orderflow.core.retry import RetryPolicy
from orderflow.database.connection import (
    check_database_health,
    close_database_connections,
    create_tables,
)
from orderflow.services.fulfillment.partner_client import FulfillmentPartnerClient
from orderflow.services.inventory.aggregator import InventoryAggregator
from orderflow.services.inventory.snapshot_store import (
    InMemorySnapshotStore,
    RedisSnapshotStore,
    SnapshotStore,
)
from orderflow.services.inventory.sources import (
    OfficialStoreStockSource,
    RetailerStockSource,
    build_source_client,
)
from orderflow.services.orders.notifications import LoggingNotifier
from orderflow.services.orders.repository import InMemoryOrderRepository, OrderRepository
from orderflow.services.orders.service import OrderLifecycleManager
from orderflow.services.orders.sql_repository import SQLAlchemyOrderRepository
from orderflow.services.payments.paystack_client import PaystackClient

# Logging must be configured before any module logs at import time.
configure_logging()
logger = get_logger(__name__)

settings = get_settings()

limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit_default])


async def _open_snapshot_store(
    settings: Settings,
) -> tuple[Optional[SnapshotStore], Optional[RedisClient]]:
    """
    Connect the Redis snapshot store.

    Without Redis the service still runs; the snapshot simply is not
    persisted across restarts.
    """
    redis_client = get_redis_client()
    try:
        await redis_client.connect()
    except RedisError as e:
        logger.warning(
            "Inventory snapshot persistence disabled",
            error=str(e),
            error_type=type(e).__name__,
        )
        return None, None
    return RedisSnapshotStore(redis_client, settings.inventory_snapshot_key), redis_client


def build_inventory_aggregator(
    settings: Settings,
    retry_policy: RetryPolicy,
    source_client: httpx.AsyncClient,
    snapshot_store: Optional[SnapshotStore] = None,
) -> InventoryAggregator:
    """
    Wire the scraped sources into the aggregator.

    Sources retry their own page fetches, so the per-source deadline covers
    the whole retry sequence rather than a single request.
    """
    return InventoryAggregator(
        sources=[
            RetailerStockSource(source_client, retry_policy),
            OfficialStoreStockSource(source_client, retry_policy),
        ],
        snapshot_store=snapshot_store,
        ttl_seconds=settings.inventory_cache_ttl_seconds,
        source_timeout=retry_policy.max_elapsed(settings.inventory_source_timeout_seconds),
        fallback_min=settings.fallback_stock_min,
        fallback_max=settings.fallback_stock_max,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Build the services on startup and release their connections on shutdown.

    The periodic inventory refresh runs as a background task for the whole
    lifetime of the app and is cancelled first on shutdown.
    """
    logger.info(
        "Application starting",
        environment=settings.environment,
        storage_backend=settings.storage_backend,
        version=settings.app_version,
    )

    redis_client: Optional[RedisClient] = None
    with log_performance(logger, "application_startup"):
        repository: OrderRepository
        snapshot_store: Optional[SnapshotStore]
        if settings.storage_backend == "postgres":
            await create_tables()
            repository = SQLAlchemyOrderRepository()
            snapshot_store, redis_client = await _open_snapshot_store(settings)
        else:
            repository = InMemoryOrderRepository()
            snapshot_store = InMemorySnapshotStore()

        retry_policy = RetryPolicy.from_settings(settings)
        source_client = build_source_client(settings.inventory_source_timeout_seconds)
        inventory = build_inventory_aggregator(
            settings, retry_policy, source_client, snapshot_store
        )
        await inventory.restore()

        gateway = PaystackClient(retry_policy=retry_policy)
        partner = FulfillmentPartnerClient(retry_policy=retry_policy)
        if not gateway.is_configured:
            logger.warning("Paystack secret key not set; payment calls will fail")

        app.state.settings = settings
        app.state.inventory = inventory
        app.state.redis = redis_client
        app.state.order_manager = OrderLifecycleManager(
            repository=repository,
            gateway=gateway,
            partner=partner,
            inventory=inventory,
            notifier=LoggingNotifier(),
            settings=settings,
        )
        logger.info("Resources initialized successfully")

    refresh_task = asyncio.create_task(
        inventory.run_periodic_refresh(settings.inventory_refresh_interval_seconds)
    )
    logger.info(
        "Background inventory refresh started",
        interval_seconds=settings.inventory_refresh_interval_seconds,
    )

    yield

    logger.info("Application shutting down")
    with log_performance(logger, "application_shutdown"):
        refresh_task.cancel()
        try:
            await refresh_task
        except asyncio.CancelledError:
            pass
        logger.info("Background tasks stopped")

        await gateway.aclose()
        await partner.aclose()
        await source_client.aclose()
        if redis_client is not None:
            await redis_client.disconnect()
        if settings.storage_backend == "postgres":
            await close_database_connections()
        logger.info("Resources cleaned up successfully")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="GameZone order orchestration API",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    debug=settings.debug,
)

# Per-client rate limit applied to every route
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """Propagate or assign X-Request-ID and log each request with its duration."""
    request_id = set_request_id(request.headers.get("X-Request-ID"))

    logger.info(
        "Request received",
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None,
    )

    try:
        with log_performance(
            logger,
            "request_processing",
            method=request.method,
            path=request.url.path,
        ):
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )
        return response
    finally:
        clear_context()


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    logger.warning(
        "Request validation failed",
        method=request.method,
        path=request.url.path,
        errors=exc.errors(),
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation Error",
            "message": "Request validation failed",
            "details": jsonable_errors(exc),
            "request_id": get_request_id(),
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    """Validation errors without the raw input values."""
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


@app.exception_handler(OrderflowError)
async def orderflow_exception_handler(request: Request, exc: OrderflowError) -> JSONResponse:
    """Domain errors that escaped a route are mapped like any other."""
    http_exc = http_error(exc)
    return JSONResponse(
        status_code=http_exc.status_code,
        content={"detail": http_exc.detail, "request_id": get_request_id()},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the failure in full; the client only gets the request id."""
    logger.error(
        "Unhandled exception",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred",
            "request_id": get_request_id(),
        },
    )


@app.get(
    "/health",
    tags=["Health"],
    summary="Service health",
    response_description="Database, Redis and inventory cache status",
)
async def health_check(request: Request) -> JSONResponse:
    """
    Report application health and the state of its backing services.

    Returns 503 when the order database is unreachable. Redis and the
    inventory cache are reported but never make the service unhealthy.
    """
    checks: dict[str, object] = {}
    healthy = True

    if settings.storage_backend == "postgres":
        checks["database"] = await check_database_health()
        healthy = bool(checks["database"])
        redis_client: Optional[RedisClient] = getattr(request.app.state, "redis", None)
        checks["redis"] = await redis_client.health_check() if redis_client else False

    inventory: Optional[InventoryAggregator] = getattr(request.app.state, "inventory", None)
    if inventory is not None:
        snapshot = inventory.snapshot
        checks["inventory_cache_fresh"] = inventory.is_fresh()
        checks["inventory_fallback"] = bool(snapshot and snapshot.is_fallback)

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "service": settings.app_name,
            "version": settings.app_version,
            "environment": settings.environment,
            "checks": checks,
        },
    )


@app.get(
    "/live",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Liveness probe",
)
async def liveness_check() -> dict[str, str]:
    """Always 200 while the process is serving requests."""
    return {"status": "alive"}


app.include_router(orders_router, prefix=settings.api_v1_prefix)
app.include_router(payments_router, prefix=settings.api_v1_prefix)
app.include_router(inventory_router, prefix=settings.api_v1_prefix)

logger.info(
    "Application initialized",
    app_name=settings.app_name,
    version=settings.app_version,
    environment=settings.environment,
)
