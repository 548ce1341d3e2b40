import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from starlette.exceptions import HTTPException as StarletteHTTPException

from shared.config.cache import create_redis_client
from shared.config.database import Database
from shared.config.settings import OrderServiceSettings, get_settings
from shared.observability import setup_observability

from .errors import OrderServiceError
from .idempotency import IdempotencyCoordinator
from .pagination import PaginationCodec
from .publisher import EventSink, create_event_sink
from .relay import OutboxRelay
from .router import public_router, router
from .service import OrderService

logger = structlog.get_logger(__name__)

RELAY_SHUTDOWN_GRACE_SECONDS = 10.0


def _error_body(request: Request, code: str, message: str, details: dict | None = None) -> dict:
    error = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "path": request.url.path,
    }
    if details:
        error["details"] = details
    return {"error": error}


async def order_error_handler(request: Request, exc: OrderServiceError):
    # 503s (lock timeout, cache outage) are transient
    headers = {"Retry-After": "1"} if exc.status_code == 503 else None
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.code, exc.message, exc.details),
        headers=headers,
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc.detail, dict):
        code = exc.detail.get("code", f"HTTP_{exc.status_code}")
        message = exc.detail.get("message", "")
    else:
        code, message = f"HTTP_{exc.status_code}", str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, code, message),
        headers=getattr(exc, "headers", None),
    )


async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def create_app(
    settings: OrderServiceSettings | None = None,
    *,
    database: Database | None = None,
    redis: Redis | None = None,
    event_sink: EventSink | None = None,
) -> FastAPI:
    """Build the orders API. Every collaborator is owned by the app and closed on shutdown."""
    settings = settings or get_settings()
    database = database or Database(settings.database_url, echo=settings.database_echo)
    redis = redis if redis is not None else create_redis_client(settings.redis_url)
    event_sink = event_sink or create_event_sink(settings)

    order_service = OrderService(
        database,
        IdempotencyCoordinator(
            redis,
            ttl_seconds=settings.idempotency_ttl_seconds,
            claim_ttl_seconds=settings.idempotency_claim_ttl_seconds,
        ),
        PaginationCodec(settings.cursor_secret),
        lock_timeout_ms=settings.lock_timeout_ms,
        idempotency_fail_open=settings.idempotency_fail_open,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await database.create_all()
        logger.info("order_service_starting", **settings.dict_for_logging())

        relay = relay_task = None
        if settings.relay_embedded:
            relay = OutboxRelay.from_settings(database, event_sink, settings)
            relay_task = asyncio.create_task(relay.run_forever())
        try:
            yield
        finally:
            if relay is not None:
                relay.stop()
                try:
                    await asyncio.wait_for(relay_task, timeout=RELAY_SHUTDOWN_GRACE_SECONDS)
                except asyncio.TimeoutError:
                    # wait_for cancelled the pass; its transaction rolled back
                    logger.warning("outbox_relay_forced_stop")
            await event_sink.aclose()
            await redis.aclose()
            await database.dispose()
            logger.info("order_service_stopped")

    order_app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)

    # --- OBSERVABILITY BOOTSTRAP ---
    setup_observability(order_app, "order_service", settings)

    order_app.state.settings = settings
    order_app.state.order_service = order_service

    order_app.middleware("http")(request_context_middleware)
    order_app.add_exception_handler(OrderServiceError, order_error_handler)
    order_app.add_exception_handler(StarletteHTTPException, http_error_handler)

    order_app.include_router(public_router)
    order_app.include_router(router, prefix="/orders", tags=["orders"])
    return order_app
