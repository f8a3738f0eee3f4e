# callrelay/transport/http_app.py
"""
Operational HTTP surface for the call notification service.

Security layers:
1. Public: liveness only (/health)
2. Internal: health probe, call stats and metrics (METRICS_TOKEN or internal network)
3. Admin: test notifications and on-demand summaries (ADMIN_TOKEN)

The notification service itself runs inside the lifespan, so a single
process serves HTTP and drains the queue (RUN_MODE=all). RUN_MODE=web
serves HTTP only, for deployments where another replica drains the queue.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from callrelay.config import settings
from callrelay.core.service import CallNotificationService
from callrelay.infra.db_async import close_pool, init_pool
from callrelay.infra.digits_cipher import get_digits_cipher
from callrelay.infra.http_client import close_all_sessions
from callrelay.infra.logging_config import setup_logging, get_logger
from callrelay.infra.metrics import get_metrics_collector
from callrelay.infra.pg_notification_store_async import get_notification_store
from callrelay.transport.middleware import RequestContextMiddleware
from callrelay.transport.schemas import DeliveryOut, InputSummaryIn, NotificationTestIn
from callrelay.transport.security import (
    check_configured_tokens,
    require_admin_auth,
    require_metrics_auth,
    sanitize_error_message,
)
from callrelay.transport.telegram_sender import TelegramTransport

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_notification_service(request: Request) -> CallNotificationService:
    """Get the notification service from app state"""
    service = getattr(request.app.state, "notification_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Notification service not initialized")
    return service


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Open the pool, build the notification service and drain the queue until shutdown."""

    # STARTUP
    logger.info(
        f"callrelay starting: env={settings.app_env}, run_mode={settings.run_mode}"
    )

    check_configured_tokens()

    await init_pool()
    logger.info("Postgres pool initialized")

    service = CallNotificationService.from_settings(
        get_notification_store(),
        TelegramTransport(),
        digits_decryptor=get_digits_cipher(),
    )
    fastapi_app.state.notification_service = service

    # Only drain the queue in "all" mode to prevent duplicate sends.
    if settings.run_mode == "all":
        await service.start()
    else:
        logger.info(f"Notification service skipped (run_mode={settings.run_mode})")

    logger.info("callrelay ready")

    yield

    # SHUTDOWN
    logger.info("callrelay stopping")

    await service.stop()
    await close_all_sessions()
    await close_pool()
    logger.info("callrelay stopped")


# ============================================================================
# ROUTES
# ============================================================================

router = APIRouter()


@router.get("/health")
def health():
    """Liveness only; no dependency is checked."""
    return {"status": "healthy"}


@router.get("/health/telegram", dependencies=[Depends(require_metrics_auth)])
async def telegram_health(service: CallNotificationService = Depends(get_notification_service)):
    """
    Probe the Telegram bot and report tracking counters.

    Returns 503 when the channel is degraded so load balancers notice;
    a disabled service (no bot token) is reported with 200.
    """
    result = await service.health_check()
    status_code = 503 if result["status"] == "degraded" else 200
    return JSONResponse(status_code=status_code, content=result)


@router.get("/stats/calls", dependencies=[Depends(require_metrics_auth)])
def call_stats(service: CallNotificationService = Depends(get_notification_service)):
    return {
        "calls": service.get_call_status_stats(),
        "notifications": service.get_notification_metrics(),
    }


@router.get("/metrics", dependencies=[Depends(require_metrics_auth)])
def metrics():
    """Counters and histogram summaries as JSON."""
    return get_metrics_collector().get_metrics()


@router.post(
    "/admin/notifications/test",
    response_model=DeliveryOut,
    dependencies=[Depends(require_admin_auth)],
)
async def admin_test_notification(
    payload: NotificationTestIn,
    service: CallNotificationService = Depends(get_notification_service),
):
    """Push a status update through the full status path (gate, timing, formatting, send)."""
    success = await service.test_notification(payload.call_sid, payload.status, payload.chat_id)
    return DeliveryOut(success=success)


@router.post(
    "/admin/calls/{call_sid}/input-summary",
    response_model=DeliveryOut,
    dependencies=[Depends(require_admin_auth)],
)
async def admin_input_summary(
    call_sid: str,
    payload: InputSummaryIn,
    service: CallNotificationService = Depends(get_notification_service),
):
    """Send the keypad input summary of a call to a chat."""
    success = await service.send_input_summary(call_sid, payload.chat_id)
    return DeliveryOut(success=success)


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="callrelay",
    description="Call lifecycle notifications for operators",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

app.add_middleware(RequestContextMiddleware, log_requests=settings.enable_request_logging)
app.include_router(router)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Render HTTPException as {"error": detail}; 5xx are logged."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.detail}")

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Last-resort 500 with a sanitized message."""
    logger.error(f"Unhandled {exc.__class__.__name__} on {request.url.path}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={"error": sanitize_error_message(exc, settings.is_production)},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "callrelay.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,
        server_header=False,
        date_header=False,
    )
