# callrelay/transport/middleware.py
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from callrelay.infra.logging_config import LogContext, get_logger

logger = get_logger(__name__)

# Probed every few seconds by the orchestrator.
QUIET_PATHS = frozenset({"/health"})


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag each request with X-Request-ID and log method, path, status and latency."""

    def __init__(self, app: ASGIApp, log_requests: bool = True):
        super().__init__(app)
        self.log_requests = log_requests

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        log_ctx = LogContext(logger, request_id=request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            log_ctx.error(
                f"{request.method} {request.url.path} raised {exc.__class__.__name__} "
                f"after {(time.perf_counter() - started) * 1000:.1f}ms",
                exc_info=True,
            )
            raise

        response.headers["X-Request-ID"] = request_id
        if self.log_requests:
            duration_ms = (time.perf_counter() - started) * 1000
            emit = log_ctx.debug if request.url.path in QUIET_PATHS else log_ctx.info
            emit(
                f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.1f}ms)",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 1),
                },
            )
        return response
