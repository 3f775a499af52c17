"""Request logging with request and tenant ids bound for the whole call."""

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger()

# Health checks hit these every few seconds
_QUIET_PATHS = frozenset({"/health", "/ready"})


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """Echoes ``X-Request-ID`` and binds it into structlog's contextvars.

    Domain code logging during the request (assignment fallbacks, rejected
    events) picks the ids up through ``merge_contextvars`` without threading
    them through every call.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        tenant_id = request.headers.get("X-Tenant-ID")

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, tenant_id=tenant_id)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

        emit = logger.debug if request.url.path in _QUIET_PATHS else logger.info
        emit(
            "http_request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=elapsed_ms,
        )
        structlog.contextvars.clear_contextvars()

        response.headers["X-Request-ID"] = request_id
        return response
