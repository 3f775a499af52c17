"""Maps engine errors onto HTTP responses."""

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from src.domains.experiments.errors import AggregationFailure

logger = structlog.get_logger()

# First match wins; AggregationFailure is checked before the builtin bases.
_ERROR_MAP: tuple[tuple[type[Exception], int, str], ...] = (
    (AggregationFailure, 503, "pipeline_unavailable"),
    (ValueError, 400, "bad_request"),
    (LookupError, 404, "not_found"),
)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "unknown")

    for exc_type, status_code, error in _ERROR_MAP:
        if isinstance(exc, exc_type):
            logger.warning(error, path=request.url.path, error=str(exc))
            message = (
                "Results refresh failed and will be retried"
                if status_code == 503
                else str(exc)
            )
            return JSONResponse(
                status_code=status_code,
                content={"error": error, "message": message, "request_id": request_id},
            )

    logger.exception("unhandled_exception", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
            "request_id": request_id,
        },
    )
