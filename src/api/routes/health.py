"""Health and readiness endpoints."""

import structlog
from fastapi import APIRouter
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from src.config import settings
from src.db.database import check_db
from src.shared.cache import get_redis

logger = structlog.get_logger()
router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict:
    from src.main import get_uptime

    return {
        "status": "healthy",
        "version": settings.app_version,
        "uptime_seconds": get_uptime(),
    }


@router.get("/ready")
async def ready() -> JSONResponse:
    db_ok = await check_db()

    redis_ok = False
    try:
        redis_ok = bool(await get_redis().ping())
    except (RedisError, OSError):
        logger.warning("redis_check_failed")

    # Redis backs the pipeline lock; without it only the request path works
    all_ready = db_ok and redis_ok
    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "status": "ready" if all_ready else "degraded",
            "database": db_ok,
            "redis": redis_ok,
        },
    )
