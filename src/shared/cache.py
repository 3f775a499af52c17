"""Shared async Redis client."""

import redis.asyncio as aioredis
import structlog

from src.config import settings

logger = structlog.get_logger()

_client: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    """Get or create the process-wide Redis client."""
    global _client
    if _client is None:
        _client = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
        logger.info("redis_client_closed")
