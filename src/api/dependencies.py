"""Request-scoped dependencies shared by the engine routes."""

import redis.asyncio as aioredis
from fastapi import Header

from src.shared.cache import get_redis


async def get_tenant_id(x_tenant_id: str = Header(..., min_length=1)) -> str:
    """Tenant from the ``X-Tenant-ID`` header. Trusted: auth happens upstream."""
    return x_tenant_id


async def get_cache() -> aioredis.Redis:
    return get_redis()
