"""Async Redis client for the workforce event surface."""

from functools import lru_cache

from redis.asyncio import ConnectionPool, Redis

from .config import settings


@lru_cache(maxsize=1)
def _pool() -> ConnectionPool:
    return ConnectionPool.from_url(settings.redis_url, max_connections=20, decode_responses=True)


def get_redis_client() -> Redis:
    """Get an async Redis client from the shared pool."""
    return Redis(connection_pool=_pool())
