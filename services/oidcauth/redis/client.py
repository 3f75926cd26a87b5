"""
Redis client for the relying party's short-lived state.

Anti-forgery state and browser sessions live here. Every key is namespaced
under ``settings.redis_namespace`` so several deployments can share one Redis.
"""

import redis.asyncio as aioredis

from oidcauth.config import settings
from oidcauth.logging_config import get_logger

logger = get_logger(__name__)

# Initialized in the application lifespan
_redis: aioredis.Redis | None = None


def namespaced(*parts: str) -> str:
    """Build a key prefix, e.g. namespaced("auth_state") -> "oidc:auth_state:"."""
    return ":".join((settings.redis_namespace, *parts)) + ":"


async def init_redis() -> None:
    global _redis  # noqa: PLW0603
    logger.info("Initializing Redis connection", namespace=settings.redis_namespace)
    _redis = aioredis.from_url(
        str(settings.redis_url),
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout,
        socket_connect_timeout=settings.redis_socket_timeout,
    )
    await _redis.ping()
    logger.info("Redis connection established")


async def close_redis() -> None:
    global _redis  # noqa: PLW0603
    if _redis is None:
        return
    logger.info("Closing Redis connection pool")
    await _redis.aclose()
    _redis = None


def get_redis_client() -> aioredis.Redis:
    """Return the Redis client. Raises if not initialized."""
    if _redis is None:
        raise RuntimeError("Redis client not initialized, call init_redis() first")
    return _redis


async def get_redis_health() -> bool:
    """Readiness probe: does Redis answer PING."""
    if _redis is None:
        return False
    try:
        await _redis.ping()
    except aioredis.RedisError as e:
        logger.error("Redis health check failed", error=str(e))
        return False
    return True
