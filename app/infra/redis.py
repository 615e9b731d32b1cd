"""
Redis Connection Management

Shared Redis connection for the scheduling stores: transactions,
confirmations, availability caches, waitlist indices and durable jobs.
Connection failures are logged and surface as ``None`` so callers can
degrade instead of crashing.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, TimeoutError, RedisError

from app.config import settings

logger = logging.getLogger(__name__)

# App prefix for namespacing (allows multiple apps/versions on same Redis)
APP_PREFIX = "scheduler:v1:"


class RedisConnectionError(Exception):
    """Raised when Redis is required but unavailable."""
    pass


class RedisClient:
    """
    Manages the Redis connection as a singleton.

    Features:
    - Connection pooling
    - Automatic retries with exponential backoff
    - Timeouts
    - Graceful failure handling
    """

    _client: Optional[Redis] = None
    _connected: bool = False

    @classmethod
    async def get_client(cls) -> Optional[Redis]:
        """
        Get or create Redis client.

        Returns:
            Redis client or None if connection fails
        """
        if cls._client is not None and cls._connected:
            return cls._client

        try:
            retry = Retry(ExponentialBackoff(), retries=3)

            cls._client = redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5.0,
                socket_timeout=5.0,
                retry_on_timeout=True,
                retry=retry,
            )

            await cls._client.ping()
            cls._connected = True
            logger.info("Redis connection established successfully")
            return cls._client

        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            cls._connected = False
            cls._client = None
            return None

    @classmethod
    async def close(cls) -> None:
        """Close Redis connection."""
        if cls._client is not None:
            try:
                await cls._client.close()
                logger.info("Redis connection closed")
            except RedisError as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                cls._client = None
                cls._connected = False

    @classmethod
    def is_connected(cls) -> bool:
        """Check if Redis is connected."""
        return cls._connected


async def get_redis() -> Optional[Redis]:
    """
    FastAPI dependency that provides the Redis client.

    Returns None if Redis is unavailable.
    """
    return await RedisClient.get_client()


async def require_redis() -> Redis:
    """Return the Redis client or raise when it cannot be reached."""
    client = await get_redis()
    if client is None:
        raise RedisConnectionError("Redis unavailable")
    return client


def key(*parts: Any) -> str:
    """Build a namespaced key from its parts.

    Example:
        >>> key("booking", "transaction", "abc")
        'scheduler:v1:booking:transaction:abc'
    """
    return APP_PREFIX + ":".join(str(p) for p in parts)


async def get_json(client: Redis, name: str) -> Optional[dict]:
    """Read a JSON document, returning None when absent."""
    raw = await client.get(name)
    if raw is None:
        return None
    return json.loads(raw)


async def set_json(client: Redis, name: str, value: Any, ttl: Optional[int] = None) -> None:
    """Write a JSON document, with an optional TTL in seconds."""
    payload = json.dumps(value, default=str)
    if ttl:
        await client.setex(name, ttl, payload)
    else:
        await client.set(name, payload)


async def check_redis_health() -> bool:
    """
    Check Redis connectivity for health checks.

    Returns:
        True if Redis is accessible and responding, False otherwise
    """
    try:
        client = await get_redis()
        if client is None:
            return False

        await client.ping()
        return True

    except RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return False
