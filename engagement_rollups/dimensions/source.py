"""
User Dimension Source

Read API onto the external store holding user dimension rows. Cache misses
are warmed from here asynchronously; shards never wait on it.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional

import structlog
from pydantic import ValidationError
from redis.asyncio import ConnectionPool, Redis

from engagement_rollups.config import get_settings
from engagement_rollups.models import UserDimension

logger = structlog.get_logger(__name__)

# Global Redis connection
_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[Redis] = None


async def init_redis() -> Redis:
    """Initialize Redis connection pool"""
    global _redis_pool, _redis_client

    if _redis_client is not None:
        return _redis_client

    settings = get_settings()
    _redis_pool = ConnectionPool.from_url(
        settings.redis.get_url(),
        max_connections=settings.redis.max_connections,
        socket_timeout=settings.redis.socket_timeout,
        decode_responses=True,
    )
    _redis_client = Redis(connection_pool=_redis_pool)

    try:
        await _redis_client.ping()
        logger.info("Redis connection established")
    except Exception as e:
        logger.error("Redis connection failed", error=str(e))
        raise

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection pool"""
    global _redis_pool, _redis_client

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None

    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None

    logger.info("Redis connection closed")


def get_redis() -> Redis:
    """Get Redis client instance"""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


class DimensionSource(ABC):
    """Abstract read API for user dimensions"""

    @abstractmethod
    async def fetch(self, user_id: str) -> Optional[UserDimension]:
        """Return the current dimension row, or None if the user has none"""


class StaticDimensionSource(DimensionSource):
    """In-process source backed by a dict, used for seeding and tests"""

    def __init__(self, dimensions: Optional[Dict[str, UserDimension]] = None):
        self._dimensions = dict(dimensions or {})

    def put(self, dimension: UserDimension) -> None:
        self._dimensions[dimension.user_id] = dimension

    async def fetch(self, user_id: str) -> Optional[UserDimension]:
        return self._dimensions.get(user_id)


class RedisDimensionSource(DimensionSource):
    """
    Dimensions stored as Redis hashes.

    Layout:
        HSET user_dimension:<user_id> region US account_type paid version 3
    """

    def __init__(self, client: Optional[Redis] = None, key_prefix: Optional[str] = None):
        self._client = client
        self.key_prefix = key_prefix or get_settings().redis.dimension_key_prefix

    def _key(self, user_id: str) -> str:
        return f"{self.key_prefix}:{user_id}"

    async def fetch(self, user_id: str) -> Optional[UserDimension]:
        client = self._client or get_redis()
        row = await client.hgetall(self._key(user_id))
        if not row:
            return None
        try:
            return UserDimension(user_id=user_id, **row)
        except ValidationError as e:
            logger.warning("Malformed dimension row", user_id=user_id, error=str(e))
            return None

    async def store(self, dimension: UserDimension) -> None:
        client = self._client or get_redis()
        await client.hset(
            self._key(dimension.user_id),
            mapping={
                "region": dimension.region,
                "account_type": dimension.account_type,
                "version": dimension.version,
            },
        )
