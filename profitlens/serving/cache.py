"""
Redis Cache Module

Result cache for range analytics. One connection pool per process;
``CacheManager`` namespaces keys and JSON-encodes values.
"""

import json
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional, Union

import structlog
from redis.asyncio import ConnectionPool, Redis

from profitlens.config import get_settings

logger = structlog.get_logger(__name__)

_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[Redis] = None

TTL = Union[int, timedelta]


async def init_redis(url: Optional[str] = None) -> Redis:
    """Create the process-wide pool and check the server answers"""
    global _redis_pool, _redis_client

    if _redis_client is not None:
        return _redis_client

    redis_settings = get_settings().redis
    _redis_pool = ConnectionPool.from_url(
        url or redis_settings.get_url(),
        max_connections=redis_settings.max_connections,
        socket_timeout=redis_settings.socket_timeout,
        decode_responses=redis_settings.decode_responses,
    )
    _redis_client = Redis(connection_pool=_redis_pool)

    try:
        await _redis_client.ping()
    except Exception as e:
        logger.error("Redis connection failed", error=str(e))
        await close_redis()
        raise

    logger.info("Redis connection established")
    return _redis_client


async def close_redis() -> None:
    global _redis_pool, _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
    if _redis_pool is not None:
        await _redis_pool.disconnect()
        _redis_pool = None
    logger.info("Redis connection closed")


def get_redis() -> Redis:
    if _redis_client is None:
        raise RuntimeError("Redis not initialized; call init_redis() first")
    return _redis_client


def _seconds(ttl: TTL) -> int:
    if isinstance(ttl, timedelta):
        return int(ttl.total_seconds())
    return int(ttl)


class CacheManager:
    """
    Namespaced JSON cache.

    Uses the client passed in, else the process-wide one from ``init_redis``.
    Redis errors propagate; callers decide whether a cache failure matters.

    Example:
        cache = CacheManager("analytics", default_ttl=600)
        await cache.set("org_1:2024-01-01:2024-01-31:ab12", payload)
        payload = await cache.get("org_1:2024-01-01:2024-01-31:ab12")
    """

    def __init__(self, namespace: str, default_ttl: TTL = 3600, client: Optional[Redis] = None):
        self.namespace = namespace
        self.default_ttl = default_ttl
        self._client = client
        self.hits = 0
        self.misses = 0

    @property
    def client(self) -> Redis:
        return self._client if self._client is not None else get_redis()

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.client.get(self._key(key))
        if raw is None:
            self.misses += 1
            logger.debug("Cache miss", namespace=self.namespace, key=key)
            return None

        self.hits += 1
        logger.debug("Cache hit", namespace=self.namespace, key=key)
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw

    async def set(self, key: str, value: Any, ttl: Optional[TTL] = None) -> bool:
        """Store ``value`` as JSON; False when it cannot be serialized"""
        try:
            payload = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.warning("Value not cacheable", namespace=self.namespace, key=key, error=str(e))
            return False

        seconds = _seconds(ttl or self.default_ttl)
        if seconds > 0:
            await self.client.setex(self._key(key), seconds, payload)
        else:
            await self.client.set(self._key(key), payload)
        return True

    async def _delete_matching(self, pattern: str) -> int:
        client = self.client
        keys = [key async for key in client.scan_iter(match=pattern)]
        if not keys:
            return 0
        return await client.delete(*keys)

    async def invalidate_all(self) -> int:
        return await self._delete_matching(self._key("*"))

    async def invalidate_organization(self, organization_id: str) -> int:
        """Drop every cached result of one organization, e.g. after a rebuild"""
        removed = await self._delete_matching(self._key(f"{organization_id}:*"))
        logger.info("Cache invalidated", namespace=self.namespace, organization_id=organization_id, keys=removed)
        return removed

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl: Optional[TTL] = None,
    ) -> Any:
        """Cached value, or the factory's result stored for next time"""
        value = await self.get(key)
        if value is not None:
            return value

        value = await factory()
        await self.set(key, value, ttl)
        return value
