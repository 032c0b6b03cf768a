"""
Redis connection pool and the cache façade used by the catalog and order lookups.

The façade never raises: a missing backend is a pass-through (reads miss,
writes no-op) and backend errors or timeouts degrade to a miss. Degradation is
visible through the ``ridefare_cache_backend_up`` gauge and the error counter.
"""
import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

import redis.asyncio as aioredis
from prometheus_client import Counter, Gauge
from redis.exceptions import RedisError

from ridefare.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

_redis_pool: aioredis.Redis | None = None
_cache: "CacheFacade | None" = None

T = TypeVar("T")

# Must outlive any in-flight read-through load
GENERATION_TTL_SECONDS = 24 * 3600

cache_errors_counter = Counter(
    "ridefare_cache_errors_total", "Cache operations that failed or timed out", ["operation"]
)
cache_requests_counter = Counter(
    "ridefare_cache_requests_total", "Cache reads by outcome", ["result"]
)
cache_backend_up = Gauge(
    "ridefare_cache_backend_up", "1 when the last cache call reached the backend, else 0"
)


async def get_redis() -> aioredis.Redis:
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=100,
        )
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool, _cache
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None
    _cache = None


async def get_cache() -> "CacheFacade":
    global _cache
    if _cache is None:
        backend = await get_redis() if settings.cache_enabled else None
        _cache = CacheFacade(backend)
    return _cache


# ---------------------------------------------------------------------------
# Cache façade
# ---------------------------------------------------------------------------

class CacheFacade:
    def __init__(
        self,
        backend: Optional[aioredis.Redis],
        namespace: str = settings.cache_namespace,
        op_timeout: float = settings.cache_timeout_seconds,
        jitter_ratio: float = settings.cache_ttl_jitter,
    ) -> None:
        self.backend = backend
        self.namespace = namespace
        self.op_timeout = op_timeout
        self.jitter_ratio = jitter_ratio
        self.healthy = backend is not None
        cache_backend_up.set(1 if self.healthy else 0)

    # -- keys ---------------------------------------------------------------

    def key(self, *parts: str) -> str:
        return ":".join((self.namespace, *parts))

    def order_key(self, order_id: str) -> str:
        return self.key("order", order_id)

    def price_rule_key(self, rule_id: str) -> str:
        return self.key("pricerule", rule_id)

    def driver_location_key(self, user_id: str) -> str:
        return self.key("driver_location", user_id)

    def generation_key(self, key: str) -> str:
        return f"{key}:gen"

    # -- plumbing -----------------------------------------------------------

    def _ttl(self, ttl: int) -> int:
        """Spread expiries over [ttl, ttl * (1 + jitter)] to avoid stampedes."""
        spread = int(ttl * self.jitter_ratio)
        return ttl + random.randint(0, spread) if spread > 0 else ttl

    async def _call(self, operation: str, awaitable: Awaitable[T], default: T) -> T:
        try:
            result = await asyncio.wait_for(awaitable, timeout=self.op_timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            self.healthy = False
            cache_backend_up.set(0)
            cache_errors_counter.labels(operation=operation).inc()
            logger.warning("Cache %s degraded to miss: %r", operation, exc)
            return default
        if not self.healthy:
            logger.info("Cache backend reachable again")
        self.healthy = True
        cache_backend_up.set(1)
        return result

    # -- operations ---------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        if self.backend is None:
            return None
        value = await self._call("get", self.backend.get(key), None)
        cache_requests_counter.labels(result="hit" if value is not None else "miss").inc()
        return value

    async def set(self, key: str, value: str, ttl: int) -> None:
        if self.backend is None:
            return
        await self._call("set", self.backend.set(key, value, ex=self._ttl(ttl)), None)

    async def delete(self, *keys: str) -> int:
        if self.backend is None or not keys:
            return 0
        return await self._call("delete", self.backend.delete(*keys), 0)

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        if self.backend is None:
            return False
        result = await self._call("set_if_absent", self.backend.set(key, value, ex=self._ttl(ttl), nx=True), None)
        return bool(result)

    async def scan_delete(self, pattern: str) -> int:
        if self.backend is None:
            return 0
        return await self._call("scan_delete", self._scan_delete(pattern), 0)

    async def invalidate(self, *keys: str) -> int:
        """
        Drop ``keys`` and bump their generations. A read-through fill that
        started before the bump notices it and discards its own write.
        """
        if self.backend is None or not keys:
            return 0
        for key in keys:
            generation = self.generation_key(key)
            await self._call("incr", self.backend.incr(generation), 0)
            await self._call("expire", self.backend.expire(generation, GENERATION_TTL_SECONDS), False)
        return await self.delete(*keys)

    async def _generation(self, key: str) -> Optional[str]:
        return await self._call("get", self.backend.get(self.generation_key(key)), None)

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Optional[str]]], ttl: int) -> Optional[str]:
        """
        Read-through: on a miss, call ``loader`` and store a non-None result.
        The fill is undone when ``invalidate`` ran for the key while loading.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached
        if self.backend is None:
            return await loader()
        generation = await self._generation(key)
        value = await loader()
        if value is not None:
            await self.set(key, value, ttl)
            if await self._generation(key) != generation:
                logger.debug("Discarding read-through fill of %s after invalidation", key)
                await self.delete(key)
        return value

    async def _scan_delete(self, pattern: str) -> int:
        deleted = 0
        batch: list[str] = []
        async for key in self.backend.scan_iter(match=pattern, count=100):
            batch.append(key)
            if len(batch) >= 100:
                deleted += await self.backend.delete(*batch)
                batch = []
        if batch:
            deleted += await self.backend.delete(*batch)
        return deleted

    # -- driver location ----------------------------------------------------

    async def set_driver_location(self, user_id: str, lat: float, lng: float, ttl: int = settings.driver_location_ttl_seconds) -> None:
        await self.set(self.driver_location_key(user_id), f"{lat},{lng}", ttl)

    async def get_driver_location(self, user_id: str) -> Optional[tuple[float, float]]:
        raw = await self.get(self.driver_location_key(user_id))
        if not raw:
            return None
        try:
            lat, lng = raw.split(",", 1)
            return float(lat), float(lng)
        except ValueError:
            logger.warning("Malformed driver location for %s: %r", user_id, raw)
            return None
