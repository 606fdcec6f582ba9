"""
Redis store for the auction cache service.

Holds the cached Dune result, the refresh and sync locks, the sync checkpoint
and the cancellation counter hash. Unlike a best-effort cache, the store is
the only shared state between workers, so failures are raised as
``CacheStoreError`` instead of being silently ignored.
"""

import json
import time
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any, Optional

from redis.exceptions import RedisError

from auction_cache.errors import CacheStoreError
from auction_cache.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CacheEntry:
    """A cached Dune result set."""
    rows: list[dict[str, Any]]
    cached_at: float  # epoch seconds, taken from the execution end time
    source_execution_ended_at: Optional[float] = None

    def age(self, now: float) -> float:
        return max(0.0, now - self.cached_at)

    def is_fresh(self, now: float, fresh_window_seconds: int) -> bool:
        return self.age(now) < fresh_window_seconds

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        d = json.loads(raw)
        return cls(
            rows=list(d.get("rows") or []),
            cached_at=float(d["cached_at"]),
            source_execution_ended_at=(
                float(d["source_execution_ended_at"])
                if d.get("source_execution_ended_at") is not None
                else None
            ),
        )


class RedisStore:
    """Async Redis wrapper exposing the primitives the cache layer needs.

    ``client`` may be passed in directly (tests use fakeredis); otherwise
    ``connect`` builds a pooled client from ``url``.
    """

    def __init__(self, url: Optional[str] = None, client=None, pool_size: int = 20):
        self._url = url
        self._redis = client
        self._pool_size = pool_size
        self._available = client is not None
        self._hits = 0
        self._misses = 0

    @property
    def is_available(self) -> bool:
        return self._available

    @property
    def client(self):
        if self._redis is None:
            raise CacheStoreError("Cache store not connected")
        return self._redis

    async def connect(self) -> None:
        """Connect and ping Redis. Raises if the server cannot be reached."""
        if self._redis is not None:
            return
        if not self._url:
            raise CacheStoreError("Cache store misconfigured", "REDIS_URL is not set")

        import redis.asyncio as aioredis

        self._redis = aioredis.from_url(
            self._url,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
            max_connections=self._pool_size,
        )
        try:
            await self._redis.ping()
        except RedisError as e:
            logger.error("Redis unreachable", error=str(e))
            raise CacheStoreError("Cache store unavailable", str(e)) from e
        self._available = True
        logger.info("Redis store connected", url=self._url.split("@")[-1])

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except RedisError as e:
                logger.debug("Redis close failed", error=str(e))
            self._redis = None
            self._available = False
            logger.info("Redis store closed")

    def cache_stats(self) -> dict:
        """Return hit/miss statistics for cache entry reads."""
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
            "total": total,
        }

    async def health_check(self) -> dict:
        """Return store health status."""
        if self._redis is None:
            return {"status": "unavailable", "reason": "not connected", **self.cache_stats()}
        try:
            await self._redis.ping()
            return {"status": "healthy", **self.cache_stats()}
        except RedisError as e:
            return {"status": "unhealthy", "reason": str(e), **self.cache_stats()}

    # ------------------------------------------------------------------
    # Primitive operations
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except RedisError as e:
            logger.warning("Redis GET failed", key=key, error=str(e))
            raise CacheStoreError("Cache read failed", str(e)) from e

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        try:
            await self.client.set(key, value, ex=ttl)
        except RedisError as e:
            logger.warning("Redis SET failed", key=key, error=str(e))
            raise CacheStoreError("Cache write failed", str(e)) from e

    async def delete(self, *keys: str) -> int:
        """Delete one or more keys in a single atomic command."""
        if not keys:
            return 0
        try:
            return await self.client.delete(*keys)
        except RedisError as e:
            logger.warning("Redis DEL failed", keys=list(keys), error=str(e))
            raise CacheStoreError("Cache delete failed", str(e)) from e

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self.client.exists(key))
        except RedisError as e:
            raise CacheStoreError("Cache read failed", str(e)) from e

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        """``SET key value NX EX ttl``; True when this call created the key."""
        try:
            return bool(await self.client.set(key, value, nx=True, ex=ttl))
        except RedisError as e:
            logger.warning("Redis SET NX failed", key=key, error=str(e))
            raise CacheStoreError("Cache write failed", str(e)) from e

    async def hincrby_many(
        self,
        key: str,
        increments: Mapping[str, int],
        marks: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Apply a batch of hash increments in one MULTI/EXEC pipeline.

        ``marks`` are plain HSETs on the same hash, committed in the same
        transaction as the increments.
        """
        if not increments and not marks:
            return
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                for field, amount in increments.items():
                    pipe.hincrby(key, field, amount)
                if marks:
                    pipe.hset(key, mapping=dict(marks))
                await pipe.execute()
        except RedisError as e:
            logger.warning("Redis HINCRBY pipeline failed", key=key, error=str(e))
            raise CacheStoreError("Counter update failed", str(e)) from e

    async def hgetall_int(self, key: str) -> dict[str, int]:
        try:
            raw = await self.client.hgetall(key)
        except RedisError as e:
            raise CacheStoreError("Cache read failed", str(e)) from e
        return {_text(k): int(v) for k, v in raw.items()}

    async def hget_int(self, key: str, field: str) -> Optional[int]:
        try:
            raw = await self.client.hget(key, field)
        except RedisError as e:
            raise CacheStoreError("Cache read failed", str(e)) from e
        return int(raw) if raw is not None else None

    async def get_int(self, key: str) -> Optional[int]:
        raw = await self.get(key)
        return int(raw) if raw is not None else None

    # ------------------------------------------------------------------
    # Cache entries
    # ------------------------------------------------------------------

    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        raw = await self.get(key)
        if raw is None:
            self._misses += 1
            return None
        try:
            entry = CacheEntry.from_json(_text(raw))
        except (ValueError, KeyError, TypeError) as e:
            # Corrupt payloads behave like a miss; the next refresh overwrites them
            logger.warning("Cache entry undecodable", key=key, error=str(e))
            self._misses += 1
            return None
        self._hits += 1
        return entry

    async def set_entry(self, key: str, entry: CacheEntry) -> None:
        await self.set(key, entry.to_json())

    async def get_json(self, key: str) -> Optional[Any]:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await self.set(key, json.dumps(value, default=str), ttl)


def _text(value) -> str:
    return value.decode() if isinstance(value, bytes) else value


def now() -> float:
    """Wall clock in epoch seconds; the default clock everywhere."""
    return time.time()
