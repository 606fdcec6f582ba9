"""
Cache orchestration for the Dune bidder dataset.

Decides per request whether to serve the cached rows, wait briefly for
another worker's refresh, or run a refresh itself under the Redis lock.
Every refresh failure falls back to whatever rows are already cached.

The wait for a lock holder is a single fixed delay followed by one re-read.
That is enough for a handful of concurrent dashboards; a high-fanout
deployment would want a proper notification (pub/sub) instead.
"""

import asyncio
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from auction_cache.config import RefreshPolicy
from auction_cache.errors import (
    AuctionCacheError,
    LockBusyError,
    UpstreamExecuteError,
    UpstreamStateError,
    UpstreamTimeoutError,
)
from auction_cache.services.cache import CacheEntry, RedisStore, now
from auction_cache.services.dune import DuneClient, ExecutionResult
from auction_cache.services.lock import RedisLock
from auction_cache.utils.logging import get_logger

logger = get_logger(__name__)

SOURCE_CACHE = "cache"
SOURCE_CACHE_AFTER_LOCK_WAIT = "cache_after_lock_wait"
SOURCE_STALE_WHILE_REFRESHING = "stale_while_refreshing"
SOURCE_FRESH_EXECUTION = "dune_fresh_execution"
SOURCE_STALE_ON_FAIL = "stale_on_fail"
SOURCE_STALE_ON_TIMEOUT = "stale_on_timeout"
SOURCE_STALE_ON_CRASH = "stale_on_crash"


@dataclass
class CacheResult:
    """What a request gets back: rows plus freshness metadata."""
    rows: list[dict[str, Any]]
    cached_at: float
    age_seconds: float
    next_refresh_seconds: int
    source: str
    warning: Optional[str] = None

    @property
    def is_stale(self) -> bool:
        return self.source.startswith("stale_")

    def to_response(self) -> dict:
        body = {
            "rows": self.rows,
            "cached_at": int(self.cached_at * 1000),
            "cache_age_seconds": int(self.age_seconds),
            "next_refresh_seconds": self.next_refresh_seconds,
            "source": self.source,
        }
        if self.warning:
            body["warning"] = self.warning
        return body


class CacheOrchestrator:
    """Serves one Dune query through the shared Redis cache.

    Holds no per-request state; the store is the only shared memory, so any
    number of instances can run side by side.
    """

    def __init__(
        self,
        store: RedisStore,
        dune: DuneClient,
        query_id: int,
        clock: Callable[[], float] = now,
        on_force_refresh: Optional[Callable[[], Awaitable[Any]]] = None,
    ):
        self.store = store
        self.dune = dune
        self.query_id = query_id
        self.lock = RedisLock(store)
        self.clock = clock
        self.on_force_refresh = on_force_refresh

    @staticmethod
    def lock_key(cache_key: str) -> str:
        return f"{cache_key}:lock"

    async def get_data(
        self,
        cache_key: str,
        policy: RefreshPolicy,
        force_refresh: bool = False,
    ) -> CacheResult:
        """Return the rows for ``cache_key``, refreshing them if needed.

        Raises:
            LockBusyError: another worker is refreshing and nothing is cached.
            UpstreamError: the refresh failed and nothing is cached.
            CacheStoreError: Redis is unreachable.
        """
        entry = await self.store.get_entry(cache_key)
        if entry is not None and not force_refresh and entry.is_fresh(self.clock(), policy.fresh_window_seconds):
            return self._result(entry, SOURCE_CACHE, policy)

        # A failed SET NX means someone else holds the lock
        lock_key = self.lock_key(cache_key)
        if not await self.lock.acquire(lock_key, policy.lock_ttl_seconds):
            logger.info("Refresh already in progress, waiting", cache_key=cache_key)
            return await self._wait_for_refresh(cache_key, policy, entry)

        return await self._refresh(cache_key, policy, entry, lock_key, force_refresh)

    async def _reset_side_caches(self) -> None:
        if self.on_force_refresh is None:
            return
        try:
            await self.on_force_refresh()
        except Exception as e:
            logger.warning("Side cache reset failed", error=str(e))

    async def _wait_for_refresh(
        self,
        cache_key: str,
        policy: RefreshPolicy,
        prior: Optional[CacheEntry],
    ) -> CacheResult:
        await asyncio.sleep(policy.lock_wait_seconds)
        latest = await self.store.get_entry(cache_key)

        if latest is not None:
            updated = prior is None or latest.cached_at > prior.cached_at
            if updated or latest.is_fresh(self.clock(), policy.fresh_window_seconds):
                return self._result(latest, SOURCE_CACHE_AFTER_LOCK_WAIT, policy)
            return self._result(
                latest,
                SOURCE_STALE_WHILE_REFRESHING,
                policy,
                warning="Refresh in progress; serving previously cached data",
            )

        raise LockBusyError(
            "Data refresh in progress, retry shortly",
            retry_after=max(1, math.ceil(policy.lock_wait_seconds)),
        )

    async def _refresh(
        self,
        cache_key: str,
        policy: RefreshPolicy,
        prior: Optional[CacheEntry],
        lock_key: str,
        force_refresh: bool = False,
    ) -> CacheResult:
        logger.info("Refreshing from Dune", cache_key=cache_key, query_id=self.query_id, has_prior=prior is not None)
        try:
            result = await self._run_query(policy)
            fresh = CacheEntry(
                rows=result.rows,
                cached_at=result.ended_at if result.ended_at is not None else self.clock(),
                source_execution_ended_at=result.ended_at,
            )
            await self.store.set_entry(cache_key, fresh)
            if force_refresh:
                # Only a successful forced refresh starts the side caches over
                await self._reset_side_caches()
            return self._result(fresh, SOURCE_FRESH_EXECUTION, policy)
        except UpstreamTimeoutError as e:
            return self._fallback(prior, SOURCE_STALE_ON_TIMEOUT, policy, e)
        except (UpstreamExecuteError, UpstreamStateError) as e:
            return self._fallback(prior, SOURCE_STALE_ON_FAIL, policy, e)
        except Exception as e:
            logger.exception("Refresh crashed", cache_key=cache_key)
            return self._fallback(prior, SOURCE_STALE_ON_CRASH, policy, e)
        finally:
            try:
                await self.lock.release(lock_key)
            except Exception as e:
                # The TTL frees the lock if this DEL never lands
                logger.warning("Refresh lock release failed", lock_key=lock_key, error=str(e))

    async def _run_query(self, policy: RefreshPolicy) -> ExecutionResult:
        """Execute and poll, bounded by the refresh deadline.

        Slow HTTP round trips are not part of the poll budget, so without the
        deadline a refresh could outlive its lock.
        """
        deadline = policy.refresh_deadline_seconds
        try:
            return await asyncio.wait_for(
                self.dune.run_query(
                    self.query_id,
                    poll_interval=policy.poll_interval_seconds,
                    max_attempts=policy.max_poll_attempts,
                ),
                timeout=deadline,
            )
        except asyncio.TimeoutError as e:
            logger.warning("Refresh deadline exceeded", query_id=self.query_id, deadline=deadline)
            raise UpstreamTimeoutError(
                "Timed out waiting for Dune execution",
                execution_id=None,
                attempts=None,
                details=f"Refresh exceeded {deadline:g}s deadline",
            ) from e

    def _fallback(
        self,
        prior: Optional[CacheEntry],
        source: str,
        policy: RefreshPolicy,
        error: Exception,
    ) -> CacheResult:
        message = error.message if isinstance(error, AuctionCacheError) else str(error)
        if prior is None:
            logger.error("Refresh failed with nothing cached", source=source, error=message)
            if isinstance(error, AuctionCacheError):
                raise error
            raise AuctionCacheError("Failed to refresh data", str(error)) from error

        logger.warning("Serving stale data after refresh failure", source=source, error=message)
        return self._result(prior, source, policy, warning=f"{message}; serving stale data")

    def _result(
        self,
        entry: CacheEntry,
        source: str,
        policy: RefreshPolicy,
        warning: Optional[str] = None,
    ) -> CacheResult:
        current = self.clock()
        age = entry.age(current)
        if entry.is_fresh(current, policy.fresh_window_seconds):
            next_refresh = math.ceil(policy.fresh_window_seconds - age)
        else:
            # Stale rows: ask the client back once any running refresh is done
            next_refresh = min(policy.lock_ttl_seconds, policy.fresh_window_seconds)
        return CacheResult(
            rows=entry.rows,
            cached_at=entry.cached_at,
            age_seconds=age,
            next_refresh_seconds=next_refresh,
            source=source,
            warning=warning,
        )
