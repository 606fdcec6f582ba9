"""
Short-lived mutual exclusion on top of the Redis store.

A lock is a plain key written with ``SET NX EX``: whoever creates it holds
it, and the TTL frees it if the holder dies. Release is an unconditional
``DEL``, so it is safe to call on a lock that already expired.
"""

import uuid

from auction_cache.services.cache import RedisStore
from auction_cache.utils.logging import LoggerMixin


class RedisLock(LoggerMixin):
    """TTL lock manager. Not reentrant: release before acquiring again."""

    def __init__(self, store: RedisStore):
        self.store = store

    async def acquire(self, key: str, ttl: int) -> bool:
        """Try once to take the lock; never waits."""
        acquired = await self.store.set_if_absent(key, uuid.uuid4().hex, ttl)
        if acquired:
            self.log.debug("Lock acquired", key=key, ttl=ttl)
        return acquired

    async def release(self, key: str) -> None:
        await self.store.delete(key)
        self.log.debug("Lock released", key=key)

    async def is_locked(self, key: str) -> bool:
        return await self.store.exists(key)
