"""
Incremental ingestion of BidCanceled events into a per-bidder counter hash.

Each run resumes from the checkpoint stored in Redis and walks the chain in
bounded block ranges. For every range the counter increments are committed
first and the checkpoint second, so the checkpoint can never run ahead of the
counters. The increment batch also stamps the hash with the block it covers,
which lets a restart after a crash between the two writes resume without
counting the range twice.
"""

import asyncio
from collections import Counter
from typing import Optional, Protocol

from auction_cache.errors import SyncError
from auction_cache.services.cache import RedisStore
from auction_cache.services.lock import RedisLock
from auction_cache.utils.logging import get_logger

logger = get_logger(__name__)

# Hash field recording the checkpoint each increment batch was committed for.
# Addresses start with "0x", so it cannot collide with a bidder field.
COMMITTED_FIELD = "_committed_through"


class LogSource(Protocol):
    """What the syncer needs from the chain (``ChainReader`` satisfies it)."""

    async def block_number(self) -> int: ...

    async def get_bid_canceled_logs(self, from_block: int, to_block: int) -> list: ...


def bidder_from_log(log) -> Optional[str]:
    """Decode the indexed bidder (topic 2) as a lower-cased 0x address."""
    topics = log.get("topics") if hasattr(log, "get") else None
    if not topics or len(topics) < 3:
        return None
    topic = topics[2]
    if isinstance(topic, str):
        raw = bytes.fromhex(topic.removeprefix("0x"))
    else:
        raw = bytes(topic)
    if len(raw) < 20:
        return None
    return "0x" + raw[-20:].hex()


class CancellationSyncer:
    """Best-effort syncer; ``sync`` never raises."""

    def __init__(
        self,
        store: RedisStore,
        chain: LogSource,
        counters_key: str,
        checkpoint_key: str,
        lock_key: str,
        start_block: int,
        max_block_span: int = 2_000_000,
        chunk_delay: float = 0.5,
        lock_ttl: int = 120,
    ):
        if max_block_span < 1:
            raise ValueError("max_block_span must be at least 1")
        self.store = store
        self.chain = chain
        self.lock = RedisLock(store)
        self.counters_key = counters_key
        self.checkpoint_key = checkpoint_key
        self.lock_key = lock_key
        self.start_block = start_block
        self.max_block_span = max_block_span
        self.chunk_delay = chunk_delay
        self.lock_ttl = lock_ttl

    async def checkpoint(self) -> int:
        """Next block to process.

        A chunk whose increments landed but whose checkpoint write did not
        is recognised by the commit marker and not replayed.
        """
        stored = await self.store.get_int(self.checkpoint_key)
        committed = await self.store.hget_int(self.counters_key, COMMITTED_FIELD)
        candidates = [c for c in (stored, committed) if c is not None]
        return max(candidates) if candidates else self.start_block

    async def counters(self) -> dict[str, int]:
        """Bidder address -> number of cancelled bids."""
        raw = await self.store.hgetall_int(self.counters_key)
        return {k: v for k, v in raw.items() if k.startswith("0x")}

    async def sync(self) -> None:
        """Run one sync cycle. Skips when another worker holds the sync lock."""
        try:
            if not await self.lock.acquire(self.lock_key, self.lock_ttl):
                logger.debug("Cancellation sync already running, skipping")
                return
        except Exception as e:
            logger.warning("Cancellation sync lock unavailable", error=str(e))
            return

        try:
            processed = await self._run()
            if processed:
                logger.info("Cancellation sync finished", blocks=processed)
        except SyncError as e:
            logger.error(e.message, error=e.details)
        except Exception as e:
            logger.error("Cancellation sync failed", error=str(e), error_type=type(e).__name__)
        finally:
            try:
                await self.lock.release(self.lock_key)
            except Exception as e:
                logger.warning("Cancellation sync lock release failed", error=str(e))

    async def _run(self) -> int:
        start = await self.checkpoint()
        try:
            head = await self.chain.block_number()
        except Exception as e:
            raise SyncError("Failed to read chain head", str(e)) from e
        if start >= head:
            return 0

        chunk_start = start
        while chunk_start <= head:
            chunk_end = min(chunk_start + self.max_block_span - 1, head)
            await self.process_chunk(chunk_start, chunk_end)
            chunk_start = chunk_end + 1
            if chunk_start <= head and self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
        return head - start + 1

    async def process_chunk(self, chunk_start: int, chunk_end: int) -> int:
        """Ingest ``[chunk_start, chunk_end]``; returns the number of events.

        Counters are written before the checkpoint. Do not reorder.
        """
        try:
            logs = await self.chain.get_bid_canceled_logs(chunk_start, chunk_end)
        except Exception as e:
            raise SyncError(
                f"Failed to fetch BidCanceled logs for blocks {chunk_start}-{chunk_end}", str(e)
            ) from e
        increments: Counter[str] = Counter()
        for log in logs:
            bidder = bidder_from_log(log)
            if bidder is None:
                logger.warning("Skipping BidCanceled log without bidder topic", block=chunk_start)
                continue
            increments[bidder] += 1

        await self.store.hincrby_many(
            self.counters_key, increments, marks={COMMITTED_FIELD: str(chunk_end + 1)}
        )
        await self.store.set(self.checkpoint_key, str(chunk_end + 1))
        logger.debug(
            "Cancellation chunk committed",
            from_block=chunk_start,
            to_block=chunk_end,
            events=sum(increments.values()),
        )
        return sum(increments.values())

    async def reset(self) -> bool:
        """Drop counters and checkpoint together so the next sync starts over.

        Runs under the sync lock; returns False when a sync is in flight.
        """
        if not await self.lock.acquire(self.lock_key, self.lock_ttl):
            logger.info("Cancellation reset skipped, sync in progress")
            return False
        try:
            # One DEL for both keys keeps counters and checkpoint consistent
            await self.store.delete(self.counters_key, self.checkpoint_key)
            logger.info("Cancellation counters reset")
            return True
        finally:
            await self.lock.release(self.lock_key)
