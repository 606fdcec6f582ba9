"""
Pytest configuration and fixtures.

Redis is replaced by fakeredis, Dune by an httpx.MockTransport and the
Ethereum node by an in-memory log source (see tests/fakes.py).
"""

import fakeredis
import pytest
from fakeredis import aioredis as fakeredis_aioredis

from auction_cache.config import RefreshPolicy, Settings
from auction_cache.services.cache import RedisStore

from .fakes import ENDED_AT_EPOCH, FakeClock


@pytest.fixture
def redis_client():
    """Isolated fake Redis server per test."""
    return fakeredis_aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def store(redis_client) -> RedisStore:
    return RedisStore(client=redis_client)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(ENDED_AT_EPOCH + 5.5)


@pytest.fixture
def policy() -> RefreshPolicy:
    """Production-shaped policy with the sleeps taken out."""
    return RefreshPolicy(
        fresh_window_seconds=1800,
        lock_ttl_seconds=60,
        poll_interval_seconds=0.0,
        max_poll_attempts=15,
        lock_wait_seconds=0.0,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        dune_api_key="test-key",
        dune_query_id=1,
        redis_url="redis://unused:6379/0",
        lock_wait_seconds=0.0,
        poll_interval_seconds=0.0,
        sync_chunk_delay_seconds=0.0,
        cancellation_start_block=100,
        sync_max_block_span=10,
        rate_limit_global="1000/minute",
    )
