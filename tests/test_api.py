"""
Tests for the HTTP layer.
"""

import pytest
from fastapi.testclient import TestClient

from auction_cache.api import create_api_app
from auction_cache.config import Settings
from auction_cache.services.cache import CacheEntry, RedisStore
from auction_cache.services.dune import STATE_COMPLETED

from .fakes import ENDED_AT_EPOCH, SAMPLE_ROWS, DuneStub, FakeChain, cancel_log

ALICE = "0x" + "ab" * 20
CACHE_KEY = "auction:dune:1"


@pytest.fixture
def stub() -> DuneStub:
    return DuneStub(states=["QUERY_STATE_EXECUTING", STATE_COMPLETED])


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain(head=120, logs=[cancel_log(101, ALICE), cancel_log(115, ALICE, bid_id=2)])


@pytest.fixture
def make_client(redis_client, stub, chain, clock):
    def factory(settings: Settings) -> TestClient:
        app = create_api_app(
            settings,
            store=RedisStore(client=redis_client),
            chain=chain,
            dune_transport=stub.transport,
            clock=clock,
        )
        return TestClient(app)

    return factory


@pytest.fixture
def client(make_client, settings):
    with make_client(settings) as c:
        yield c


class TestCacheEndpoint:
    """Test GET /cache."""

    def test_fresh_execution(self, client, stub):
        response = client.get("/cache")

        assert response.status_code == 200
        body = response.json()
        assert body["rows"] == SAMPLE_ROWS
        assert body["source"] == "dune_fresh_execution"
        assert body["cached_at"] == int(ENDED_AT_EPOCH * 1000)
        assert body["cache_age_seconds"] == 5
        assert body["next_refresh_seconds"] == 1795
        assert "warning" not in body
        assert stub.execute_calls == 1
        assert "X-Response-Time" in response.headers

    def test_second_call_served_from_cache_with_cancellations(self, client, stub):
        client.get("/cache")
        response = client.get("/cache")

        body = response.json()
        assert body["source"] == "cache"
        assert stub.execute_calls == 1
        # The first request's background sync filled the counters
        assert body["cancellations"] == {ALICE: 2}

    def test_legacy_path(self, client):
        response = client.get("/api/dune")
        assert response.status_code == 200
        assert response.json()["rows"] == SAMPLE_ROWS

    def test_force_refresh(self, client, stub):
        client.get("/cache")
        response = client.get("/cache", params={"force": "true"})

        assert response.status_code == 200
        assert response.json()["source"] == "dune_fresh_execution"
        assert stub.execute_calls == 2

    def test_post_not_allowed(self, client):
        response = client.post("/cache")
        assert response.status_code == 405
        assert response.json()["error"] == "Method Not Allowed"

    def test_busy_with_nothing_cached(self, client, stub):
        client.portal.call(client.app.state.store.set_if_absent, f"{CACHE_KEY}:lock", "other", 60)

        response = client.get("/cache")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "1"
        assert "refresh in progress" in response.json()["error"].lower()
        assert stub.execute_calls == 0

    def test_busy_with_stale_entry(self, client, clock):
        entry = CacheEntry(rows=SAMPLE_ROWS, cached_at=clock() - 4000)
        client.portal.call(client.app.state.store.set_entry, CACHE_KEY, entry)
        client.portal.call(client.app.state.store.set_if_absent, f"{CACHE_KEY}:lock", "other", 60)

        response = client.get("/cache")

        assert response.status_code == 200
        body = response.json()
        assert body["source"] == "stale_while_refreshing"
        assert body["warning"]

    def test_upstream_failure_with_nothing_cached(self, redis_client, chain, clock, settings):
        rejecting = DuneStub(execute_status=402)
        app = create_api_app(
            settings,
            store=RedisStore(client=redis_client),
            chain=chain,
            dune_transport=rejecting.transport,
            clock=clock,
        )
        with TestClient(app) as c:
            response = c.get("/cache")

        assert response.status_code == 502
        body = response.json()
        assert body["error"]
        assert "402" in body["details"]
        assert rejecting.execute_calls == 1


class TestConfiguration:
    """Test missing credentials."""

    def test_missing_api_key(self, make_client, settings, stub):
        with make_client(settings.model_copy(update={"dune_api_key": None})) as c:
            response = c.get("/cache")

        assert response.status_code == 500
        assert response.json()["error"] == "Server misconfiguration: DUNE_API_KEY missing"
        assert stub.execute_calls == 0

    def test_missing_query_id(self, make_client, settings):
        with make_client(settings.model_copy(update={"dune_query_id": None})) as c:
            response = c.get("/cache")

        assert response.status_code == 500
        assert "DUNE_QUERY_ID" in response.json()["error"]


class TestAuctionEndpoint:
    """Test GET /auction."""

    def test_auction_info(self, client):
        response = client.get("/auction")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "active"
        assert body["total_users"] == 1234
        assert body["total_shielded_usdt"] == 12_345_670_000

    def test_auction_info_is_cached(self, client, chain):
        calls = []
        original = chain.auction_info

        async def counting():
            calls.append(1)
            return await original()

        chain.auction_info = counting
        client.get("/auction")
        client.get("/auction")
        assert len(calls) == 1


class TestHealthEndpoint:
    """Test GET /health."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["healthy"] is True
        assert body["dune_configured"] is True
        assert body["store"]["status"] == "healthy"
        assert body["sync_checkpoint"] == 100


class TestBackgroundSync:
    """The cancellation sync runs after every /cache request."""

    def counters(self, client):
        return client.portal.call(client.app.state.syncer.counters)

    def test_force_refresh_reports_counters_from_before_reset(self, client):
        client.get("/cache")
        response = client.get("/cache", params={"force": "true"})

        assert response.json()["cancellations"] == {ALICE: 2}
        assert self.counters(client) == {ALICE: 2}

    def test_sync_runs_after_busy_answer(self, client):
        client.portal.call(client.app.state.store.set_if_absent, f"{CACHE_KEY}:lock", "other", 60)

        response = client.get("/cache")

        assert response.status_code == 429
        assert self.counters(client) == {ALICE: 2}

    def test_sync_runs_after_upstream_failure(self, redis_client, chain, clock, settings):
        app = create_api_app(
            settings,
            store=RedisStore(client=redis_client),
            chain=chain,
            dune_transport=DuneStub(execute_status=402).transport,
            clock=clock,
        )
        with TestClient(app) as c:
            response = c.get("/cache")
            counters = self.counters(c)

        assert response.status_code == 502
        assert counters == {ALICE: 2}
