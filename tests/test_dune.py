"""
Tests for the Dune execute/poll client.
"""

import httpx
import pytest

from auction_cache.errors import UpstreamExecuteError, UpstreamStateError, UpstreamTimeoutError
from auction_cache.services.dune import (
    STATE_CANCELLED,
    STATE_COMPLETED,
    STATE_FAILED,
    DuneClient,
    parse_dune_timestamp,
)

from .fakes import ENDED_AT, ENDED_AT_EPOCH, SAMPLE_ROWS, DuneStub

RUNNING = "QUERY_STATE_EXECUTING"


class TestTimestampParsing:
    """Test Dune timestamp parsing."""

    def test_nanosecond_precision(self):
        assert parse_dune_timestamp(ENDED_AT) == pytest.approx(ENDED_AT_EPOCH, abs=1e-3)

    def test_without_fraction(self):
        assert parse_dune_timestamp("2026-10-19T12:00:00Z") == pytest.approx(ENDED_AT_EPOCH - 0.123456, abs=1e-3)

    def test_missing_or_garbage(self):
        assert parse_dune_timestamp(None) is None
        assert parse_dune_timestamp("") is None
        assert parse_dune_timestamp("yesterday") is None


class TestExecute:
    """Test starting executions."""

    async def test_returns_execution_id_and_sends_key(self):
        stub = DuneStub()
        client = stub.client()
        try:
            assert await client.execute(1) == "42"
        finally:
            await client.close()
        assert stub.execute_calls == 1
        assert stub.api_keys == ["test-key"]

    async def test_http_error_is_execute_error(self):
        stub = DuneStub(execute_status=402)
        client = stub.client()
        try:
            with pytest.raises(UpstreamExecuteError) as exc_info:
                await client.execute(1)
        finally:
            await client.close()
        assert "402" in exc_info.value.details

    async def test_missing_execution_id(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"state": "x"}))
        client = DuneClient("k", transport=transport)
        with pytest.raises(UpstreamExecuteError):
            await client.execute(1)
        await client.close()

    async def test_non_object_body(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=["42"]))
        client = DuneClient("k", transport=transport)
        with pytest.raises(UpstreamExecuteError):
            await client.execute(1)
        await client.close()

    async def test_transport_error(self):
        def boom(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = DuneClient("k", transport=httpx.MockTransport(boom))
        with pytest.raises(UpstreamExecuteError):
            await client.execute(1)
        await client.close()


class TestPolling:
    """Test the poll state machine."""

    async def test_completes_on_third_poll(self):
        stub = DuneStub(states=[RUNNING, RUNNING, STATE_COMPLETED])
        client = stub.client()
        result = await client.run_query(1, poll_interval=0, max_attempts=15)
        await client.close()

        assert result.execution_id == "42"
        assert result.rows == SAMPLE_ROWS
        assert result.ended_at == pytest.approx(ENDED_AT_EPOCH, abs=1e-3)
        assert stub.poll_calls == 3

    async def test_non_200_counts_as_pending(self):
        stub = DuneStub(states=[None, None, STATE_COMPLETED])
        client = stub.client()
        result = await client.wait_for_results("42", poll_interval=0, max_attempts=3)
        await client.close()
        assert result.rows == SAMPLE_ROWS

    @pytest.mark.parametrize("state", [STATE_FAILED, STATE_CANCELLED])
    async def test_terminal_failure_stops_polling(self, state):
        stub = DuneStub(states=[RUNNING, state, STATE_COMPLETED])
        client = stub.client()
        with pytest.raises(UpstreamStateError) as exc_info:
            await client.wait_for_results("42", poll_interval=0, max_attempts=10)
        await client.close()

        assert exc_info.value.state == state
        assert stub.poll_calls == 2

    async def test_exhausted_attempts_time_out(self):
        stub = DuneStub(states=[RUNNING])
        client = stub.client()
        with pytest.raises(UpstreamTimeoutError) as exc_info:
            await client.wait_for_results("42", poll_interval=0, max_attempts=4)
        await client.close()

        assert exc_info.value.attempts == 4
        assert stub.poll_calls == 4

    async def test_timeout_is_distinct_from_state_failure(self):
        assert not issubclass(UpstreamTimeoutError, UpstreamStateError)
        assert not issubclass(UpstreamStateError, UpstreamTimeoutError)
