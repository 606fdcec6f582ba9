"""
Dune Analytics client for the bidder query.

Wraps the execute -> poll -> results protocol:
https://docs.dune.com/api-reference/executions/endpoint/execute-query
"""

import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from auction_cache.errors import (
    UpstreamExecuteError,
    UpstreamStateError,
    UpstreamTimeoutError,
)
from auction_cache.utils.logging import get_logger

logger = get_logger(__name__)

DUNE_API_BASE = "https://api.dune.com/api/v1"

STATE_COMPLETED = "QUERY_STATE_COMPLETED"
STATE_FAILED = "QUERY_STATE_FAILED"
STATE_CANCELLED = "QUERY_STATE_CANCELLED"
TERMINAL_FAILURE_STATES = frozenset({STATE_FAILED, STATE_CANCELLED})

_FRACTION_RE = re.compile(r"\.(\d+)")


@dataclass
class ExecutionResult:
    """Rows of a completed execution."""
    execution_id: str
    rows: list[dict[str, Any]] = field(default_factory=list)
    ended_at: Optional[float] = None  # epoch seconds


def parse_dune_timestamp(value: Optional[str]) -> Optional[float]:
    """Parse Dune's RFC 3339 timestamps (nanosecond precision, ``Z`` suffix).

    Returns epoch seconds, or None for missing/unparseable values.
    """
    if not value:
        return None
    text = value.strip().replace("Z", "+00:00")
    # fromisoformat only accepts up to microseconds
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning("Unparseable Dune timestamp", value=value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


class DuneClient:
    """
    Client for the Dune execution API.

    ``transport`` lets tests swap in an ``httpx.MockTransport``.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DUNE_API_BASE,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def initialize(self) -> None:
        """Initialize HTTP client."""
        self._http_client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={
                "X-Dune-Api-Key": self.api_key,
                "Content-Type": "application/json",
            },
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=5, keepalive_expiry=30),
            transport=self._transport,
        )
        logger.info("Dune client initialized", base_url=self.base_url)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _client(self) -> httpx.AsyncClient:
        if not self._http_client:
            await self.initialize()
        return self._http_client

    # ===================
    # Protocol steps
    # ===================

    async def execute(self, query_id: int, parameters: Optional[dict] = None) -> str:
        """
        Start a query execution.

        Returns:
            The execution id.

        Raises:
            UpstreamExecuteError: on any transport error, non-2xx answer or a
                body without ``execution_id``. Not retried here; the next
                request starts over.
        """
        client = await self._client()
        body = {"query_parameters": parameters} if parameters else {}
        try:
            response = await client.post(f"/query/{query_id}/execute", json=body)
        except httpx.HTTPError as e:
            logger.error("Dune execute request failed", query_id=query_id, error=str(e))
            raise UpstreamExecuteError("Failed to start Dune execution", str(e)) from e

        if response.status_code >= 400:
            logger.error(
                "Dune execute rejected",
                query_id=query_id,
                status=response.status_code,
                error=response.text[:200] if response.text else "",
            )
            raise UpstreamExecuteError(
                "Failed to start Dune execution",
                f"HTTP {response.status_code}: {response.text[:200]}",
            )

        try:
            body = response.json()
        except ValueError:
            body = None
        execution_id = body.get("execution_id") if isinstance(body, dict) else None
        if not execution_id:
            raise UpstreamExecuteError("Failed to start Dune execution", "Response had no execution_id")

        logger.info("Dune execution started", query_id=query_id, execution_id=execution_id)
        return str(execution_id)

    async def get_results(self, execution_id: str) -> Optional[dict]:
        """
        Fetch the status/results document for an execution.

        Returns None when the answer is not usable yet (non-200, transport
        error, bad JSON); the caller counts that as a pending poll.
        """
        client = await self._client()
        try:
            response = await client.get(f"/execution/{execution_id}/results")
        except httpx.HTTPError as e:
            logger.warning("Dune poll failed", execution_id=execution_id, error=str(e))
            return None
        if response.status_code != 200:
            logger.debug("Dune poll not ready", execution_id=execution_id, status=response.status_code)
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning("Dune poll returned invalid JSON", execution_id=execution_id)
            return None

    async def wait_for_results(
        self,
        execution_id: str,
        poll_interval: float,
        max_attempts: int,
    ) -> ExecutionResult:
        """
        Poll until the execution reaches a terminal state.

        Raises:
            UpstreamStateError: execution FAILED or was CANCELLED.
            UpstreamTimeoutError: ``max_attempts`` polls without a terminal
                state. The execution keeps running upstream.
        """
        for attempt in range(1, max_attempts + 1):
            data = await self.get_results(execution_id)
            state = data.get("state") if isinstance(data, dict) else None

            if state == STATE_COMPLETED:
                result = data.get("result") or {}
                rows = result.get("rows") or []
                ended_at = parse_dune_timestamp(data.get("execution_ended_at"))
                logger.info(
                    "Dune execution completed",
                    execution_id=execution_id,
                    rows=len(rows),
                    attempts=attempt,
                )
                return ExecutionResult(execution_id=execution_id, rows=rows, ended_at=ended_at)

            if state in TERMINAL_FAILURE_STATES:
                error = data.get("error")
                logger.error("Dune execution ended unsuccessfully", execution_id=execution_id, state=state)
                raise UpstreamStateError(
                    f"Dune execution {state.removeprefix('QUERY_STATE_').lower()}",
                    state=state,
                    execution_id=execution_id,
                    details=str(error) if error else None,
                )

            if attempt < max_attempts:
                await asyncio.sleep(poll_interval)

        logger.warning("Dune execution poll budget exhausted", execution_id=execution_id, attempts=max_attempts)
        raise UpstreamTimeoutError(
            "Timed out waiting for Dune execution",
            execution_id=execution_id,
            attempts=max_attempts,
        )

    async def run_query(
        self,
        query_id: int,
        poll_interval: float = 2.0,
        max_attempts: int = 15,
    ) -> ExecutionResult:
        """Execute a query and wait for its rows."""
        execution_id = await self.execute(query_id)
        return await self.wait_for_results(execution_id, poll_interval, max_attempts)
