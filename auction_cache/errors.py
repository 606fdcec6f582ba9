"""
Exception hierarchy for the auction cache service.

Every error carries the HTTP status and stable ``error`` code the API layer
uses to build its ``{error, details}`` body.
"""

from typing import Optional


class AuctionCacheError(Exception):
    """Base exception for cache service errors."""
    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str, details: Optional[str] = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.message, "details": self.details}


class ConfigError(AuctionCacheError):
    """Raised when required configuration (API key, query id) is missing."""
    error_code = "server_misconfiguration"


class CacheStoreError(AuctionCacheError):
    """Raised when Redis cannot serve a read or write."""
    error_code = "cache_unavailable"


class UpstreamError(AuctionCacheError):
    """Base for failures talking to the Dune API."""
    status_code = 502
    error_code = "upstream_error"


class UpstreamExecuteError(UpstreamError):
    """Execution could not be started; no execution id was obtained."""
    error_code = "upstream_execute_failed"


class UpstreamStateError(UpstreamError):
    """Execution reached a terminal FAILED or CANCELLED state."""
    error_code = "upstream_execution_failed"

    def __init__(self, message: str, state: str, execution_id: str, details: Optional[str] = None):
        self.state = state
        self.execution_id = execution_id
        super().__init__(message, details)


class UpstreamTimeoutError(UpstreamError):
    """Poll budget or refresh deadline exhausted before the execution finished."""
    status_code = 504
    error_code = "upstream_timeout"

    def __init__(
        self,
        message: str,
        execution_id: Optional[str],
        attempts: Optional[int],
        details: Optional[str] = None,
    ):
        self.execution_id = execution_id
        self.attempts = attempts
        super().__init__(message, details)


class LockBusyError(AuctionCacheError):
    """Another worker holds the refresh lock and nothing is cached yet."""
    status_code = 429
    error_code = "refresh_in_progress"

    def __init__(self, message: str, retry_after: int, details: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(message, details)


class SyncError(AuctionCacheError):
    """Event ingestion failed; logged by the syncer and never surfaced."""
    error_code = "sync_failed"


class ChainReadError(AuctionCacheError):
    """A read-only contract call failed."""
    status_code = 502
    error_code = "chain_read_failed"


class RateLimitError(AuctionCacheError):
    """RPC provider answered 429; retried with backoff."""
    status_code = 429
    error_code = "rate_limited"
