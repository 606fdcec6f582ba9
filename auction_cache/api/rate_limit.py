"""
Rate limiting setup using slowapi.

Every /cache call can cost Dune credits on a miss, so the whole API sits
behind a per-client global limit. Uses Redis when a storage URL is
configured, in-memory otherwise.
"""

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from ..config import Settings


def make_limiter(settings: Settings) -> Limiter:
    """Create a Limiter with Redis (preferred) or in-memory backend."""
    storage_uri = settings.rate_limit_storage_url or "memory://"
    return Limiter(
        key_func=get_remote_address,
        default_limits=[settings.rate_limit_global],
        storage_uri=storage_uri,
        strategy="fixed-window",
    )


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return a clean 429 response with retry_after."""
    retry_after = getattr(exc, "retry_after", 60)
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "details": str(exc.detail),
        },
        headers={"Retry-After": str(retry_after)},
    )
