"""
FastAPI routes for the auction dashboard backend.

The browser only ever talks to these endpoints; Dune and the RPC provider
stay behind the server, as does every credential.
"""

import time
import traceback
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

import httpx
from fastapi import APIRouter, BackgroundTasks, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.gzip import GZipMiddleware

from ..config import Settings, get_settings
from ..errors import AuctionCacheError, ConfigError, LockBusyError
from ..services.cache import RedisStore, now
from ..services.cancellations import CancellationSyncer
from ..services.chain import ChainReader
from ..services.dune import DuneClient
from ..services.orchestrator import CacheOrchestrator
from ..utils.logging import get_logger, log_context
from .rate_limit import make_limiter, rate_limit_handler

logger = get_logger(__name__)

router = APIRouter()


# ===================
# Pydantic Models
# ===================

class CacheResponse(BaseModel):
    """Cached bidder rows plus freshness metadata."""
    rows: list[dict[str, Any]]
    cancellations: Optional[dict[str, int]] = None
    cached_at: int  # epoch milliseconds
    cache_age_seconds: int
    next_refresh_seconds: int
    source: str
    warning: Optional[str] = None


class AuctionResponse(BaseModel):
    """On-chain auction snapshot."""
    start_time: int
    end_time: int
    token_supply: int
    total_users: int
    last_bid_id: int
    canceled: bool
    total_shielded_usdt: int
    status: str


class HealthResponse(BaseModel):
    """Service health."""
    healthy: bool
    store: dict[str, Any]
    dune_configured: bool
    sync_checkpoint: Optional[int] = None


# ===================
# Dependencies
# ===================

def get_orchestrator(request: Request) -> CacheOrchestrator:
    """Build the orchestrator for this request; fails hard without credentials."""
    state = request.app.state
    settings: Settings = state.settings
    if not settings.dune_api_key:
        raise ConfigError("Server misconfiguration: DUNE_API_KEY missing")
    if settings.dune_query_id is None:
        raise ConfigError("Server misconfiguration: DUNE_QUERY_ID missing")
    if state.dune is None:
        state.dune = DuneClient(
            settings.dune_api_key,
            base_url=settings.dune_api_base_url,
            timeout=settings.dune_http_timeout,
        )
    syncer: Optional[CancellationSyncer] = state.syncer
    return CacheOrchestrator(
        state.store,
        state.dune,
        settings.dune_query_id,
        clock=state.clock,
        on_force_refresh=syncer.reset if syncer is not None else None,
    )


def error_response(exc: AuctionCacheError, background: Optional[BackgroundTask] = None) -> JSONResponse:
    """JSON ``{error, details}`` answer for a domain error."""
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, LockBusyError) else None
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=headers,
        background=background,
    )


async def _cancellation_counts(syncer: Optional[CancellationSyncer]) -> Optional[dict[str, int]]:
    if syncer is None:
        return None
    try:
        return await syncer.counters()
    except AuctionCacheError as e:
        logger.warning("Cancellation counters unavailable", error=e.details or e.message)
        return None


# ===================
# Routes
# ===================

@router.get("/cache", response_model=CacheResponse, response_model_exclude_none=True)
@router.get("/api/dune", response_model=CacheResponse, response_model_exclude_none=True, include_in_schema=False)
async def get_cache(
    request: Request,
    background_tasks: BackgroundTasks,
    force: bool = Query(False, description="Bypass the fresh window and re-execute the query"),
):
    """Bidder rows from the shared cache, refreshed from Dune when stale."""
    settings: Settings = request.app.state.settings
    syncer: Optional[CancellationSyncer] = request.app.state.syncer
    # The sync runs after every request, including error answers
    if syncer is not None:
        background_tasks.add_task(syncer.sync)

    try:
        orchestrator = get_orchestrator(request)
        # Read before a forced refresh can reset them
        cancellations = await _cancellation_counts(syncer)
        cache_key = settings.key("dune", settings.dune_query_id)
        with log_context(cache_key=cache_key, force=force):
            result = await orchestrator.get_data(cache_key, settings.refresh_policy(), force_refresh=force)
            logger.info("cache_served", source=result.source, rows=len(result.rows), age=int(result.age_seconds))
    except AuctionCacheError as e:
        return error_response(e, background=background_tasks)

    body = result.to_response()
    body["cancellations"] = cancellations
    return body


@router.get("/auction", response_model=AuctionResponse)
async def get_auction(request: Request):
    """Auction config, state and total value shielded, cached briefly."""
    state = request.app.state
    settings: Settings = state.settings
    store: RedisStore = state.store
    key = settings.key("auction", "info")

    cached = await store.get_json(key)
    if cached is not None:
        return cached

    info = await state.chain.auction_info()
    body = info.to_dict(state.clock())
    await store.set_json(key, body, settings.auction_info_ttl_seconds)
    return body


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Check store health and configuration."""
    state = request.app.state
    store_health = await state.store.health_check()
    checkpoint = None
    if state.syncer is not None and store_health["status"] == "healthy":
        checkpoint = await state.syncer.checkpoint()
    return HealthResponse(
        healthy=store_health["status"] == "healthy",
        store=store_health,
        dune_configured=bool(state.settings.dune_api_key and state.settings.dune_query_id is not None),
        sync_checkpoint=checkpoint,
    )


# ===================
# App factory
# ===================

def create_api_app(
    settings: Optional[Settings] = None,
    store: Optional[RedisStore] = None,
    chain: Optional[ChainReader] = None,
    dune_transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], float] = now,
) -> FastAPI:
    """Create the FastAPI application.

    Collaborators can be injected (tests pass fakeredis, a mock transport
    and a fake chain); otherwise they are built from settings.
    """
    from slowapi.errors import RateLimitExceeded
    from slowapi.middleware import SlowAPIMiddleware

    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state = app.state
        await state.store.connect()
        if settings.dune_api_key:
            state.dune = DuneClient(
                settings.dune_api_key,
                base_url=settings.dune_api_base_url,
                timeout=settings.dune_http_timeout,
                transport=dune_transport,
            )
            await state.dune.initialize()
        else:
            logger.warning("DUNE_API_KEY not set; /cache will answer 500")
        logger.info("API ready", query_id=settings.dune_query_id, sync_enabled=state.syncer is not None)

        yield

        if state.dune is not None:
            await state.dune.close()
        await state.chain.close()
        await state.store.close()

    app = FastAPI(
        title="Auction Cache API",
        description="Cached Dune bidder data and auction state for the dashboard",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.clock = clock
    app.state.store = store or RedisStore(settings.redis_url, pool_size=settings.redis_pool_size)
    app.state.chain = chain or ChainReader(
        settings.eth_rpc_url,
        settings.auction_address,
        settings.cusdt_address,
        settings.usdt_address,
    )
    app.state.dune = None
    app.state.syncer = (
        CancellationSyncer(
            app.state.store,
            app.state.chain,
            counters_key=settings.key("cancellations"),
            checkpoint_key=settings.key("sync", "cancellations", "checkpoint"),
            lock_key=settings.key("sync", "cancellations", "lock"),
            start_block=settings.cancellation_start_block,
            max_block_span=settings.sync_max_block_span,
            chunk_delay=settings.sync_chunk_delay_seconds,
            lock_ttl=settings.sync_lock_ttl_seconds,
        )
        if settings.sync_enabled
        else None
    )

    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    app.state.limiter = make_limiter(settings)
    app.add_middleware(SlowAPIMiddleware)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)

    # Request timing, exposed as X-Response-Time
    @app.middleware("http")
    async def timing_middleware(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time"] = f"{elapsed_ms:.1f}ms"
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(elapsed_ms, 1),
        )
        return response

    @app.exception_handler(AuctionCacheError)
    async def cache_error_handler(request: Request, exc: AuctionCacheError):
        return error_response(exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail), "details": None},
            headers=getattr(exc, "headers", None),
        )

    # Anything unhandled still answers with the JSON error shape
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
            traceback=traceback.format_exc(),
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "An unexpected error occurred",
                "details": type(exc).__name__,
            },
        )

    app.include_router(router)
    return app
