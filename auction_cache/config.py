"""
Configuration management using Pydantic Settings.
All environment variables are validated at startup.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class RefreshPolicy:
    """Freshness and retry knobs for one cached dataset.

    Built once from settings and passed explicitly to the orchestrator, so a
    deployment (or a test) can tune every timing without touching globals.
    """
    fresh_window_seconds: int = 1800
    lock_ttl_seconds: int = 60
    poll_interval_seconds: float = 2.0
    max_poll_attempts: int = 15
    lock_wait_seconds: float = 2.0

    def __post_init__(self) -> None:
        if self.fresh_window_seconds <= 0:
            raise ValueError("fresh_window_seconds must be positive")
        if self.max_poll_attempts < 1:
            raise ValueError("max_poll_attempts must be at least 1")
        # A refresh that outlives its lock lets a second refresher in
        if self.lock_ttl_seconds < self.poll_interval_seconds * self.max_poll_attempts:
            raise ValueError("lock_ttl_seconds must cover the whole poll budget")

    @property
    def poll_budget_seconds(self) -> float:
        return self.poll_interval_seconds * self.max_poll_attempts

    @property
    def refresh_deadline_seconds(self) -> float:
        """Hard cap on execute + poll, counting every HTTP round trip.

        Ends well inside the lock TTL so the entry write and the lock release
        still happen while this worker owns the lock.
        """
        return self.lock_ttl_seconds * 0.8


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===================
    # Dune Analytics
    # ===================
    dune_api_key: Optional[str] = Field(
        default=None,
        description="Dune API key; required to serve /cache, checked per request",
    )
    dune_api_base_url: str = Field(
        default="https://api.dune.com/api/v1",
        description="Dune REST API base URL",
    )
    dune_query_id: Optional[int] = Field(default=None, description="Saved Dune query that returns the bidder rows")
    dune_http_timeout: float = Field(default=15.0, gt=0)

    # ===================
    # Redis
    # ===================
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection string")
    redis_pool_size: int = Field(default=20, ge=1)
    cache_key_prefix: str = Field(default="auction")

    # ===================
    # Refresh policy
    # ===================
    fresh_window_seconds: int = Field(default=1800, ge=1, description="Serve cached rows without refresh below this age")
    lock_ttl_seconds: int = Field(default=60, ge=1)
    lock_wait_seconds: float = Field(default=2.0, ge=0)
    poll_interval_seconds: float = Field(default=2.0, ge=0)
    max_poll_attempts: int = Field(default=15, ge=1)

    # ===================
    # Ethereum RPC
    # ===================
    eth_rpc_url: str = Field(default="https://ethereum-rpc.publicnode.com", description="Mainnet JSON-RPC endpoint")
    auction_address: str = Field(default="0x04a5b8C32f9c38092B008A4939f1F91D550C4345")
    cusdt_address: str = Field(default="0xAe0207C757Aa2B4019AD96edD0092ddc63EF0c50")
    usdt_address: str = Field(default="0xdAC17F958D2ee523a2206206994597C13D831ec7")
    auction_info_ttl_seconds: int = Field(default=60, ge=1)

    # ===================
    # Cancellation sync
    # ===================
    sync_enabled: bool = Field(default=True)
    cancellation_start_block: int = Field(default=23_800_000, ge=0, description="Auction deployment block")
    sync_max_block_span: int = Field(default=2_000_000, ge=1)
    sync_chunk_delay_seconds: float = Field(default=0.5, ge=0)
    sync_lock_ttl_seconds: int = Field(default=120, ge=1)

    # ===================
    # Rate Limiting
    # ===================
    rate_limit_global: str = Field(default="120/minute")
    rate_limit_storage_url: Optional[str] = Field(
        default=None,
        description="slowapi storage; falls back to in-memory when unset",
    )

    # ===================
    # Logging
    # ===================
    log_level: str = Field(default="INFO")

    @field_validator("auction_address", "cusdt_address", "usdt_address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        """Ensure contract addresses are 0x-prefixed 20-byte hex."""
        if not v.startswith("0x") or len(v) != 42:
            raise ValueError("Contract address must be a 0x-prefixed 40-character hex string")
        try:
            bytes.fromhex(v[2:])
        except ValueError:
            raise ValueError("Contract address must be valid hex")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        if v.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return v.upper()

    def refresh_policy(self) -> RefreshPolicy:
        """Build the refresh policy for the bidder dataset."""
        return RefreshPolicy(
            fresh_window_seconds=self.fresh_window_seconds,
            lock_ttl_seconds=self.lock_ttl_seconds,
            poll_interval_seconds=self.poll_interval_seconds,
            max_poll_attempts=self.max_poll_attempts,
            lock_wait_seconds=self.lock_wait_seconds,
        )

    def key(self, *parts: object) -> str:
        """Namespace a Redis key under the configured prefix."""
        return ":".join([self.cache_key_prefix, *(str(p) for p in parts)])


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
