"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Omnipair indexer, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Async engine connection pool size",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings.

    Redis is optional: when unset, fetched transactions are not cached.
    """

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string for the transaction cache",
    )
    transaction_cache_ttl_seconds: int = Field(
        default=24 * 3600,
        alias="REDIS_TRANSACTION_CACHE_TTL_SECONDS",
        ge=60,
        le=30 * 24 * 3600,
        description="TTL for cached transaction log payloads",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis://")
        return v

    @property
    def enabled(self) -> bool:
        return self.url is not None


class SolanaSettings(BaseSettings):
    """Solana RPC settings."""

    model_config = SettingsConfigDict(env_prefix="SOLANA_", extra="ignore")

    rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com",
        alias="SOLANA_RPC_URL",
        description="Solana JSON-RPC HTTP endpoint",
    )
    ws_url: str | None = Field(
        default=None,
        alias="SOLANA_WS_URL",
        description="Solana JSON-RPC websocket endpoint (derived from the RPC URL when unset)",
    )
    commitment: Literal["processed", "confirmed", "finalized"] = Field(
        default="confirmed",
        alias="SOLANA_COMMITMENT",
        description="Commitment level for reads and subscriptions",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="SOLANA_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="Timeout applied to every RPC call",
    )
    max_requests_per_second: float = Field(
        default=10.0,
        alias="SOLANA_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=1000.0,
        description="Client-side rate limit for RPC calls",
    )

    @field_validator("rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("SOLANA_RPC_URL must be an HTTP(S) endpoint")
        return v

    @field_validator("ws_url")
    @classmethod
    def validate_ws_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("SOLANA_WS_URL must start with ws:// or wss://")
        return v

    @property
    def effective_ws_url(self) -> str:
        """Websocket URL, derived from the HTTP endpoint when not configured."""
        if self.ws_url:
            return self.ws_url
        if self.rpc_url.startswith("https://"):
            return "wss://" + self.rpc_url[len("https://") :]
        return "ws://" + self.rpc_url[len("http://") :]


class IndexerSettings(BaseSettings):
    """History crawling, gap filling and live subscription settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    program_addresses: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(),
        alias="INDEXER_PROGRAM_ADDRESSES",
        description="Watched program addresses (comma-separated)",
    )
    page_size: int = Field(
        default=1000,
        alias="INDEXER_PAGE_SIZE",
        ge=1,
        le=1000,
        description="Signatures requested per getSignaturesForAddress page",
    )
    batch_size: int = Field(
        default=1000,
        alias="INDEXER_BATCH_SIZE",
        ge=1,
        le=100_000,
        description="Signatures processed between watermark advances",
    )
    concurrency: int = Field(
        default=10,
        alias="INDEXER_CONCURRENCY",
        ge=1,
        le=200,
        description="Concurrent transaction fetches per watched address",
    )
    page_delay_seconds: float = Field(
        default=0.1,
        alias="INDEXER_PAGE_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Delay between signature pages",
    )
    request_delay_seconds: float = Field(
        default=0.1,
        alias="INDEXER_REQUEST_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Delay after each transaction fetch",
    )
    gap_fill_interval_seconds: int = Field(
        default=300,
        alias="INDEXER_GAP_FILL_INTERVAL_SECONDS",
        ge=5,
        le=86_400,
        description="How often to reconcile history after the watermark",
    )
    live_fetch_delay_seconds: float = Field(
        default=1.5,
        alias="INDEXER_LIVE_FETCH_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Wait after a log notification before fetching the full transaction",
    )
    live_max_in_flight: int = Field(
        default=50,
        alias="INDEXER_LIVE_MAX_IN_FLIGHT",
        ge=1,
        le=10_000,
        description="Maximum concurrent live notification handlers",
    )
    skip_backfill: bool = Field(
        default=False,
        alias="INDEXER_SKIP_BACKFILL",
        description="Skip the startup backfill and rely on gap filling",
    )
    backfill_from_slot: int | None = Field(
        default=None,
        alias="INDEXER_BACKFILL_FROM_SLOT",
        ge=0,
        description="Lower slot bound for the startup backfill",
    )

    @field_validator("program_addresses", mode="before")
    @classmethod
    def _parse_program_addresses(cls, v: object) -> tuple[str, ...]:
        if v is None:
            return ()
        if isinstance(v, str):
            parts = [p.strip() for p in v.split(",") if p.strip()]
            return tuple(parts)
        if isinstance(v, (list, tuple)):
            return tuple(str(x) for x in v)
        raise TypeError("Invalid INDEXER_PROGRAM_ADDRESSES type")


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from omnipair_indexer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.indexer.program_addresses)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    solana: SolanaSettings = Field(
        default_factory=lambda: SolanaSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    control_host: str = Field(
        default="0.0.0.0",
        alias="CONTROL_HOST",
        description="Bind address for the health/control HTTP server",
    )
    control_port: int = Field(
        default=8080,
        alias="CONTROL_PORT",
        description="HTTP port for health and control endpoints",
        ge=1,
        le=65535,
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "solana": {
                "rpc_url": self._redact_url(self.solana.rpc_url),
                "ws_url": self._redact_url(self.solana.effective_ws_url),
                "commitment": self.solana.commitment,
            },
            "indexer": {
                "program_addresses": ",".join(self.indexer.program_addresses) or "(not set)",
                "concurrency": str(self.indexer.concurrency),
                "gap_fill_interval_seconds": str(self.indexer.gap_fill_interval_seconds),
                "skip_backfill": str(self.indexer.skip_backfill),
            },
            "log_level": self.log_level,
            "control_port": str(self.control_port),
        }

    def validate_requirements(self, *, command: Literal["run", "backfill", "gap-fill", "init-db"]) -> None:
        """Validate command-specific requirements."""
        if command in ("run", "backfill", "gap-fill") and not self.indexer.program_addresses:
            raise ValueError("INDEXER_PROGRAM_ADDRESSES is required to index")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
