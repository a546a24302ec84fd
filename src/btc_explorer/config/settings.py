"""Application settings loaded from environment variables and config files.

Configuration is loaded from (highest priority first):
1. Environment variables (prefix: ``EXPLORER_``, nested via ``__``)
2. YAML config file (``config_path`` or ``EXPLORER_CONFIG_PATH`` env var)
3. Defaults defined here
"""

from __future__ import annotations

import enum
from pathlib import Path
from typing import Any, Self

import yaml
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Enums for validated choices
# ---------------------------------------------------------------------------


class FeedEngine(enum.StrEnum):
    """Supported change feed backends."""

    MEMORY = "memory"
    REDIS = "redis"


class LogLevel(enum.StrEnum):
    """Log levels accepted by ``logging``."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# ---------------------------------------------------------------------------
# Sub-config models
# ---------------------------------------------------------------------------


class RpcConfig(BaseSettings):
    """Bitcoin Core JSON-RPC settings."""

    model_config = SettingsConfigDict(
        env_prefix="EXPLORER_RPC__",
        case_sensitive=False,
    )

    url: str = "http://127.0.0.1:8332"
    username: str = ""
    password: str = ""
    cookie_path: str = Field(
        default="",
        description="Path to bitcoind's .cookie file; wins over username/password",
    )
    timeout: float = 3.0


class IndexerConfig(BaseSettings):
    """Address indexer settings."""

    model_config = SettingsConfigDict(
        env_prefix="EXPLORER_INDEXER__",
        case_sensitive=False,
    )

    enabled: bool = True
    dsn: str = Field(
        default="sqlite+aiosqlite:///./data/address-index/index.db",
        description="Async database connection string for the address index",
    )
    debug_sql: bool = False
    xpub_gap_limit: int = Field(default=20, ge=1)

    # Prevout resolution
    concurrency: int = Field(default=4, ge=1, description="Prevout worker count")
    parallel_prevout_enabled: bool = True
    prevout_cache_max: int = Field(default=50_000, ge=1)
    prevout_cache_ttl: int = Field(default=600, ge=1, description="Seconds")

    # Store sizing
    cache_size_kib: int = Field(default=0, ge=0, description="SQLite page cache (0 = default)")
    wal_autocheckpoint: int = Field(default=0, ge=0, description="WAL pages (0 = default)")

    # Sync loop
    batch_block_count: int = Field(default=1, ge=1)
    sample_window: int = Field(default=50, ge=2)
    drain_timeout: float = 10.0
    block_fetch_attempts: int = Field(default=15, ge=1)
    block_fetch_backoff: float = 0.2


class FeedConfig(BaseSettings):
    """Block/transaction change feed settings."""

    model_config = SettingsConfigDict(
        env_prefix="EXPLORER_FEED__",
        case_sensitive=False,
    )

    engine: FeedEngine = Field(
        default=FeedEngine.MEMORY,
        description="Feed backend: memory or redis",
    )
    redis_url: str = "redis://localhost:6379/0"
    prefix: str = "explorer_"
    zmq_block_endpoint: str = Field(
        default="",
        description="bitcoind zmqpubhashblock endpoint, e.g. tcp://127.0.0.1:28332; empty disables",
    )
    zmq_dedupe_window: float = 0.1


class MetricsConfig(BaseSettings):
    """Prometheus metrics settings."""

    model_config = SettingsConfigDict(
        env_prefix="EXPLORER_METRICS__",
        case_sensitive=False,
    )

    enabled: bool = True
    port: int = 9090
    status_refresh_period: float = 15.0


class LoggingConfig(BaseSettings):
    """Logging settings."""

    model_config = SettingsConfigDict(
        env_prefix="EXPLORER_LOGGING__",
        case_sensitive=False,
    )

    level: LogLevel = LogLevel.INFO
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------


def _load_yaml(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file and return its contents as a dict.

    Returns an empty dict if the file doesn't exist or is empty.
    """
    p = Path(path)
    if not p.exists():
        return {}
    text = p.read_text(encoding="utf-8")
    data = yaml.safe_load(text)
    return data if isinstance(data, dict) else {}


class AppConfig(BaseSettings):
    """Top-level application configuration.

    Loads settings from environment variables (``EXPLORER_`` prefix),
    an optional YAML file, and built-in defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="EXPLORER_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    debug: bool = False
    version: str = "0.1.0"
    config_path: str = ""

    rpc: RpcConfig = Field(default_factory=RpcConfig)
    indexer: IndexerConfig = Field(default_factory=IndexerConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="before")
    @classmethod
    def _merge_yaml(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Merge YAML config file contents under the env var overrides."""
        config_path = values.get("config_path", "")
        if not config_path:
            return values
        yaml_data = _load_yaml(config_path)
        # YAML values serve as defaults; env vars (already in *values*) win.
        for key, val in yaml_data.items():
            if key not in values or values[key] is None:
                values[key] = val
            elif isinstance(val, dict) and isinstance(values.get(key), dict):
                merged = {**val, **values[key]}
                values[key] = merged
        return values

    @classmethod
    def from_yaml(cls, path: str | Path) -> Self:
        """Construct ``AppConfig`` loading defaults from a YAML file.

        Environment variables still override YAML values.
        """
        return cls(config_path=str(path))
