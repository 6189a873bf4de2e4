"""Unified configuration schema for audit_sync.

Defines Pydantic models for the unified config structure with dedicated
sections for the client, the server, summary projection and logging.

Usage:
    from audit_sync.config_schema import UnifiedConfig, build_config

    raw = load_hierarchical_config()
    unified = build_config(raw)
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_DB = ".audit_sync/local.db"
DEFAULT_SERVER_DB = ".audit_sync/server.db"
DEFAULT_SUMMARY_CATEGORY = "סיכום"
DEFAULT_SUMMARY_FIELDS = {
    "הערכת מבקר": "summaryEvaluation",
    "המלצות מבקר": "recommendations",
    "ציון": "finalScore",
}


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class ClientConfig(BaseModel):
    """Offline client settings.

    ``server_url`` is optional so the local store can be inspected without
    a server; ``audit-sync sync`` requires it.
    """

    server_url: str | None = Field(
        default=None, description="Reconciliation server base URL"
    )
    db_path: str = Field(
        default=DEFAULT_CLIENT_DB, description="Local store sqlite file"
    )
    sync_interval: float = Field(
        default=30.0,
        ge=1,
        le=3600,
        description="Seconds between periodic sync cycles",
    )
    debounce_delay: float = Field(
        default=0.5,
        ge=0,
        le=60,
        description="Seconds an edit waits before it is written locally",
    )
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="HTTP read timeout for sync requests",
    )
    max_parallel_requests: int = Field(
        default=2,
        ge=1,
        le=100,
        description="Maximum concurrent blocking HTTP calls (1-100)",
    )

    model_config = {"frozen": True}


class ServerConfig(BaseModel):
    """Reconciliation server settings."""

    db_path: str = Field(
        default=DEFAULT_SERVER_DB, description="Server sqlite file"
    )
    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=8000, ge=1, le=65535, description="Bind port")
    transaction_timeout: float = Field(
        default=20.0,
        gt=0,
        le=600,
        description="Seconds one reconciliation batch may run",
    )
    max_batch_size: int = Field(
        default=500,
        ge=1,
        le=10000,
        description="Maximum ids per batched lookup (1-10000)",
    )

    model_config = {"frozen": True}


class SummaryConfig(BaseModel):
    """Derived summary fields: category name and label -> field map."""

    category: str = Field(default=DEFAULT_SUMMARY_CATEGORY)
    fields: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_SUMMARY_FIELDS)
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Aggregates all config sections. Every section has sensible defaults,
    so ``UnifiedConfig()`` (zero-config) is always valid.
    """

    client: ClientConfig = Field(default_factory=ClientConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    summary: SummaryConfig = Field(default_factory=SummaryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully: anything absent gets defaults.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)
