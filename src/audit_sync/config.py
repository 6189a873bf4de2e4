"""Runtime configuration for the audit-sync client and server.

Reads settings from CLI args, environment variables, .env files, and the
YAML config (see ``config_loader`` / ``config_schema``).

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    AUDIT_SYNC_URL: Reconciliation server base URL
    AUDIT_SYNC_DB: Client local store sqlite file
    AUDIT_SYNC_INTERVAL: Seconds between sync cycles (1-3600)
    AUDIT_SYNC_DEBOUNCE: Debounce delay in seconds (0-60)
    AUDIT_SYNC_TIMEOUT: HTTP read timeout in seconds (1-600)
    AUDIT_SYNC_SERVER_DB: Server sqlite file
    AUDIT_SYNC_DEBUG: Enable debug logging (true/false)
"""

import logging
import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

from .config_schema import (
    DEFAULT_CLIENT_DB,
    DEFAULT_SERVER_DB,
    DEFAULT_SUMMARY_CATEGORY,
    DEFAULT_SUMMARY_FIELDS,
    UnifiedConfig,
)

logger = logging.getLogger(__name__)


@dataclass
class Config:
    server_url: str | None = None
    db_path: str = DEFAULT_CLIENT_DB
    sync_interval: float = 30.0
    debounce_delay: float = 0.5
    request_timeout: float = 30.0
    max_parallel_requests: int = 2
    server_db_path: str = DEFAULT_SERVER_DB
    host: str = "127.0.0.1"
    port: int = 8000
    transaction_timeout: float = 20.0
    max_batch_size: int = 500
    summary_category: str = DEFAULT_SUMMARY_CATEGORY
    summary_fields: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_SUMMARY_FIELDS)
    )
    debug: bool = False
    log_file: str | None = None


def validate_config(config: Config, require_url: bool = False) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.
        require_url: Fail when no server URL is configured.

    Raises:
        ValueError: If the URL is malformed or missing when required.
    """
    if not config.server_url:
        if require_url:
            raise ValueError(
                "Server URL not found. Set AUDIT_SYNC_URL environment "
                "variable, pass --url, or add client.server_url to config.yml."
            )
        return

    config.server_url = config.server_url.strip()
    if not config.server_url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid server URL '{config.server_url}': must start with http:// or https://"
        )
    if not urlparse(config.server_url).hostname:
        raise ValueError(
            f"Invalid server URL '{config.server_url}': URL must include a hostname"
        )
    config.server_url = config.server_url.removesuffix("/")


def _env_float(key: str, low: float, high: float) -> float | None:
    """Return a float env var within [low, high], or None if unset."""
    raw = os.getenv(key)
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low:g} and {high:g}"
        ) from None
    if not (low <= value <= high):
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low:g} and {high:g}"
        )
    return value


def _env_bool(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def load_config(
    url: str | None = None,
    db_path: str | None = None,
    server_db_path: str | None = None,
    host: str | None = None,
    port: int | None = None,
    debug: bool = False,
    unified: UnifiedConfig | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > YAML (``unified``) > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        url: Override server URL.
        db_path: Override client local store path.
        server_db_path: Override server database path.
        host: Override server bind address.
        port: Override server bind port.
        debug: Enable debug logging (CLI flag).
        unified: Parsed YAML configuration; defaults when omitted.

    Returns:
        Validated Config instance.
    """
    yml = unified or UnifiedConfig()

    def pick_float(env_key: str, low: float, high: float, fallback: float) -> float:
        env_value = _env_float(env_key, low, high)
        return env_value if env_value is not None else fallback

    env_debug = _env_bool("AUDIT_SYNC_DEBUG")
    if debug:
        final_debug = True
    elif env_debug is not None:
        final_debug = env_debug
    else:
        final_debug = yml.logging.level.upper() == "DEBUG"

    config = Config(
        server_url=url or os.getenv("AUDIT_SYNC_URL") or yml.client.server_url,
        db_path=db_path or os.getenv("AUDIT_SYNC_DB") or yml.client.db_path,
        sync_interval=pick_float(
            "AUDIT_SYNC_INTERVAL", 1, 3600, yml.client.sync_interval
        ),
        debounce_delay=pick_float(
            "AUDIT_SYNC_DEBOUNCE", 0, 60, yml.client.debounce_delay
        ),
        request_timeout=pick_float(
            "AUDIT_SYNC_TIMEOUT", 1, 600, yml.client.request_timeout
        ),
        max_parallel_requests=yml.client.max_parallel_requests,
        server_db_path=server_db_path
        or os.getenv("AUDIT_SYNC_SERVER_DB")
        or yml.server.db_path,
        host=host or yml.server.host,
        port=port or yml.server.port,
        transaction_timeout=yml.server.transaction_timeout,
        max_batch_size=yml.server.max_batch_size,
        summary_category=yml.summary.category,
        summary_fields=dict(yml.summary.fields),
        debug=final_debug,
        log_file=yml.logging.file,
    )

    validate_config(config)

    return config
