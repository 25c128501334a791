"""Runtime configuration for the sync service.

Reads sync settings from CLI args, environment variables, .env files,
and the YAML config file.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    TASK_SYNC_SOURCE: Name of this surface (default: extension)
    TASK_SYNC_STATE_FILE: Local state JSON file
    TASK_SYNC_BACKEND_URL: Backend service base URL
    TASK_SYNC_BRIDGE_URL: Plugin-host bridge endpoint
    TASK_SYNC_INTERVAL: Seconds between periodic cycles
    TASK_SYNC_MAX_ATTEMPTS: Failures before a queue item is dead-lettered
    TASK_SYNC_CONFLICT_STRATEGY: manual | newest-wins | local-wins | remote-wins
    TASK_SYNC_DEBUG: Enable debug logging
"""

import logging
import os
from dataclasses import dataclass, replace
from urllib.parse import urlparse

from .config_schema import UnifiedConfig, to_config

logger = logging.getLogger(__name__)

CONFLICT_STRATEGIES = ("manual", "newest-wins", "local-wins", "remote-wins")


@dataclass
class Config:
    source: str = "extension"
    state_file: str = ".task_sync/state.json"
    backend_url: str = "http://localhost:3001/api"
    backend_enabled: bool = True
    bridge_url: str = "http://localhost:27123/api/sync"
    bridge_enabled: bool = True
    interval_seconds: float = 300
    debounce_seconds: float = 2.0
    request_timeout_seconds: float = 10
    cycle_timeout_seconds: float = 120
    connectivity_check_seconds: float = 30
    max_attempts: int = 5
    backoff_base_seconds: float = 2
    backoff_max_seconds: float = 300
    conflict_strategy: str = "manual"
    debug: bool = False
    log_file: str | None = None
    log_level: str | None = None


def _validate_url(label: str, url: str) -> str:
    url = url.strip()
    if not url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid {label} URL '{url}': must start with http:// or https://"
        )
    if not urlparse(url).hostname:
        raise ValueError(f"Invalid {label} URL '{url}': URL must include a hostname")
    return url.removesuffix("/")


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Normalises URLs in place (whitespace and trailing slash stripped).

    Raises:
        ValueError: On a bad URL, non-positive interval, ``max_attempts``
            below 1, unknown conflict strategy or empty source name.
    """
    config.source = config.source.strip()
    if not config.source:
        raise ValueError(
            "Surface name cannot be empty. Set TASK_SYNC_SOURCE or sync.source."
        )

    config.backend_url = _validate_url("backend", config.backend_url)
    config.bridge_url = _validate_url("bridge", config.bridge_url)

    for name in (
        "interval_seconds",
        "request_timeout_seconds",
        "cycle_timeout_seconds",
        "connectivity_check_seconds",
        "backoff_base_seconds",
        "backoff_max_seconds",
    ):
        if getattr(config, name) <= 0:
            raise ValueError(f"{name} must be positive, got {getattr(config, name)}")
    if config.debounce_seconds < 0:
        raise ValueError("debounce_seconds cannot be negative")

    if config.max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {config.max_attempts}")

    if config.conflict_strategy not in CONFLICT_STRATEGIES:
        raise ValueError(
            f"Unknown conflict strategy '{config.conflict_strategy}'. "
            f"Valid strategies: {list(CONFLICT_STRATEGIES)}"
        )

    if not (config.backend_enabled or config.bridge_enabled):
        logger.warning("No remote enabled; sync cycles will only process local state")


def get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _number_env(key: str, cast: type) -> int | float | None:
    raw = os.getenv(key)
    if raw is None:
        return None
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"Invalid {key} '{raw}': must be a number") from None


def load_config(
    source: str | None = None,
    state_file: str | None = None,
    backend_url: str | None = None,
    bridge_url: str | None = None,
    conflict_strategy: str | None = None,
    debug: bool = False,
    yaml_config: UnifiedConfig | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_config > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        source: Override surface name.
        state_file: Override local state file path.
        backend_url: Override backend base URL.
        bridge_url: Override bridge endpoint.
        conflict_strategy: Override conflict strategy.
        debug: Enable debug logging (CLI flag).
        yaml_config: Parsed YAML config; defaults apply when omitted.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If any resulting value is invalid.
    """
    config = to_config(yaml_config or UnifiedConfig())

    env: dict = {
        "source": os.getenv("TASK_SYNC_SOURCE"),
        "state_file": os.getenv("TASK_SYNC_STATE_FILE"),
        "backend_url": os.getenv("TASK_SYNC_BACKEND_URL"),
        "bridge_url": os.getenv("TASK_SYNC_BRIDGE_URL"),
        "interval_seconds": _number_env("TASK_SYNC_INTERVAL", float),
        "max_attempts": _number_env("TASK_SYNC_MAX_ATTEMPTS", int),
        "conflict_strategy": os.getenv("TASK_SYNC_CONFLICT_STRATEGY"),
        "debug": get_bool_env("TASK_SYNC_DEBUG"),
    }
    cli: dict = {
        "source": source,
        "state_file": state_file,
        "backend_url": backend_url,
        "bridge_url": bridge_url,
        "conflict_strategy": conflict_strategy,
        "debug": True if debug else None,
    }
    for layer in (env, cli):
        config = replace(config, **{k: v for k, v in layer.items() if v is not None})

    validate_config(config)

    return config
