"""Unified configuration schema for task_sync.

Defines Pydantic models for the YAML config structure with dedicated
sections for sync behaviour, each remote, and logging. Includes an
adapter that flattens it into the runtime ``Config`` dataclass.

Usage:
    from task_sync.config_schema import UnifiedConfig, build_config, to_config

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = to_config(unified, cli_overrides={"source": "obsidian"})
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)

ConflictStrategy = Literal["manual", "newest-wins", "local-wins", "remote-wins"]

DEFAULT_BACKEND_URL = "http://localhost:3001/api"
DEFAULT_BRIDGE_URL = "http://localhost:27123/api/sync"


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class SyncConfig(BaseModel):
    """Sync core settings for this surface."""

    source: str = Field(
        default="extension", min_length=1, description="Name of this surface"
    )
    state_file: str = Field(
        default=".task_sync/state.json", description="Local state JSON file"
    )
    interval_seconds: float = Field(
        default=300, gt=0, description="Seconds between periodic cycles"
    )
    debounce_seconds: float = Field(
        default=2.0, ge=0, description="Quiet period after a local change"
    )
    request_timeout_seconds: float = Field(
        default=10, gt=0, description="Per-request network timeout"
    )
    cycle_timeout_seconds: float = Field(
        default=120, gt=0, description="Abandon a cycle running longer"
    )
    connectivity_check_seconds: float = Field(
        default=30, gt=0, description="Seconds between health probes"
    )
    max_attempts: int = Field(
        default=5, ge=1, description="Failures before a queue item is dead-lettered"
    )
    backoff_base_seconds: float = Field(
        default=2, gt=0, description="Retry delay after the first failure"
    )
    backoff_max_seconds: float = Field(
        default=300, gt=0, description="Upper bound for retry delays"
    )
    conflict_strategy: ConflictStrategy = Field(
        default="manual",
        description=(
            "How detected conflicts are handled: "
            "manual | newest-wins | local-wins | remote-wins"
        ),
    )

    model_config = {"frozen": True}


class RemoteConfig(BaseModel):
    """Connection settings for one remote counterpart."""

    url: str | None = Field(default=None, description="Base URL / endpoint")
    enabled: bool = Field(default=True, description="Sync with this remote")

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str | None = Field(default=None, description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has sensible defaults, so ``UnifiedConfig()``
    (zero-config) is always valid.
    """

    sync: SyncConfig = Field(default_factory=SyncConfig)
    backend: RemoteConfig = Field(
        default_factory=lambda: RemoteConfig(url=DEFAULT_BACKEND_URL)
    )
    bridge: RemoteConfig = Field(
        default_factory=lambda: RemoteConfig(url=DEFAULT_BRIDGE_URL)
    )
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully; anything absent gets defaults.

    Raises:
        pydantic.ValidationError: If a present value is invalid.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


# ---------------------------------------------------------------------------
# Adapter: UnifiedConfig -> Config dataclass
# ---------------------------------------------------------------------------


def to_config(
    unified: UnifiedConfig,
    cli_overrides: dict | None = None,
) -> Config:
    """Flatten a ``UnifiedConfig`` into the runtime ``Config`` dataclass,
    applying CLI overrides on top.

    CLI overrides dict keys: source, state_file, backend_url, bridge_url,
    conflict_strategy, debug.

    Returns:
        ``Config`` instance (NOT validated; caller should run
        ``validate_config()`` separately if needed).
    """
    # Import here to avoid circular imports (config.py imports config_schema)
    from .config import Config

    overrides = cli_overrides or {}
    sync = unified.sync

    return Config(
        source=overrides.get("source") or sync.source,
        state_file=overrides.get("state_file") or sync.state_file,
        backend_url=overrides.get("backend_url")
        or unified.backend.url
        or DEFAULT_BACKEND_URL,
        backend_enabled=unified.backend.enabled,
        bridge_url=overrides.get("bridge_url")
        or unified.bridge.url
        or DEFAULT_BRIDGE_URL,
        bridge_enabled=unified.bridge.enabled,
        interval_seconds=sync.interval_seconds,
        debounce_seconds=sync.debounce_seconds,
        request_timeout_seconds=sync.request_timeout_seconds,
        cycle_timeout_seconds=sync.cycle_timeout_seconds,
        connectivity_check_seconds=sync.connectivity_check_seconds,
        max_attempts=sync.max_attempts,
        backoff_base_seconds=sync.backoff_base_seconds,
        backoff_max_seconds=sync.backoff_max_seconds,
        conflict_strategy=overrides.get("conflict_strategy")
        or sync.conflict_strategy,
        debug=overrides.get("debug", False),
        log_file=unified.logging.file,
        log_level=unified.logging.level,
    )
