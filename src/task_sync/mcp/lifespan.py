"""Lifespan management for MCP server startup and shutdown."""

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv

from ..config import load_config
from ..config_loader import (
    discover_config_files,
    load_hierarchical_config,
)
from ..config_schema import build_config
from ..logger import setup_logging
from ..service import build_service

logger = logging.getLogger(__name__)


def _stderr_print(msg: str) -> None:
    """Print message to stderr for user feedback (safe in MCP mode)."""
    print(msg, file=sys.stderr, flush=True)


@asynccontextmanager
async def server_lifespan(
    config_overrides: dict[str, Any] | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """
    Manage server startup and shutdown lifecycle.

    On startup:
    - Load .env file (so values are available for env var lookups and YAML interpolation)
    - Load YAML config file if present
    - Merge all sources via load_config(): CLI > env vars > .env > YAML > defaults
    - Build the sync service, reload its durable queue and start the scheduler

    Remotes being unreachable is not a startup failure: the service runs
    offline-first and the scheduler retries with backoff.

    On shutdown:
    - Stop the scheduler (a running cycle is cancelled; queued changes
      stay in the local store for the next start)

    Args:
        config_overrides: Optional dict with config values from CLI

    Yields:
        Dict with 'service' key containing the running SyncService

    Raises:
        RuntimeError: If configuration is invalid or the state file is unusable.
    """
    logger.info("MCP server starting...")
    _stderr_print("Task Sync MCP Server starting...")
    overrides = config_overrides or {}

    try:
        # 1. Load .env early (before YAML, so ${VAR} interpolation can use .env values)
        load_dotenv()

        # 2. Load YAML config if present
        unified = None
        sources = []
        config_files = discover_config_files()
        if config_files:
            unified = build_config(load_hierarchical_config())
            sources.append(f"config file: {config_files[0]}")

        # 3. Single call to load_config with all sources merged
        config = load_config(
            source=overrides.get("source"),
            state_file=overrides.get("state_file"),
            backend_url=overrides.get("backend_url"),
            bridge_url=overrides.get("bridge_url"),
            conflict_strategy=overrides.get("conflict_strategy"),
            debug=overrides.get("debug", False),
            yaml_config=unified,
        )

        if overrides:
            sources.append("CLI arguments")
        sources.append("environment variables")
        source_desc = ", ".join(sources)
        logger.info("Configuration loaded from: %s", source_desc)
        _stderr_print(f"  Configuration loaded from: {source_desc}")
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        _stderr_print(f"ERROR: Configuration error: {e}")
        _stderr_print(
            "  Check TASK_SYNC_* environment variables and .task_sync/config.yml."
        )
        raise RuntimeError(f"Configuration error: {e}") from e

    # YAML and env may change level or file; CLI log file still wins.
    log_file = overrides.get("log_file") or config.log_file
    if config.debug or config.log_level or log_file != overrides.get("log_file"):
        setup_logging(
            mode="mcp",
            debug=config.debug,
            log_file=log_file,
            level=config.log_level,
        )

    _stderr_print(f"  Surface: {config.source}")
    _stderr_print(f"  State file: {config.state_file}")
    if config.backend_enabled:
        _stderr_print(f"  Backend: {config.backend_url}")
    if config.bridge_enabled:
        _stderr_print(f"  Bridge: {config.bridge_url}")
    _stderr_print(f"  Conflict strategy: {config.conflict_strategy}")

    try:
        service = build_service(config)
        await service.start()
    except Exception as e:
        logger.error("Failed to start sync service: %s", e)
        _stderr_print("ERROR: Sync service failed to start.")
        _stderr_print(f"  {e}")
        raise RuntimeError(f"Sync service failed to start: {e}") from e

    _stderr_print("Server ready. Waiting for MCP client connection...")

    try:
        yield {"service": service}
    finally:
        logger.info("MCP server shutting down")
        await service.stop()
        _stderr_print("Task Sync MCP Server shutting down.")
