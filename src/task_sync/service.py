"""Wiring for one surface's sync service.

``build_service`` turns a validated ``Config`` into the full object
graph (store, queue, clients, resolver, engine, scheduler).  The MCP
lifespan and the tests both go through it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import requests

from .config import Config
from .sync.clients import BackendClient, BridgeClient, SyncClient
from .sync.engine import SyncEngine
from .sync.queue import ChangeQueue
from .sync.resolver import ResolutionEngine, create_policy
from .sync.scheduler import SyncScheduler
from .sync.store import JsonFileStore, LocalStore, StoreAdapter

logger = logging.getLogger(__name__)


@dataclass
class SyncService:
    config: Config
    adapter: StoreAdapter
    queue: ChangeQueue
    clients: list[SyncClient]
    resolver: ResolutionEngine
    engine: SyncEngine
    scheduler: SyncScheduler

    async def start(self, *, initial_sync: bool = True) -> None:
        """Reload durable queue state, then start the scheduler."""
        await self.queue.load()
        self.scheduler.start(initial_sync=initial_sync)

    async def stop(self) -> None:
        await self.scheduler.stop()

    async def status(self) -> dict[str, Any]:
        status = await self.engine.status()
        status["scheduler"] = self.scheduler.status()
        return status


def build_service(
    config: Config,
    *,
    store: LocalStore | None = None,
    session: requests.Session | None = None,
) -> SyncService:
    """Assemble a ``SyncService`` from *config*.

    Args:
        config: Validated configuration.
        store: Backing store; defaults to ``JsonFileStore(config.state_file)``.
        session: Shared HTTP session for the clients (tests inject mocks).
    """
    adapter = StoreAdapter(store or JsonFileStore(Path(config.state_file)))
    queue = ChangeQueue(
        adapter,
        max_attempts=config.max_attempts,
        backoff_base=config.backoff_base_seconds,
        backoff_max=config.backoff_max_seconds,
    )

    clients: list[SyncClient] = []
    backend: BackendClient | None = None
    if config.backend_enabled:
        backend = BackendClient(
            config.backend_url,
            adapter,
            source=config.source,
            timeout=config.request_timeout_seconds,
            session=session,
        )
        clients.append(backend)
    if config.bridge_enabled:
        clients.append(
            BridgeClient(
                config.bridge_url,
                adapter,
                source=config.source,
                timeout=config.request_timeout_seconds,
                session=session,
            )
        )

    resolver = ResolutionEngine(
        adapter,
        queue,
        source=config.source,
        policy=create_policy(config.conflict_strategy),
    )
    engine = SyncEngine(adapter, queue, clients, resolver, source=config.source)
    scheduler = SyncScheduler(
        engine,
        interval=config.interval_seconds,
        debounce=config.debounce_seconds,
        cycle_timeout=config.cycle_timeout_seconds,
        backoff_base=config.backoff_base_seconds,
        backoff_max=config.backoff_max_seconds,
        probe=backend.health if backend is not None else None,
        probe_interval=config.connectivity_check_seconds,
    )
    logger.info(
        "Sync service for '%s': remotes=%s strategy=%s state=%s",
        config.source,
        [c.name for c in clients],
        config.conflict_strategy,
        config.state_file,
    )
    return SyncService(
        config=config,
        adapter=adapter,
        queue=queue,
        clients=clients,
        resolver=resolver,
        engine=engine,
        scheduler=scheduler,
    )
