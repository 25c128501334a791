"""Shared pytest fixtures for task-sync tests."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from dotenv import load_dotenv

from task_sync.config import Config
from task_sync.errors import RemoteError
from task_sync.service import SyncService, build_service
from task_sync.sync.models import (
    PullResult,
    PushResult,
    QueueItemType,
    SyncStatus,
    Task,
)
from task_sync.sync.queue import ChangeQueue
from task_sync.sync.store import MemoryStore, StoreAdapter

load_dotenv()

T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


def at(minutes: float) -> datetime:
    """Fixed test clock: ``T0`` plus *minutes*."""
    return T0 + timedelta(minutes=minutes)


def make_task(task_id: str = "7", **overrides: Any) -> Task:
    """Build a Task with deterministic timestamps."""
    defaults: dict[str, Any] = {
        "id": task_id,
        "title": "Draft intro",
        "created_at": T0,
        "updated_at": T0,
        "source": "extension",
        "sync_status": SyncStatus.SYNCED,
    }
    defaults.update(overrides)
    return Task(**defaults)


class FakeRemote:
    """In-memory remote implementing the ``SyncClient`` protocol.

    Holds its own copy of every task keyed by id.  ``pull`` returns the
    tasks updated after the cursor; ``push`` stores what it receives and
    records the acknowledged versions in the local store, like the real
    clients do.
    """

    def __init__(
        self,
        name: str,
        adapter: StoreAdapter,
        tasks: Sequence[Task] = (),
        *,
        accepts_all: bool = False,
    ) -> None:
        self.name = name
        self._adapter = adapter
        self.tasks: dict[str, Task] = {t.id: t for t in tasks}
        self.accepts_all = accepts_all
        self.pull_error: str | None = None
        self.push_error: str | None = None
        self.pull_calls: list[str | None] = []
        self.push_calls: list[list[Task]] = []
        self.extras_received: list[dict[str, Any]] = []
        self.pull_extras: dict[str, Any] = {}

    def accepts(self, item_type: QueueItemType) -> bool:
        return self.accepts_all or item_type == QueueItemType.TASK_UPDATE

    async def push(
        self, tasks: Sequence[Task], extras: dict[str, Any] | None = None
    ) -> PushResult:
        if self.push_error:
            raise RemoteError(self.name, self.push_error)
        due = [t for t in tasks if t.needs_push(self.name)]
        self.push_calls.append(due)
        if extras:
            self.extras_received.append(extras)
        for task in due:
            self.tasks[task.id] = task.model_copy(update={"last_push_time": {}})
        pushed = {t.id: t.updated_at for t in due}
        await self._adapter.mark_pushed(self.name, pushed)
        return PushResult(remote=self.name, pushed=pushed, skipped=len(tasks) - len(due))

    async def pull(self, since: str | None) -> PullResult:
        self.pull_calls.append(since)
        if self.pull_error:
            raise RemoteError(self.name, self.pull_error)
        cutoff = datetime.fromisoformat(since.replace("Z", "+00:00")) if since else None
        changed = [
            t for t in self.tasks.values() if cutoff is None or t.updated_at > cutoff
        ]
        cursor = max((t.updated_at for t in self.tasks.values()), default=T0)
        return PullResult(
            remote=self.name,
            tasks=changed,
            cursor=cursor.isoformat().replace("+00:00", "Z"),
            extras=dict(self.pull_extras),
        )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def adapter(store: MemoryStore) -> StoreAdapter:
    return StoreAdapter(store)


@pytest.fixture
def queue(adapter: StoreAdapter) -> ChangeQueue:
    """Queue with deterministic jitter (factor 0.75)."""
    return ChangeQueue(adapter, max_attempts=3, backoff_base=2.0, rng=lambda: 0.5)


@pytest.fixture
async def service():
    """Offline SyncService (no remotes) over a MemoryStore.

    The debounce is long enough that mutations never start a cycle on
    their own during a test.
    """
    config = Config(
        source="desktop",
        backend_enabled=False,
        bridge_enabled=False,
        debounce_seconds=3600,
    )
    svc: SyncService = build_service(config, store=MemoryStore())
    yield svc
    await svc.stop()
