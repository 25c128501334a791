"""Local Store Adapter: typed access to this surface's durable state.

The sync core only ever talks to storage through the async
``LocalStore`` protocol (``read(keys)`` / ``write(patch)``), so the
backing store can be swapped per platform without touching sync logic.
Two implementations ship here:

* ``JsonFileStore`` -- one JSON document on disk.  Writes go to a temp
  file that atomically replaces the target, so a concurrent reader sees
  either the old or the new document, never a partial patch.
* ``MemoryStore`` -- process-local dict, used by tests and embedders.

``StoreAdapter`` layers typed helpers and read-modify-write
transactions on top.  All transactions share one lock, which is what
keeps a sync cycle's merge from clobbering a local edit written at the
same moment.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import tempfile
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from ..core.async_utils import run_sync
from ..errors import StoreError, StoreWriteError
from .models import ConflictRecord, ResolutionStatus, SyncStatus, Task, as_utc

logger = logging.getLogger(__name__)

TASKS_KEY = "tasks"
LAST_SYNC_KEY = "lastSyncTime"
BACKEND_CURSOR_KEY = "lastBackendPullCursor"
CONFLICTS_KEY = "syncConflicts"
QUEUE_KEY = "syncQueue"
DEAD_LETTER_KEY = "syncDeadLetter"
QUEUE_SEQ_KEY = "syncQueueSeq"
ID_MAP_KEY = "backendIdMap"
ENERGY_KEY = "currentEnergyLevel"
FOCUS_SESSIONS_KEY = "focusSessions"


def cursor_key(remote: str) -> str:
    """Return the state key holding the pull cursor for *remote*."""
    if remote == "backend":
        return BACKEND_CURSOR_KEY
    return f"pullCursor:{remote}"


# ---------------------------------------------------------------------------
# Storage protocol and implementations
# ---------------------------------------------------------------------------


class LocalStore(Protocol):
    """Async key-value repository holding one surface's durable state."""

    async def read(self, keys: Iterable[str] | None = None) -> dict[str, Any]:
        """Return the values stored under *keys* (all keys if ``None``).

        Missing keys are simply absent from the result.
        """
        ...  # pragma: no cover

    async def write(self, patch: Mapping[str, Any]) -> None:
        """Apply *patch* atomically.

        Raises:
            StoreWriteError: If the patch could not be persisted.  Nothing
                from the patch is visible in that case.
        """
        ...  # pragma: no cover


class MemoryStore:
    """In-process ``LocalStore``; values are deep-copied in and out."""

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(dict(initial or {}))

    async def read(self, keys: Iterable[str] | None = None) -> dict[str, Any]:
        if keys is None:
            return copy.deepcopy(self._data)
        return {k: copy.deepcopy(self._data[k]) for k in keys if k in self._data}

    async def write(self, patch: Mapping[str, Any]) -> None:
        self._data.update(copy.deepcopy(dict(patch)))


class JsonFileStore:
    """``LocalStore`` backed by a single JSON file.

    Args:
        path: Location of the state file.  Parent directories are
            created on first write.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def read(self, keys: Iterable[str] | None = None) -> dict[str, Any]:
        async with self._lock:
            data = await run_sync(self._load)
        if keys is None:
            return data
        return {k: data[k] for k in keys if k in data}

    async def write(self, patch: Mapping[str, Any]) -> None:
        async with self._lock:
            await run_sync(self._apply, dict(patch))

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            with open(self._path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreError(f"Cannot read state file {self._path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreError(
                f"State file {self._path} has non-object root ({type(data).__name__})"
            )
        return data

    def _apply(self, patch: dict[str, Any]) -> None:
        data = self._load()
        data.update(patch)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self._path.parent), suffix=".tmp"
            )
        except OSError as exc:
            raise StoreWriteError(
                f"Cannot write state file {self._path}: {exc}"
            ) from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
            os.replace(tmp_path, self._path)
        except BaseException as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            if isinstance(exc, (OSError, TypeError, ValueError)):
                raise StoreWriteError(
                    f"Cannot write state file {self._path}: {exc}"
                ) from exc
            raise


# ---------------------------------------------------------------------------
# Typed adapter
# ---------------------------------------------------------------------------


def load_tasks(raw: Any) -> list[Task]:
    """Parse a stored task list, skipping entries that fail validation."""
    tasks: list[Task] = []
    for entry in raw or []:
        try:
            tasks.append(Task.model_validate(entry))
        except ValidationError as exc:
            logger.warning("Skipping unreadable stored task: %s", exc)
    return tasks


def load_conflicts(raw: Any) -> list[ConflictRecord]:
    """Parse the stored conflict list, skipping unreadable entries."""
    conflicts: list[ConflictRecord] = []
    for entry in raw or []:
        try:
            conflicts.append(ConflictRecord.model_validate(entry))
        except ValidationError as exc:
            logger.warning("Skipping unreadable conflict record: %s", exc)
    return conflicts


def parse_timestamp(raw: Any) -> datetime | None:
    if not raw:
        return None
    try:
        return as_utc(datetime.fromisoformat(str(raw).replace("Z", "+00:00")))
    except ValueError:
        logger.warning("Ignoring unparseable timestamp %r", raw)
        return None


class StoreAdapter:
    """Typed, transactional view over a ``LocalStore``.

    Args:
        store: The backing repository.
    """

    def __init__(self, store: LocalStore) -> None:
        self._store = store
        self._lock = asyncio.Lock()

    @property
    def store(self) -> LocalStore:
        return self._store

    async def read(self, keys: Iterable[str] | None = None) -> dict[str, Any]:
        return await self._store.read(keys)

    async def write(self, patch: Mapping[str, Any]) -> None:
        async with self._lock:
            await self._store.write(patch)

    @asynccontextmanager
    async def transaction(self, *keys: str) -> AsyncIterator[dict[str, Any]]:
        """Read *keys*, let the caller mutate them, then write what changed.

        The yielded dict holds the current values (missing keys are
        absent).  Keys whose values differ on exit are written back in a
        single patch.  If the body raises, nothing is written.
        """
        async with self._lock:
            before = await self._store.read(keys)
            state = copy.deepcopy(before)
            yield state
            patch = {
                k: state[k]
                for k in keys
                if k in state and (k not in before or state[k] != before[k])
            }
            if patch:
                await self._store.write(patch)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def tasks(self) -> list[Task]:
        raw = await self._store.read([TASKS_KEY])
        return load_tasks(raw.get(TASKS_KEY))

    async def task(self, task_id: str) -> Task | None:
        for task in await self.tasks():
            if task.id == task_id:
                return task
        return None

    async def put_task(self, task: Task) -> Task:
        """Insert or replace *task* by id."""
        async with self.transaction(TASKS_KEY) as state:
            state[TASKS_KEY] = upsert_stored(state.get(TASKS_KEY), task)
        return task

    async def mark_pushed(
        self, remote: str, versions: Mapping[str, datetime]
    ) -> None:
        """Record that *remote* acknowledged the given task versions.

        Tasks edited locally since the push keep their newer
        ``updated_at`` and stay eligible for the next push.
        """
        if not versions:
            return
        async with self.transaction(TASKS_KEY) as state:
            updated = []
            for task in load_tasks(state.get(TASKS_KEY)):
                version = versions.get(task.id)
                if version is not None:
                    task = task.pushed_to(remote, version)
                    if (
                        task.sync_status == SyncStatus.PENDING
                        and task.updated_at <= version
                    ):
                        task = task.model_copy(
                            update={"sync_status": SyncStatus.SYNCED}
                        )
                updated.append(task.to_store())
            state[TASKS_KEY] = updated

    # ------------------------------------------------------------------
    # Conflicts, cursors, metadata
    # ------------------------------------------------------------------

    async def conflicts(self) -> list[ConflictRecord]:
        raw = await self._store.read([CONFLICTS_KEY])
        return [
            c
            for c in load_conflicts(raw.get(CONFLICTS_KEY))
            if c.resolution_status == ResolutionStatus.PENDING
        ]

    async def last_sync_time(self) -> datetime | None:
        raw = await self._store.read([LAST_SYNC_KEY])
        return parse_timestamp(raw.get(LAST_SYNC_KEY))

    async def cursor(self, remote: str) -> str | None:
        key = cursor_key(remote)
        raw = await self._store.read([key])
        value = raw.get(key)
        return str(value) if value is not None else None

    async def id_map(self) -> dict[str, str]:
        raw = await self._store.read([ID_MAP_KEY])
        return dict(raw.get(ID_MAP_KEY) or {})


def upsert_stored(raw: Any, task: Task) -> list[dict[str, Any]]:
    """Return the stored task list with *task* inserted or replaced."""
    stored = list(raw or [])
    for index, entry in enumerate(stored):
        if isinstance(entry, dict) and str(entry.get("id")) == task.id:
            stored[index] = task.to_store()
            return stored
    stored.insert(0, task.to_store())
    return stored
