"""Sync clients: one per remote counterpart.

Both clients implement the ``SyncClient`` protocol:

- ``push(tasks, extras)`` sends only tasks whose ``updated_at`` is newer
  than that remote's entry in ``last_push_time``, and on success
  records the pushed versions in the local store.
- ``pull(since)`` fetches records changed since the cursor, maps them
  into local ``Task`` records (defaulting bad fields) and returns a new
  cursor for the caller to persist.

The backend is called with separate push and pull requests so each
direction can fail and retry on its own.  The plugin-host bridge runs
colocated, so every call is one ``bidirectional_sync`` exchange.

Blocking ``requests`` calls run in worker threads and are bounded by
``asyncio.wait_for``; every failure surfaces as ``RemoteError``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any, Protocol

import requests

from ..core.async_utils import run_sync_timeout
from ..core.client import HttpClient
from ..errors import RemoteError
from .mapper import (
    backend_to_task,
    bridge_to_task,
    local_id,
    task_to_backend,
    task_to_bridge,
    wire_time,
)
from .models import PullResult, PushResult, QueueItemType, Task, utc_now
from .store import ID_MAP_KEY, StoreAdapter

logger = logging.getLogger(__name__)


class SyncClient(Protocol):
    """Interface every remote counterpart implements."""

    name: str

    def accepts(self, item_type: QueueItemType) -> bool:
        """True if queue items of *item_type* are delivered to this remote."""
        ...  # pragma: no cover

    async def push(
        self, tasks: Sequence[Task], extras: dict[str, Any] | None = None
    ) -> PushResult:
        ...  # pragma: no cover

    async def pull(self, since: str | None) -> PullResult:
        ...  # pragma: no cover


class _HttpSyncClient:
    """Shared plumbing: async bounded calls over ``HttpClient``."""

    name = "remote"

    def __init__(
        self,
        base_url: str,
        adapter: StoreAdapter,
        *,
        source: str,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self._adapter = adapter
        self.source = source
        self.timeout = timeout
        self._http = HttpClient(
            base_url, remote=self.name, timeout=timeout, session=session
        )

    @property
    def url(self) -> str:
        return self._http.base_url

    async def _call(self, method: str, path: str = "", **kwargs: Any) -> Any:
        try:
            return await run_sync_timeout(
                self.timeout, self._http.request_json, method, path, **kwargs
            )
        except asyncio.TimeoutError:
            raise RemoteError(
                self.name, f"{method} {self._http.url(path)} timed out"
            ) from None

    def _due(self, tasks: Sequence[Task]) -> list[Task]:
        return [t for t in tasks if t.needs_push(self.name)]


# ---------------------------------------------------------------------------
# Backend service
# ---------------------------------------------------------------------------


class BackendClient(_HttpSyncClient):
    """Client for the backend service (``/sync/push``, ``/sync/pull``)."""

    name = "backend"

    def accepts(self, item_type: QueueItemType) -> bool:
        return item_type == QueueItemType.TASK_UPDATE

    async def health(self) -> bool:
        """Probe ``GET /health``; raises ``RemoteError`` when unreachable."""
        await self._call("GET", "/health")
        return True

    async def push(
        self, tasks: Sequence[Task], extras: dict[str, Any] | None = None
    ) -> PushResult:
        due = self._due(tasks)
        skipped = len(tasks) - len(due)
        if not due:
            logger.debug("backend push: nothing to send (%d up to date)", skipped)
            return PushResult(remote=self.name, skipped=skipped)

        id_map = await self._adapter.id_map()
        known = dict(id_map)
        wire = [task_to_backend(t, id_map) for t in due]
        if id_map != known:
            # Persist before sending so a later pull can restore string ids.
            async with self._adapter.transaction(ID_MAP_KEY) as state:
                state[ID_MAP_KEY] = {**(state.get(ID_MAP_KEY) or {}), **id_map}

        body = await self._call(
            "POST",
            "/sync/push",
            payload={
                "source": self.source,
                "tasks": wire,
                "timestamp": wire_time(utc_now()),
            },
        )
        if isinstance(body, dict) and body.get("success") is False:
            raise RemoteError(
                self.name, f"push rejected: {body.get('error') or body.get('message')}"
            )
        data = body.get("data") if isinstance(body, dict) else None
        data = data if isinstance(data, dict) else {}

        rejected = {
            local_id(err.get("id"), id_map)
            for err in data.get("errors") or []
            if isinstance(err, dict) and err.get("id") is not None
        }
        if rejected:
            logger.warning(
                "backend rejected %d task(s): %s", len(rejected), sorted(rejected)
            )
        pushed = {t.id: t.updated_at for t in due if t.id not in rejected}
        await self._adapter.mark_pushed(self.name, pushed)
        logger.info("backend push: %d sent, %d skipped", len(pushed), skipped)
        return PushResult(
            remote=self.name, pushed=pushed, skipped=skipped, response=data
        )

    async def pull(self, since: str | None) -> PullResult:
        started = utc_now()
        body = await self._call(
            "GET", "/sync/pull", params={"source": self.source, "since": since}
        )
        records = body.get("data") if isinstance(body, dict) else body
        if not isinstance(records, list):
            logger.warning("backend pull: response has no task list, ignoring")
            return PullResult(remote=self.name, cursor=since)

        id_map = await self._adapter.id_map()
        tasks: list[Task] = []
        malformed = 0
        for raw in records:
            task = backend_to_task(raw, id_map, self.name)
            if task is None:
                malformed += 1
            else:
                tasks.append(task)

        metadata = body.get("metadata") if isinstance(body, dict) else None
        cursor = None
        if isinstance(metadata, dict) and metadata.get("timestamp"):
            cursor = str(metadata["timestamp"])
        logger.info("backend pull: %d task(s) since %s", len(tasks), since)
        return PullResult(
            remote=self.name,
            tasks=tasks,
            cursor=cursor or wire_time(started),
            malformed=malformed,
        )


# ---------------------------------------------------------------------------
# Plugin-host bridge
# ---------------------------------------------------------------------------


class BridgeClient(_HttpSyncClient):
    """Client for the colocated plugin-host bridge.

    Each call posts ``{action: "bidirectional_sync", data, timestamp}``
    and gets the bridge's state back.  ``pull`` sends no outbound tasks;
    ``push`` carries pending tasks plus the energy level and focus
    sessions, which only the bridge stores.
    """

    name = "bridge"

    def accepts(self, item_type: QueueItemType) -> bool:
        return True

    async def _exchange(
        self, data: dict[str, Any], cursor: str | None
    ) -> dict[str, Any]:
        body = await self._call(
            "POST",
            payload={
                "action": "bidirectional_sync",
                "data": {"source": self.source, **data},
                "timestamp": cursor,
            },
        )
        if not isinstance(body, dict):
            raise RemoteError(self.name, "bridge returned a non-object body")
        return body

    async def push(
        self, tasks: Sequence[Task], extras: dict[str, Any] | None = None
    ) -> PushResult:
        due = self._due(tasks)
        skipped = len(tasks) - len(due)
        extras = {k: v for k, v in (extras or {}).items() if v is not None}
        if not due and not extras:
            return PushResult(remote=self.name, skipped=skipped)

        cursor = await self._adapter.cursor(self.name)
        body = await self._exchange(
            {"tasks": [task_to_bridge(t) for t in due], **extras}, cursor
        )
        pushed = {t.id: t.updated_at for t in due}
        await self._adapter.mark_pushed(self.name, pushed)
        logger.info(
            "bridge push: %d task(s) sent%s",
            len(pushed),
            f", extras: {', '.join(sorted(extras))}" if extras else "",
        )
        data = body.get("data")
        return PushResult(
            remote=self.name,
            pushed=pushed,
            skipped=skipped,
            response=data if isinstance(data, dict) else {},
        )

    async def pull(self, since: str | None) -> PullResult:
        started = utc_now()
        body = await self._exchange({"tasks": []}, since)
        data = body.get("data")
        data = data if isinstance(data, dict) else {}

        tasks: list[Task] = []
        malformed = 0
        for raw in data.get("tasks") or []:
            task = bridge_to_task(raw, self.name)
            if task is None:
                malformed += 1
            else:
                tasks.append(task)

        extras: dict[str, Any] = {}
        if data.get("currentEnergyLevel") is not None:
            extras["currentEnergyLevel"] = data["currentEnergyLevel"]
        if isinstance(data.get("focusSessions"), list):
            extras["focusSessions"] = data["focusSessions"]

        conflicts = [c for c in body.get("conflicts") or [] if isinstance(c, dict)]
        if conflicts:
            logger.warning("bridge reported %d conflict(s) on its side", len(conflicts))

        cursor = body.get("timestamp")
        return PullResult(
            remote=self.name,
            tasks=tasks,
            cursor=str(cursor) if cursor is not None else wire_time(started),
            extras=extras,
            remote_conflicts=conflicts,
            malformed=malformed,
        )
