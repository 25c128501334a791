"""Sync engine: one full sync cycle plus the local-mutation entry points.

A cycle runs in three phases:

1. **Pull** from every remote concurrently.  Each remote is isolated: a
   ``RemoteError`` (or any unexpected client error, logged with its
   traceback) is recorded in that remote's outcome and the cycle
   carries on with the others.
2. **Reconcile** every pulled record against fresh local state inside
   one store transaction (so a local edit written meanwhile is never
   lost).  Each record is either inserted, ignored (same content),
   flagged as a conflict, auto-resolved, or merged newest-wins.  Pull
   cursors are persisted in the same transaction.
3. **Push** the current version of every task referenced by a due
   queue item to every remote.  Items are acknowledged only when every
   remote that accepts their type took the push; otherwise they stay
   queued with backoff and eventually dead-letter.

Pulling before pushing means a remote's concurrent edit is seen (and
surfaced as a conflict) before this surface's version lands on top of
it.  ``lastSyncTime`` advances to the cycle start only when every
remote succeeded in both directions.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from ..errors import RemoteError
from .clients import SyncClient
from .detector import ConflictDetector
from .mapper import merge_focus_sessions, wire_time
from .models import (
    ConflictRecord,
    CycleReport,
    PullResult,
    QueueItem,
    QueueItemType,
    RemoteOutcome,
    SyncStatus,
    Task,
    next_timestamp,
    utc_now,
)
from .queue import ChangeQueue
from .resolver import ResolutionEngine, newest_wins
from .store import (
    CONFLICTS_KEY,
    ENERGY_KEY,
    FOCUS_SESSIONS_KEY,
    LAST_SYNC_KEY,
    TASKS_KEY,
    StoreAdapter,
    cursor_key,
    load_conflicts,
    load_tasks,
    upsert_stored,
)

logger = logging.getLogger(__name__)


class _Reconciliation:
    """Mutable working set for one reconcile pass."""

    def __init__(self, tasks: list[Task], conflicts: list[ConflictRecord]) -> None:
        self.order = [t.id for t in tasks]
        self.tasks = {t.id: t for t in tasks}
        self.conflicts = conflicts
        self.merged: list[str] = []
        self.raised: list[ConflictRecord] = []
        self.auto_resolved = 0
        self.propagate: dict[str, Task] = {}

    def put(self, task: Task) -> None:
        if task.id not in self.tasks:
            self.order.insert(0, task.id)
        self.tasks[task.id] = task

    def pending_for(self, task_id: str) -> list[ConflictRecord]:
        return [c for c in self.conflicts if c.task_id == task_id]

    def drop_conflicts(self, task_id: str, remote: str | None = None) -> None:
        self.conflicts = [
            c
            for c in self.conflicts
            if not (c.task_id == task_id and (remote is None or c.remote == remote))
        ]

    def stored_tasks(self) -> list[dict[str, Any]]:
        return [self.tasks[i].to_store() for i in self.order]


class SyncEngine:
    """Coordinates store, queue, clients, detector and resolver.

    Args:
        adapter: Local Store Adapter.
        queue: Outbound change queue.
        clients: One client per remote; names must be unique.
        resolver: Resolution engine (carries the automatic policy).
        source: Name of this surface.
        detector: Conflict detector (default instance if omitted).
    """

    def __init__(
        self,
        adapter: StoreAdapter,
        queue: ChangeQueue,
        clients: Sequence[SyncClient],
        resolver: ResolutionEngine,
        *,
        source: str,
        detector: ConflictDetector | None = None,
    ) -> None:
        names = [c.name for c in clients]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate remote names: {names}")
        self.adapter = adapter
        self.queue = queue
        self.clients = list(clients)
        self.resolver = resolver
        self.source = source
        self.detector = detector or ConflictDetector()
        self.on_mutation: Callable[[], None] | None = None

    # ------------------------------------------------------------------
    # Sync cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        """Run pull, reconcile and push once; return the cycle report.

        Raises:
            StoreError: If local state cannot be read or written.  Remote
                failures never raise; they are reported per remote.
        """
        started = utc_now()
        last_sync = await self.adapter.last_sync_time()
        await self.queue.load()

        pull_errors: dict[str, str] = {}
        pulls: list[PullResult] = []
        for client, result in zip(
            self.clients,
            await asyncio.gather(*(self._pull(c) for c in self.clients)),
        ):
            if isinstance(result, PullResult):
                pulls.append(result)
            else:
                pull_errors[client.name] = result

        work = await self._reconcile(pulls, last_sync)
        if work.propagate:
            await self.queue.enqueue_many(
                (QueueItemType.TASK_UPDATE, {"task": t.to_store()})
                for t in work.propagate.values()
            )

        pushed, push_errors, processed, failed, dead = await self._flush()

        pulled = {p.remote: len(p.tasks) for p in pulls}
        outcomes = [
            RemoteOutcome(
                remote=c.name,
                pulled=pulled.get(c.name, 0),
                pushed=pushed.get(c.name, 0),
                pull_error=pull_errors.get(c.name),
                push_error=push_errors.get(c.name),
            )
            for c in self.clients
        ]
        if all(o.ok for o in outcomes):
            await self.adapter.write({LAST_SYNC_KEY: wire_time(started)})

        report = CycleReport(
            source=self.source,
            started_at=started,
            completed_at=utc_now(),
            outcomes=outcomes,
            merged=work.merged,
            conflicts=work.raised,
            auto_resolved=work.auto_resolved,
            queue_processed=processed,
            queue_failed=failed,
            dead_lettered=dead,
            pending_conflicts=len(await self.adapter.conflicts()),
        )
        log = logger.info if report.ok else logger.warning
        log(
            "Sync cycle done: %d merged, %d conflict(s), %d queued item(s) sent, %d remote error(s)",
            len(report.merged),
            len(report.conflicts),
            processed,
            len(report.errors),
        )
        return report

    async def _pull(self, client: SyncClient) -> PullResult | str:
        try:
            since = await self.adapter.cursor(client.name)
            return await client.pull(since)
        except RemoteError as exc:
            logger.warning("Pull from %s failed, will retry: %s", client.name, exc)
            return str(exc)
        except Exception as exc:
            logger.exception("Unexpected error pulling from %s", client.name)
            return f"{type(exc).__name__}: {exc}"

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    async def _reconcile(
        self, pulls: list[PullResult], last_sync: datetime | None
    ) -> _Reconciliation:
        energy_pending = any(
            i.type == QueueItemType.ENERGY_UPDATE for i in await self.queue.pending()
        )
        keys = [TASKS_KEY, CONFLICTS_KEY, ENERGY_KEY, FOCUS_SESSIONS_KEY]
        keys += [cursor_key(p.remote) for p in pulls]

        async with self.adapter.transaction(*keys) as state:
            work = _Reconciliation(
                load_tasks(state.get(TASKS_KEY)),
                load_conflicts(state.get(CONFLICTS_KEY)),
            )
            for pull in pulls:
                if pull.malformed:
                    logger.warning(
                        "Dropped %d malformed record(s) from %s", pull.malformed, pull.remote
                    )
                for remote_task in pull.tasks:
                    self._reconcile_one(work, remote_task, pull.remote, last_sync)
                if pull.cursor is not None:
                    state[cursor_key(pull.remote)] = pull.cursor

                extras = pull.extras
                if "currentEnergyLevel" in extras and not energy_pending:
                    state[ENERGY_KEY] = extras["currentEnergyLevel"]
                if "focusSessions" in extras:
                    state[FOCUS_SESSIONS_KEY] = merge_focus_sessions(
                        list(state.get(FOCUS_SESSIONS_KEY) or []),
                        extras["focusSessions"],
                    )

            state[TASKS_KEY] = work.stored_tasks()
            state[CONFLICTS_KEY] = [c.to_store() for c in work.conflicts]
        return work

    def _reconcile_one(
        self,
        work: _Reconciliation,
        remote_task: Task,
        remote: str,
        last_sync: datetime | None,
    ) -> None:
        local = work.tasks.get(remote_task.id)
        acked = remote_task.model_copy(
            update={
                "sync_status": SyncStatus.SYNCED,
                "last_push_time": {remote: remote_task.updated_at},
            }
        )

        if local is None:
            work.put(acked)
            work.merged.append(acked.id)
            work.propagate[acked.id] = acked
            logger.debug("New task %s from %s", acked.id, remote)
            return

        if local.content_hash() == remote_task.content_hash():
            settled = local.pushed_to(remote, local.updated_at)
            if work.pending_for(local.id):
                work.drop_conflicts(local.id)
                settled = settled.model_copy(update={"sync_status": SyncStatus.SYNCED})
            work.put(settled)
            return

        if any(
            c.remote_snapshot.content_hash() == remote_task.content_hash()
            for c in work.pending_for(local.id)
        ):
            return

        conflict = self.detector.detect(local, remote_task, last_sync, remote)
        if conflict is not None:
            winner = self.resolver.auto_resolve(conflict)
            if winner is None:
                work.raised.append(conflict)
                work.drop_conflicts(local.id, remote)
                work.conflicts.append(conflict)
                work.put(local.model_copy(update={"sync_status": SyncStatus.CONFLICT}))
                return
            work.raised.append(conflict.resolved(self.resolver.policy.name))
            resolved = self.resolver.authoritative(conflict, winner)
            work.drop_conflicts(local.id)
            work.put(resolved)
            work.propagate[resolved.id] = resolved
            work.merged.append(resolved.id)
            work.auto_resolved += 1
            logger.info(
                "Auto-resolved conflict on %s with %s (%s)",
                local.id,
                remote,
                self.resolver.policy.name,
            )
            return

        if newest_wins(local, remote_task) is remote_task:
            # Pending conflicts compared snapshots that no longer exist locally.
            if work.pending_for(local.id):
                logger.info(
                    "Dropping pending conflicts on %s: superseded by newer %s copy",
                    local.id,
                    remote,
                )
                work.drop_conflicts(local.id)
            updated = acked.model_copy(
                update={"last_push_time": {**local.last_push_time, remote: remote_task.updated_at}}
            )
            work.put(updated)
            work.merged.append(updated.id)
            work.propagate[updated.id] = updated
            logger.debug("Task %s superseded by %s copy", local.id, remote)
        else:
            if work.pending_for(local.id):
                work.drop_conflicts(local.id, remote)
                if not work.pending_for(local.id):
                    local = local.model_copy(update={"sync_status": SyncStatus.PENDING})
                    work.put(local)
            if not local.needs_push(remote):
                # Remote holds stale content we believed acknowledged; resend.
                trimmed = {k: v for k, v in local.last_push_time.items() if k != remote}
                local = local.model_copy(update={"last_push_time": trimmed})
                work.put(local)
            work.propagate[local.id] = local

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def _flush(
        self,
    ) -> tuple[dict[str, int], dict[str, str], int, int, int]:
        items = await self.queue.drain()
        if not items:
            return {}, {}, 0, 0, 0

        tasks = {t.id: t for t in await self.adapter.tasks()}
        held = {c.task_id for c in await self.adapter.conflicts()}
        batch: dict[str, Task] = {}
        withheld: list[int] = []
        unusable: list[int] = []
        for item in items:
            if item.type != QueueItemType.TASK_UPDATE:
                continue
            task = tasks.get(item.task_id or "") or self._payload_task(item)
            if task is None:
                unusable.append(item.id)
            elif task.id in held or task.sync_status == SyncStatus.CONFLICT:
                withheld.append(item.id)
            else:
                batch[task.id] = task

        extras = await self._extras(items)
        pushed: dict[str, int] = {}
        push_errors: dict[str, str] = {}
        results = await asyncio.gather(
            *(self._push(c, list(batch.values()), extras) for c in self.clients)
        )
        for client, result in zip(self.clients, results):
            if isinstance(result, str):
                push_errors[client.name] = result
            else:
                pushed[client.name] = result

        ack_ids = withheld + unusable
        fail_ids: list[int] = []
        for item in items:
            if item.id in ack_ids:
                continue
            if item.type == QueueItemType.TASK_UPDATE and item.task_id not in batch:
                continue
            targets = [c.name for c in self.clients if c.accepts(item.type)]
            if any(name in push_errors for name in targets):
                fail_ids.append(item.id)
            else:
                ack_ids.append(item.id)

        processed = await self.queue.ack(ack_ids)
        dead = []
        if fail_ids:
            error = "; ".join(f"{k}: {v}" for k, v in sorted(push_errors.items()))
            dead = await self.queue.fail(fail_ids, error)
        return pushed, push_errors, processed, len(fail_ids) - len(dead), len(dead)

    async def _push(
        self, client: SyncClient, tasks: list[Task], extras: dict[str, Any]
    ) -> int | str:
        accepted = {k: v for k, v in extras.items() if client.accepts(_EXTRA_TYPES[k])}
        if not tasks and not accepted:
            return 0
        try:
            result = await client.push(tasks, accepted or None)
        except RemoteError as exc:
            logger.warning("Push to %s failed, will retry: %s", client.name, exc)
            return str(exc)
        except Exception as exc:
            logger.exception("Unexpected error pushing to %s", client.name)
            return f"{type(exc).__name__}: {exc}"
        return len(result.pushed)

    async def _extras(self, items: list[QueueItem]) -> dict[str, Any]:
        types = {i.type for i in items}
        if not types & {QueueItemType.ENERGY_UPDATE, QueueItemType.FOCUS_SESSION}:
            return {}
        raw = await self.adapter.read([ENERGY_KEY, FOCUS_SESSIONS_KEY])
        extras: dict[str, Any] = {}
        if QueueItemType.ENERGY_UPDATE in types and ENERGY_KEY in raw:
            extras["currentEnergyLevel"] = raw[ENERGY_KEY]
        if QueueItemType.FOCUS_SESSION in types:
            extras["focusSessions"] = list(raw.get(FOCUS_SESSIONS_KEY) or [])
        return extras

    @staticmethod
    def _payload_task(item: QueueItem) -> Task | None:
        raw = item.payload.get("task")
        if raw is None:
            return None
        try:
            return Task.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Queue item #%d carries an unreadable task: %s", item.id, exc)
            return None

    # ------------------------------------------------------------------
    # Local mutations
    # ------------------------------------------------------------------

    def _notify(self) -> None:
        if self.on_mutation is not None:
            self.on_mutation()

    async def record_local_change(self, task: Task) -> Task:
        """Persist a locally edited task and queue it for every remote.

        ``updated_at`` is bumped if needed so it never goes backwards
        for this id on this surface.
        """
        async with self.adapter.transaction(TASKS_KEY) as state:
            existing = next(
                (t for t in load_tasks(state.get(TASKS_KEY)) if t.id == task.id), None
            )
            update: dict[str, Any] = {"source": self.source}
            if existing is not None:
                update["created_at"] = existing.created_at
                update["last_push_time"] = existing.last_push_time
                if task.updated_at <= existing.updated_at:
                    update["updated_at"] = next_timestamp(existing.updated_at)
            if existing is None or existing.sync_status != SyncStatus.CONFLICT:
                update["sync_status"] = SyncStatus.PENDING
            task = task.model_copy(update=update)
            state[TASKS_KEY] = upsert_stored(state.get(TASKS_KEY), task)

        await self.queue.enqueue(QueueItemType.TASK_UPDATE, {"task": task.to_store()})
        self._notify()
        return task

    async def upsert_task(self, task_id: str | None = None, **fields: Any) -> Task:
        """Create a task, or edit the existing one with *task_id*."""
        existing = await self.adapter.task(task_id) if task_id else None
        if existing is not None:
            task = existing.edit(source=self.source, **fields)
        else:
            if task_id:
                fields["id"] = task_id
            title = fields.pop("title", "")
            task = Task.new(title, source=self.source, **fields)
        return await self.record_local_change(task)

    async def record_energy_level(self, level: int) -> None:
        await self.adapter.write({ENERGY_KEY: level})
        await self.queue.enqueue(QueueItemType.ENERGY_UPDATE, {"level": level})
        self._notify()

    async def record_focus_session(self, session: dict[str, Any]) -> None:
        session = {**session, "updatedAt": wire_time(utc_now())}
        async with self.adapter.transaction(FOCUS_SESSIONS_KEY) as state:
            state[FOCUS_SESSIONS_KEY] = merge_focus_sessions(
                list(state.get(FOCUS_SESSIONS_KEY) or []), [session]
            )
        await self.queue.enqueue(QueueItemType.FOCUS_SESSION, {"session": session})
        self._notify()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def status(self) -> dict[str, Any]:
        """Summary of local sync state for status indicators."""
        tasks = await self.adapter.tasks()
        last_sync = await self.adapter.last_sync_time()
        by_source: dict[str, int] = {}
        for task in tasks:
            by_source[task.source] = by_source.get(task.source, 0) + 1
        return {
            "source": self.source,
            "remotes": [c.name for c in self.clients],
            "lastSyncTime": wire_time(last_sync) if last_sync else None,
            "queueLength": len(await self.queue.pending()),
            "deadLetters": len(await self.queue.dead_letters()),
            "pendingConflicts": len(await self.adapter.conflicts()),
            "tasks": {
                "total": len(tasks),
                "completed": sum(1 for t in tasks if t.completed),
                "pending": sum(1 for t in tasks if t.sync_status == SyncStatus.PENDING),
                "bySource": by_source,
            },
        }


_EXTRA_TYPES = {
    "currentEnergyLevel": QueueItemType.ENERGY_UPDATE,
    "focusSessions": QueueItemType.FOCUS_SESSION,
}
