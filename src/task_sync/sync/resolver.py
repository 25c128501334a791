"""Conflict resolution: automatic policies and manual decisions.

The default automatic rule is whole-record newest-``updated_at``-wins
(``newest_wins``).  Equal timestamps are broken deterministically: the
record whose ``source`` sorts greater wins, then the record with the
greater content hash.

Policies decide what happens to a *detected* conflict:

- ``ManualPolicy``: leave it pending for an external decision.
- ``NewestWinsPolicy``: apply ``newest_wins``.
- ``LocalWinsPolicy`` / ``RemoteWinsPolicy``: always pick one side.

The ``create_policy()`` factory maps config strategy strings to policy
instances.  ``ResolutionEngine`` writes the chosen record back as a new
authoritative version and re-enqueues it so every remote converges.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from .models import (
    ConflictRecord,
    QueueItemType,
    Resolution,
    ResolutionAction,
    ResolutionStatus,
    SyncStatus,
    Task,
    next_timestamp,
)
from .queue import ChangeQueue
from .store import (
    CONFLICTS_KEY,
    TASKS_KEY,
    StoreAdapter,
    load_conflicts,
    upsert_stored,
)

logger = logging.getLogger(__name__)


def newest_wins(local: Task, remote: Task) -> Task:
    """Pick the record that fully replaces the other.

    The newer ``updated_at`` wins outright.  On an exact tie, identical
    content keeps *local*; otherwise the greater ``source`` name wins,
    then the greater content hash.
    """
    if local.updated_at != remote.updated_at:
        return local if local.updated_at > remote.updated_at else remote
    local_hash, remote_hash = local.content_hash(), remote.content_hash()
    if local_hash == remote_hash:
        return local
    if local.source != remote.source:
        return local if local.source > remote.source else remote
    return local if local_hash > remote_hash else remote


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


class ConflictPolicy(Protocol):
    """Protocol that all automatic conflict policies must satisfy."""

    name: str

    def choose(self, conflict: ConflictRecord) -> Task | None:
        """Return the winning snapshot, or ``None`` to leave it pending."""
        ...  # pragma: no cover


class ManualPolicy:
    """Never decide; every conflict waits for ``resolve_conflict``."""

    name = "manual"

    def choose(self, conflict: ConflictRecord) -> Task | None:
        return None


class NewestWinsPolicy:
    """Newest ``updated_at`` wins, with the deterministic tie-break."""

    name = "newest-wins"

    def choose(self, conflict: ConflictRecord) -> Task | None:
        return newest_wins(conflict.local_snapshot, conflict.remote_snapshot)


class LocalWinsPolicy:
    """Always keep this surface's copy."""

    name = "local-wins"

    def choose(self, conflict: ConflictRecord) -> Task | None:
        return conflict.local_snapshot


class RemoteWinsPolicy:
    """Always take the remote copy."""

    name = "remote-wins"

    def choose(self, conflict: ConflictRecord) -> Task | None:
        return conflict.remote_snapshot


_STRATEGY_MAP: dict[str, type] = {
    "manual": ManualPolicy,
    "newest-wins": NewestWinsPolicy,
    "local-wins": LocalWinsPolicy,
    "remote-wins": RemoteWinsPolicy,
}

STRATEGIES = tuple(_STRATEGY_MAP)


def create_policy(strategy: str) -> ConflictPolicy:
    """Create a conflict policy for the given strategy string.

    Raises:
        ValueError: If the strategy string is not recognised.
    """
    cls = _STRATEGY_MAP.get(strategy)
    if cls is None:
        raise ValueError(
            f"Unknown conflict strategy: '{strategy}'. Valid strategies: {sorted(_STRATEGY_MAP.keys())}"
        )
    return cls()  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ResolutionEngine:
    """Applies automatic policies and manual decisions to conflicts.

    Args:
        adapter: Store adapter holding ``tasks`` and ``syncConflicts``.
        queue: Outbound queue used to propagate resolutions.
        source: Name of this surface, stamped on resolved records.
        policy: Automatic policy; defaults to ``ManualPolicy``.
    """

    def __init__(
        self,
        adapter: StoreAdapter,
        queue: ChangeQueue,
        *,
        source: str,
        policy: ConflictPolicy | None = None,
    ) -> None:
        self._adapter = adapter
        self._queue = queue
        self.source = source
        self.policy = policy or ManualPolicy()

    def auto_resolve(self, conflict: ConflictRecord) -> Task | None:
        """Winner chosen by the automatic policy, if it decides at all."""
        return self.policy.choose(conflict)

    def authoritative(self, conflict: ConflictRecord, chosen: Task) -> Task:
        """Stamp *chosen* as a new local version newer than both snapshots.

        ``last_push_time`` is cleared so the record is pushed to every
        remote, including the one it came from.
        """
        return chosen.model_copy(
            update={
                "id": conflict.task_id,
                "created_at": conflict.local_snapshot.created_at,
                "updated_at": next_timestamp(
                    conflict.local_snapshot.updated_at,
                    conflict.remote_snapshot.updated_at,
                ),
                "source": self.source,
                "sync_status": SyncStatus.PENDING,
                "last_push_time": {},
            }
        )

    def apply_to_state(
        self,
        state: dict[str, Any],
        conflict: ConflictRecord,
        chosen: Task,
        how: str,
    ) -> Task:
        """Write the resolution into an open store transaction.

        Replaces the task and drops every pending conflict for it.
        """
        task = self.authoritative(conflict, chosen)
        state[TASKS_KEY] = upsert_stored(state.get(TASKS_KEY), task)
        state[CONFLICTS_KEY] = [
            c.to_store()
            for c in load_conflicts(state.get(CONFLICTS_KEY))
            if c.task_id != conflict.task_id
        ]
        logger.info(
            "Resolved conflict %s on task %s (%s)", conflict.id, conflict.task_id, how
        )
        return task

    async def resolve_conflict(
        self, conflict_id: str, resolution: Resolution | dict[str, Any]
    ) -> Task | None:
        """Close a pending conflict with an external decision.

        Args:
            conflict_id: Id of the pending conflict.
            resolution: ``use_local``, ``use_remote`` or ``merge`` (with a
                ``mergedRecord``).

        Returns:
            The new authoritative task, or ``None`` if no pending
            conflict has that id (already resolved or never existed).

        Raises:
            ValueError: For ``merge`` without a merged record, or a merged
                record for a different task.
        """
        if not isinstance(resolution, Resolution):
            resolution = Resolution.model_validate(resolution)
        if resolution.action == ResolutionAction.MERGE and resolution.merged_record is None:
            raise ValueError("merge resolution requires a mergedRecord")

        async with self._adapter.transaction(TASKS_KEY, CONFLICTS_KEY) as state:
            conflict = next(
                (
                    c
                    for c in load_conflicts(state.get(CONFLICTS_KEY))
                    if c.id == conflict_id
                    and c.resolution_status == ResolutionStatus.PENDING
                ),
                None,
            )
            if conflict is None:
                logger.info("Conflict %s not pending; nothing to resolve", conflict_id)
                return None

            match resolution.action:
                case ResolutionAction.USE_LOCAL:
                    chosen = conflict.local_snapshot
                case ResolutionAction.USE_REMOTE:
                    chosen = conflict.remote_snapshot
                case _:
                    chosen = resolution.merged_record
                    if chosen.id != conflict.task_id:
                        raise ValueError(
                            f"mergedRecord id {chosen.id!r} does not match task {conflict.task_id!r}"
                        )
            task = self.apply_to_state(state, conflict, chosen, resolution.action.value)

        await self._queue.enqueue(QueueItemType.TASK_UPDATE, {"task": task.to_store()})
        return task
