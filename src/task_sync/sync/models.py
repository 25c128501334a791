"""Pydantic models for the task sync core.

Defines the data contracts shared by every sync module:

- ``Task``: the unit of synchronization.
- ``FieldDiff`` / ``ConflictRecord``: a surfaced divergence between two
  independently modified copies of the same task.
- ``Resolution``: a manual decision closing a conflict.
- ``QueueItem``: a durable unit of outbound work.
- ``PushResult`` / ``PullResult``: what a remote returned for one call.
- ``RemoteOutcome`` / ``CycleReport``: aggregate results of a sync cycle.

Field names are snake_case in Python and camelCase on disk and on the
wire (``alias_generator=to_camel``), matching the persisted state read
by the UI layer.  Records are frozen; edits go through ``model_copy``.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, computed_field, field_validator
from pydantic.alias_generators import to_camel

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_MODEL_CONFIG = {
    "frozen": True,
    "populate_by_name": True,
    "alias_generator": to_camel,
}


def utc_now() -> datetime:
    """Return the current UTC time, truncated to wire (millisecond) precision."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_timestamp(*previous: datetime | None) -> datetime:
    """Return a timestamp strictly after every value in *previous*.

    Uses the wall clock when it is already ahead, so ``updatedAt`` never
    decreases within one surface even if the clock steps backwards.
    """
    now = utc_now()
    known = [as_utc(p) for p in previous if p is not None]
    if not known:
        return now
    floor = max(known) + timedelta(milliseconds=1)
    return max(now, floor)


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    DONE = "done"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    CONFLICT = "conflict"


class ResolutionStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"


class ResolutionAction(str, Enum):
    USE_LOCAL = "use_local"
    USE_REMOTE = "use_remote"
    MERGE = "merge"


class QueueItemType(str, Enum):
    TASK_UPDATE = "task-update"
    ENERGY_UPDATE = "energy-update"
    FOCUS_SESSION = "focus-session"


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------


class Task(BaseModel):
    """A task record as held by one surface.

    Attributes:
        id: Canonical identifier shared by all surfaces.
        title: Short task title.
        description: Free-form description.
        priority: low / medium / high.
        status: todo / in-progress / done.
        estimated_minutes: Planned effort.
        actual_minutes: Tracked effort.
        created_at: Creation time (UTC).
        updated_at: Last modification time (UTC); non-decreasing per
            surface for a given id.
        source: Surface that most recently originated the record.
        sync_status: pending / synced / conflict.
        last_push_time: Remote name -> ``updated_at`` of the version last
            acknowledged by that remote.
    """

    id: str
    title: str = ""
    description: str = ""
    priority: Priority = Priority.MEDIUM
    status: TaskStatus = TaskStatus.TODO
    estimated_minutes: int | float = 30
    actual_minutes: int | float = 0
    created_at: datetime = EPOCH
    updated_at: datetime = EPOCH
    source: str = "unknown"
    sync_status: SyncStatus = SyncStatus.PENDING
    last_push_time: dict[str, datetime] = {}

    model_config = _MODEL_CONFIG

    @field_validator("created_at", "updated_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return as_utc(value)

    @field_validator("estimated_minutes", "actual_minutes")
    @classmethod
    def _whole_minutes(cls, value: int | float) -> int | float:
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return value

    @field_validator("last_push_time")
    @classmethod
    def _aware_push_times(
        cls, value: dict[str, datetime]
    ) -> dict[str, datetime]:
        return {remote: as_utc(ts) for remote, ts in value.items()}

    @computed_field  # type: ignore[prop-decorator]
    @property
    def completed(self) -> bool:
        """Derived flag: ``status == done``."""
        return self.status == TaskStatus.DONE

    @classmethod
    def new(cls, title: str, *, source: str, **fields: Any) -> Task:
        """Create a fresh local task with a stable UUID and default fields."""
        now = utc_now()
        fields.setdefault("id", uuid.uuid4().hex)
        fields.setdefault("created_at", now)
        fields.setdefault("updated_at", now)
        return cls(title=title, source=source, **fields)

    def edit(self, *, source: str | None = None, **changes: Any) -> Task:
        """Return a locally modified copy with a bumped ``updated_at``.

        The copy is re-validated so enum strings and ISO timestamps in
        *changes* are coerced like any other input.
        """
        data = self.model_dump()
        data.pop("completed", None)
        data.update(changes)
        data["updated_at"] = next_timestamp(self.updated_at)
        data["sync_status"] = SyncStatus.PENDING
        if source is not None:
            data["source"] = source
        return Task.model_validate(data)

    def pushed_to(self, remote: str, version: datetime) -> Task:
        """Return a copy recording that *remote* holds *version*."""
        known = self.last_push_time.get(remote)
        if known is not None and known >= version:
            return self
        return self.model_copy(
            update={"last_push_time": {**self.last_push_time, remote: version}}
        )

    def needs_push(self, remote: str) -> bool:
        """True when this version is newer than what *remote* last acked."""
        known = self.last_push_time.get(remote)
        return known is None or self.updated_at > known

    def content_hash(self) -> str:
        """SHA-256 over the user-visible content fields.

        Sync bookkeeping (``source``, ``sync_status``, ``last_push_time``)
        is excluded so two surfaces holding the same content agree.
        """
        content = self.model_dump(
            mode="json",
            by_alias=True,
            include={
                "id",
                "title",
                "description",
                "priority",
                "status",
                "estimated_minutes",
                "actual_minutes",
            },
        )
        canonical = json.dumps(content, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_store(self) -> dict[str, Any]:
        """Serialise to the camelCase JSON shape kept in the local store."""
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class FieldDiff(BaseModel):
    """One differing field between a local and a remote task."""

    field: str
    local_value: Any = None
    remote_value: Any = None

    model_config = _MODEL_CONFIG


class ConflictRecord(BaseModel):
    """Two divergent versions of one task, both modified since last sync.

    Attributes:
        id: Conflict identifier (``conflict_<taskId>_<suffix>``).
        task_id: Id of the task in conflict.
        remote: Name of the remote holding ``remote_snapshot``.
        created_at: Detection time.
        field_diffs: Fields that differ.
        local_snapshot: Full local record at detection time.
        remote_snapshot: Full remote record at detection time.
        resolution_status: pending / resolved.
        resolved_at: When the conflict was closed.
        resolution: Action or policy that closed it.
    """

    id: str
    task_id: str
    remote: str
    created_at: datetime
    field_diffs: list[FieldDiff]
    local_snapshot: Task
    remote_snapshot: Task
    resolution_status: ResolutionStatus = ResolutionStatus.PENDING
    resolved_at: datetime | None = None
    resolution: str | None = None

    model_config = _MODEL_CONFIG

    @classmethod
    def create(
        cls,
        local: Task,
        remote: Task,
        remote_name: str,
        diffs: list[FieldDiff],
    ) -> ConflictRecord:
        return cls(
            id=f"conflict_{local.id}_{uuid.uuid4().hex[:8]}",
            task_id=local.id,
            remote=remote_name,
            created_at=utc_now(),
            field_diffs=diffs,
            local_snapshot=local,
            remote_snapshot=remote,
        )

    def resolved(self, how: str) -> ConflictRecord:
        return self.model_copy(
            update={
                "resolution_status": ResolutionStatus.RESOLVED,
                "resolved_at": utc_now(),
                "resolution": how,
            }
        )

    def to_store(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Resolution(BaseModel):
    """Manual decision supplied by an external caller."""

    action: ResolutionAction
    merged_record: Task | None = None

    model_config = _MODEL_CONFIG


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


class QueueItem(BaseModel):
    """Durable unit of outbound work.

    Attributes:
        id: Monotonically increasing local sequence number.
        type: task-update / energy-update / focus-session.
        payload: Item body (for task-update, ``{"task": {...}}``).
        enqueued_at: When the item was persisted.
        attempts: Failed processing attempts so far.
        next_attempt_at: Earliest time the item is due again.
        last_error: Message from the most recent failure.
    """

    id: int
    type: QueueItemType
    payload: dict[str, Any] = {}
    enqueued_at: datetime
    attempts: int = 0
    next_attempt_at: datetime | None = None
    last_error: str | None = None

    model_config = _MODEL_CONFIG

    def is_due(self, now: datetime) -> bool:
        return self.next_attempt_at is None or self.next_attempt_at <= now

    @property
    def task_id(self) -> str | None:
        if self.type != QueueItemType.TASK_UPDATE:
            return None
        task = self.payload.get("task") or {}
        task_id = task.get("id", self.payload.get("id"))
        return str(task_id) if task_id is not None else None

    def to_store(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Remote call results
# ---------------------------------------------------------------------------


class PushResult(BaseModel):
    """Outcome of one successful ``push`` call.

    Attributes:
        remote: Remote name.
        pushed: Task id -> ``updated_at`` of the version sent.
        skipped: Tasks filtered out as already acknowledged.
        response: Remote ``data`` payload, passed through for reporting.
    """

    remote: str
    pushed: dict[str, datetime] = {}
    skipped: int = 0
    response: dict[str, Any] = {}

    model_config = _MODEL_CONFIG


class PullResult(BaseModel):
    """Outcome of one successful ``pull`` call.

    Attributes:
        remote: Remote name.
        tasks: Records mapped into the local shape.
        cursor: New cursor to persist for the next pull.
        extras: Non-task state the remote sent (energy level, sessions).
        remote_conflicts: Conflicts the remote reported on its side.
        malformed: Records dropped because they had no usable id.
    """

    remote: str
    tasks: list[Task] = []
    cursor: str | None = None
    extras: dict[str, Any] = {}
    remote_conflicts: list[dict[str, Any]] = []
    malformed: int = 0

    model_config = _MODEL_CONFIG


class RemoteOutcome(BaseModel):
    """Per-remote result of a sync cycle."""

    remote: str
    pulled: int = 0
    pushed: int = 0
    pull_error: str | None = None
    push_error: str | None = None

    model_config = _MODEL_CONFIG

    @property
    def ok(self) -> bool:
        return self.pull_error is None and self.push_error is None


class CycleReport(BaseModel):
    """Aggregate report for one sync cycle.

    Attributes:
        source: Name of this surface.
        started_at: Cycle start (also the new ``lastSyncTime`` on success).
        completed_at: Cycle end.
        outcomes: One entry per remote.
        merged: Ids of tasks updated locally from remote data.
        conflicts: Conflicts raised during this cycle.
        auto_resolved: Conflicts closed by the automatic policy.
        queue_processed: Queue items acknowledged.
        queue_failed: Queue items that stay queued for retry.
        dead_lettered: Queue items moved to the dead-letter list.
        pending_conflicts: Conflicts awaiting manual resolution after
            the cycle.
    """

    source: str
    started_at: datetime
    completed_at: datetime | None = None
    outcomes: list[RemoteOutcome] = []
    merged: list[str] = []
    conflicts: list[ConflictRecord] = []
    auto_resolved: int = 0
    queue_processed: int = 0
    queue_failed: int = 0
    dead_lettered: int = 0
    pending_conflicts: int = 0

    model_config = _MODEL_CONFIG

    @property
    def errors(self) -> list[RemoteOutcome]:
        """Outcomes where either direction failed."""
        return [o for o in self.outcomes if not o.ok]

    @property
    def ok(self) -> bool:
        return not self.errors
