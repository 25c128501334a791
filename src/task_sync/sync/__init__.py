"""Offline-first task sync engine.

Public API for keeping one surface's local task store consistent with a
central backend and a notes bridge.

Architecture
------------
Every local mutation is written to the local store first and recorded in
a durable change queue.  A sync cycle then runs in a fixed order:

1. **pull** from every enabled remote concurrently,
2. **reconcile** each pulled task against the local copy (identical,
   new, newest-wins, or a conflict when both sides changed since the
   last successful sync),
3. **push** queued changes to every remote, retrying failures with
   exponential backoff and dead-lettering items that exhaust their
   attempts.

``lastSyncTime`` only advances when every remote succeeded.

Modules:

- ``models``    -- ``Task``, ``ConflictRecord``, ``QueueItem``,
  ``CycleReport`` and friends: core data contracts.
- ``store``     -- ``StoreAdapter`` over a ``MemoryStore`` or
  ``JsonFileStore`` (atomic writes, async transactions).
- ``queue``     -- ``ChangeQueue``: durable FIFO with backoff and
  dead-letter list.
- ``mapper``    -- wire formats of the backend and the bridge.
- ``clients``   -- ``BackendClient`` and ``BridgeClient``.
- ``detector``  -- ``ConflictDetector``: field-level conflict detection.
- ``resolver``  -- newest-wins merge, conflict policies and manual
  resolution.
- ``engine``    -- ``SyncEngine``: orchestrates a full sync cycle.
- ``scheduler`` -- ``SyncScheduler``: periodic, debounced and
  on-reconnect triggers with coalescing.
- ``reporter``  -- Human-readable and JSON report formatting.

Usage example
-------------
::

    from task_sync.config import load_config
    from task_sync.service import build_service
    from task_sync.sync import format_cycle_report

    service = build_service(load_config(source="desktop"))
    await service.queue.load()

    await service.engine.upsert_task(title="Draft intro", priority="high")
    report = await service.engine.run_cycle()
    print(format_cycle_report(report))
"""

from .clients import BackendClient, BridgeClient, SyncClient
from .detector import ConflictDetector
from .engine import SyncEngine
from .models import (
    ConflictRecord,
    CycleReport,
    QueueItem,
    QueueItemType,
    Resolution,
    ResolutionAction,
    SyncStatus,
    Task,
)
from .queue import ChangeQueue
from .reporter import (
    format_conflict,
    format_cycle_report,
    format_status,
    report_to_json,
)
from .resolver import ResolutionEngine, create_policy, newest_wins
from .scheduler import SchedulerState, SyncScheduler
from .store import JsonFileStore, MemoryStore, StoreAdapter

__all__ = [
    "BackendClient",
    "BridgeClient",
    "ChangeQueue",
    "ConflictDetector",
    "ConflictRecord",
    "CycleReport",
    "JsonFileStore",
    "MemoryStore",
    "QueueItem",
    "QueueItemType",
    "Resolution",
    "ResolutionAction",
    "ResolutionEngine",
    "SchedulerState",
    "StoreAdapter",
    "SyncClient",
    "SyncEngine",
    "SyncScheduler",
    "SyncStatus",
    "Task",
    "create_policy",
    "format_conflict",
    "format_cycle_report",
    "format_status",
    "newest_wins",
    "report_to_json",
]
