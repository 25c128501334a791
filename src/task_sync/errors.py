"""Exception taxonomy for the sync core.

Only store failures propagate to callers.  Remote failures are caught
per remote by the engine and reported as non-fatal outcomes, so one
unreachable surface never blocks synchronization with the others.
"""

from __future__ import annotations


class TaskSyncError(Exception):
    """Base class for all sync-core errors."""


class StoreError(TaskSyncError):
    """Reading durable local state failed."""


class StoreWriteError(StoreError):
    """A durable write failed; the patch was not applied."""


class QueueError(TaskSyncError):
    """Invalid change queue operation."""


class RemoteError(TaskSyncError):
    """Transient failure talking to a remote surface.

    Covers timeouts, connection errors, non-2xx responses and response
    bodies that are not JSON.

    Attributes:
        remote: Name of the remote that failed.
        status: HTTP status code, when the remote answered at all.
    """

    def __init__(
        self, remote: str, message: str, status: int | None = None
    ) -> None:
        super().__init__(f"{remote}: {message}")
        self.remote = remote
        self.status = status
