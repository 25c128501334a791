"""Pairwise conflict detection between a local and a remote task.

A conflict means both sides were modified independently since the two
surfaces last agreed: at least one mutable field differs, and both
``updated_at`` values are strictly after the last common sync time.
If only one side moved, there is no conflict; the changed side simply
supersedes the other.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from .models import ConflictRecord, FieldDiff, Task

logger = logging.getLogger(__name__)

# (attribute, wire name)
MUTABLE_FIELDS: tuple[tuple[str, str], ...] = (
    ("title", "title"),
    ("description", "description"),
    ("priority", "priority"),
    ("status", "status"),
    ("estimated_minutes", "estimatedMinutes"),
)


def _plain(value: Any) -> Any:
    return getattr(value, "value", value)


def field_diffs(local: Task, remote: Task) -> list[FieldDiff]:
    """Differences in the mutable fields, in a fixed field order."""
    diffs = []
    for attr, wire_name in MUTABLE_FIELDS:
        local_value = _plain(getattr(local, attr))
        remote_value = _plain(getattr(remote, attr))
        if local_value != remote_value:
            diffs.append(
                FieldDiff(
                    field=wire_name,
                    local_value=local_value,
                    remote_value=remote_value,
                )
            )
    return diffs


def modified_since(task: Task, last_sync_time: datetime | None) -> bool:
    """True if *task* changed after *last_sync_time* (or no sync yet)."""
    return last_sync_time is None or task.updated_at > last_sync_time


class ConflictDetector:
    """Compares same-id records against the last common sync point."""

    def detect(
        self,
        local: Task,
        remote: Task,
        last_sync_time: datetime | None,
        remote_name: str = "remote",
    ) -> ConflictRecord | None:
        """Return a conflict record, or ``None`` when there is nothing to surface.

        Args:
            local: This surface's copy.
            remote: The remote's copy of the same task.
            last_sync_time: Last time the surfaces were known to agree;
                ``None`` means they never synced.
            remote_name: Remote the copy came from.

        Raises:
            ValueError: If the two records have different ids.
        """
        if local.id != remote.id:
            raise ValueError(
                f"Cannot compare different tasks: {local.id!r} vs {remote.id!r}"
            )
        diffs = field_diffs(local, remote)
        if not diffs:
            return None
        if not (
            modified_since(local, last_sync_time)
            and modified_since(remote, last_sync_time)
        ):
            return None

        conflict = ConflictRecord.create(local, remote, remote_name, diffs)
        logger.info(
            "Conflict on task %s with %s: %s",
            local.id,
            remote_name,
            ", ".join(d.field for d in diffs),
        )
        return conflict
