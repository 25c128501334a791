"""Wire-shape mapping between local tasks and each remote.

Outbound mapping is strict (local records are already validated).
Inbound mapping is defensive: every field is read on its own and falls
back to a default when missing or unusable, so a single malformed
remote record never aborts a sync cycle.  The only unrecoverable case
is a record with no id, which the caller drops and counts.

The backend keys tasks by a numeric id.  ``canonical_backend_id``
derives one from the local string id and records it in ``id_map``
(numeric id -> local id) so pulls restore the original string id.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Any

from .models import EPOCH, Priority, SyncStatus, Task, TaskStatus, as_utc

logger = logging.getLogger(__name__)

MAX_SAFE_INTEGER = 2**53 - 1
_HASH_BITS = 52

_DONE_STATUSES = {"done", "completed", "complete"}
_IN_PROGRESS_STATUSES = {"in-progress", "in_progress", "inprogress", "doing"}


# ---------------------------------------------------------------------------
# Canonical id
# ---------------------------------------------------------------------------


def _hash_id(material: str) -> int:
    digest = hashlib.sha256(material.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") >> (64 - _HASH_BITS)


def _is_plain_number(task_id: str) -> bool:
    if not (task_id.isascii() and task_id.isdigit()):
        return False
    return str(int(task_id)) == task_id and int(task_id) <= MAX_SAFE_INTEGER


def canonical_backend_id(task_id: str, id_map: dict[str, str]) -> int:
    """Return the backend's numeric id for *task_id*.

    ASCII decimal ids in canonical form (no leading zeros) within the
    safe integer range map to themselves.  Anything else, including
    ``"007"`` or non-ASCII digits, gets a 52-bit SHA-256 prefix,
    re-hashed with a counter suffix if that number already belongs to
    another task.  New assignments are written into *id_map* (mutated
    in place).
    """
    if _is_plain_number(task_id):
        return int(task_id)

    for number, mapped in id_map.items():
        if mapped == task_id:
            return int(number)

    counter = 0
    while True:
        material = task_id if counter == 0 else f"{task_id}#{counter}"
        number = _hash_id(material)
        owner = id_map.get(str(number))
        if owner is None:
            id_map[str(number)] = task_id
            return number
        counter += 1


def local_id(raw_id: Any, id_map: dict[str, str]) -> str:
    """Map a backend id back to the local string id."""
    key = str(raw_id)
    return id_map.get(key, key)


# ---------------------------------------------------------------------------
# Field readers
# ---------------------------------------------------------------------------


def _pick(raw: dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in raw and raw[name] is not None:
            return raw[name]
    return None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _number(value: Any, default: int | float) -> int | float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return value
    try:
        parsed = float(str(value))
    except (TypeError, ValueError):
        return default
    return int(parsed) if parsed.is_integer() else parsed


def parse_wire_time(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or epoch-milliseconds number."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if text.isdigit():
        return parse_wire_time(int(text))
    try:
        return as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        return None


def wire_time(value: datetime) -> str:
    """Format a timestamp as ISO-8601 UTC with millisecond precision."""
    return as_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _priority(value: Any) -> Priority:
    try:
        return Priority(str(value).lower())
    except ValueError:
        return Priority.MEDIUM


def _status(raw: dict[str, Any]) -> TaskStatus:
    status = raw.get("status")
    if isinstance(status, str):
        lowered = status.strip().lower()
        if lowered in _DONE_STATUSES:
            return TaskStatus.DONE
        if lowered in _IN_PROGRESS_STATUSES:
            return TaskStatus.IN_PROGRESS
        if lowered == "todo":
            return TaskStatus.TODO
    completed = raw.get("completed")
    if isinstance(completed, bool):
        return TaskStatus.DONE if completed else TaskStatus.TODO
    if completed in (1, "1", "true"):
        return TaskStatus.DONE
    return TaskStatus.TODO


def _common_fields(raw: dict[str, Any]) -> dict[str, Any]:
    created = parse_wire_time(_pick(raw, "createdAt", "created_at"))
    updated = parse_wire_time(_pick(raw, "updatedAt", "updated_at"))
    return {
        "title": _text(raw.get("title")),
        "description": _text(raw.get("description")),
        "priority": _priority(raw.get("priority") or "medium"),
        "status": _status(raw),
        "estimated_minutes": _number(
            _pick(raw, "estimatedMinutes", "estimated_minutes"), 30
        ),
        "actual_minutes": _number(_pick(raw, "actualMinutes", "actual_minutes"), 0),
        "created_at": created or updated or EPOCH,
        "updated_at": updated or created or EPOCH,
    }


# ---------------------------------------------------------------------------
# Backend service
# ---------------------------------------------------------------------------


def task_to_backend(task: Task, id_map: dict[str, str]) -> dict[str, Any]:
    """Local task -> backend wire record (numeric id)."""
    return {
        "id": canonical_backend_id(task.id, id_map),
        "title": task.title,
        "description": task.description,
        "priority": task.priority.value,
        "completed": task.completed,
        "status": task.status.value,
        "estimatedMinutes": task.estimated_minutes,
        "actualMinutes": task.actual_minutes,
        "createdAt": wire_time(task.created_at),
        "updatedAt": wire_time(task.updated_at),
    }


def backend_to_task(
    raw: Any, id_map: dict[str, str], remote: str = "backend"
) -> Task | None:
    """Backend wire record -> local task, or ``None`` when it has no id."""
    if not isinstance(raw, dict) or raw.get("id") in (None, ""):
        logger.warning("Skipping %s record without id: %r", remote, raw)
        return None
    source = raw.get("source")
    return Task(
        id=local_id(raw["id"], id_map),
        source=source if isinstance(source, str) and source else remote,
        sync_status=SyncStatus.SYNCED,
        **_common_fields(raw),
    )


# ---------------------------------------------------------------------------
# Plugin-host bridge
# ---------------------------------------------------------------------------


def task_to_bridge(task: Task) -> dict[str, Any]:
    """Local task -> bridge wire record (string ids end-to-end)."""
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "priority": task.priority.value,
        "status": task.status.value,
        "completed": task.completed,
        "estimatedMinutes": task.estimated_minutes,
        "actualMinutes": task.actual_minutes,
        "createdAt": wire_time(task.created_at),
        "updatedAt": wire_time(task.updated_at),
        "source": task.source,
    }


def bridge_to_task(raw: Any, remote: str = "bridge") -> Task | None:
    """Bridge wire record -> local task, or ``None`` when it has no id."""
    if not isinstance(raw, dict) or raw.get("id") in (None, ""):
        logger.warning("Skipping %s record without id: %r", remote, raw)
        return None
    source = raw.get("source")
    return Task(
        id=str(raw["id"]),
        source=source if isinstance(source, str) and source else remote,
        sync_status=SyncStatus.SYNCED,
        **_common_fields(raw),
    )


def merge_focus_sessions(
    current: list[dict[str, Any]], incoming: list[Any]
) -> list[dict[str, Any]]:
    """Union two focus-session lists keyed by ``startTime`` + ``duration``.

    When both lists hold the same session the one with the newer
    ``updatedAt`` is kept.
    """
    merged: dict[str, dict[str, Any]] = {}
    for session in list(current) + list(incoming):
        if not isinstance(session, dict):
            continue
        key = f"{session.get('startTime')}-{session.get('duration')}"
        existing = merged.get(key)
        if existing is None:
            merged[key] = session
            continue
        new_time = parse_wire_time(session.get("updatedAt")) or EPOCH
        old_time = parse_wire_time(existing.get("updatedAt")) or EPOCH
        if new_time > old_time:
            merged[key] = session
    return list(merged.values())
