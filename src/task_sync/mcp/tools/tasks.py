"""MCP tool handlers for reading and editing local tasks.

- ``task_list`` -- tasks from the local store, optionally filtered.
- ``task_upsert`` -- create or edit a task as a local mutation (written,
  queued, and synced after the debounce period).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import mcp.types as types

from ...sync.models import Task
from .registry import ToolSpec

if TYPE_CHECKING:
    from ...service import SyncService

_EDITABLE = {
    "title": "title",
    "description": "description",
    "priority": "priority",
    "status": "status",
    "estimated_minutes": "estimated_minutes",
    "estimatedMinutes": "estimated_minutes",
    "actual_minutes": "actual_minutes",
    "actualMinutes": "actual_minutes",
}


def _format_task(task: Task) -> str:
    mark = "x" if task.completed else " "
    flag = "" if task.sync_status.value == "synced" else f" [{task.sync_status.value}]"
    return f"[{mark}] {task.title} ({task.priority.value}, {task.status.value}) id={task.id}{flag}"


async def _handle_task_list(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    tasks = await service.adapter.tasks()
    status = args.get("status")
    if status:
        tasks = [t for t in tasks if t.status.value == status]
    sync_status = args.get("sync_status")
    if sync_status:
        tasks = [t for t in tasks if t.sync_status.value == sync_status]

    text = "\n".join(_format_task(t) for t in tasks) if tasks else "No tasks."
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        structuredContent={"tasks": [t.to_store() for t in tasks]},
    )


async def _handle_task_upsert(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    task_id = args.get("id")
    fields = {_EDITABLE[k]: v for k, v in args.items() if k in _EDITABLE}
    if not task_id and not fields.get("title"):
        raise ValueError("title is required when creating a task")
    if task_id and not fields:
        raise ValueError("provide at least one field to change")

    task = await service.engine.upsert_task(task_id, **fields)
    return types.CallToolResult(
        content=[
            types.TextContent(
                type="text", text=f"Saved locally and queued for sync: {_format_task(task)}"
            )
        ],
        structuredContent={"task": task.to_store()},
    )


TASK_SPECS: list[ToolSpec] = [
    ToolSpec(
        tool=types.Tool(
            name="task_list",
            description="List tasks held in the local store.",
            annotations=types.ToolAnnotations(
                readOnlyHint=True,
                destructiveHint=False,
                idempotentHint=True,
                openWorldHint=False,
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "status": {
                        "type": "string",
                        "enum": ["todo", "in-progress", "done"],
                    },
                    "sync_status": {
                        "type": "string",
                        "enum": ["pending", "synced", "conflict"],
                    },
                },
                "required": [],
            },
        ),
        mutating=False,
        handler=_handle_task_list,
    ),
    ToolSpec(
        tool=types.Tool(
            name="task_upsert",
            description=(
                "Create a task (omit id) or edit an existing one. The change "
                "is saved locally first and pushed to every remote shortly after."
            ),
            annotations=types.ToolAnnotations(
                readOnlyHint=False,
                destructiveHint=False,
                idempotentHint=False,
                openWorldHint=False,
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "id": {"type": "string", "description": "Existing task id"},
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "priority": {"type": "string", "enum": ["low", "medium", "high"]},
                    "status": {
                        "type": "string",
                        "enum": ["todo", "in-progress", "done"],
                    },
                    "estimated_minutes": {"type": "number", "minimum": 0},
                    "actual_minutes": {"type": "number", "minimum": 0},
                },
                "required": [],
            },
        ),
        mutating=True,
        handler=_handle_task_upsert,
    ),
]
