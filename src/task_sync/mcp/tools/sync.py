"""MCP tool handlers for running and inspecting sync.

Defines four tools:

- ``sync_now`` -- run (or join) a sync cycle and return its report.
- ``sync_status`` -- status indicator: last sync, queue, conflicts, errors.
- ``dead_letter_list`` -- queue items that exhausted their retries.
- ``dead_letter_requeue`` -- return dead-lettered items to the live queue.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import mcp.types as types

from ...sync.reporter import format_cycle_report, format_status, report_to_json
from .errors import build_error_response
from .registry import ToolSpec

if TYPE_CHECKING:
    from ...service import SyncService



# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def _handle_sync_now(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    report = await service.scheduler.trigger_now()
    if report is None:
        return build_error_response(
            "sync_failed",
            service.scheduler.last_error or "sync cycle did not complete",
            "Local changes stay queued and will be retried automatically. "
            "Check sync_status for details.",
        )
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=format_cycle_report(report))],
        structuredContent=report_to_json(report),
    )


async def _handle_sync_status(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    status = await service.status()
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=format_status(status))],
        structuredContent=status,
    )


async def _handle_dead_letter_list(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    items = await service.queue.dead_letters()
    if not items:
        text = "No dead-lettered changes."
    else:
        lines = [f"{len(items)} change(s) need manual attention:"]
        for item in items:
            target = f" task {item.task_id}" if item.task_id else ""
            lines.append(
                f"  #{item.id} {item.type.value}{target} "
                f"({item.attempts} attempts): {item.last_error}"
            )
        text = "\n".join(lines)
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        structuredContent={"items": [i.to_store() for i in items]},
    )


async def _handle_dead_letter_requeue(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    ids = args.get("ids")
    if ids is not None:
        if not isinstance(ids, list) or not all(isinstance(i, int) for i in ids):
            raise ValueError("ids must be a list of integers")
    moved = await service.queue.requeue_dead_letters(ids)
    if moved:
        service.scheduler.notify_mutation()
    return types.CallToolResult(
        content=[
            types.TextContent(
                type="text", text=f"Requeued {moved} change(s) for the next sync."
            )
        ],
        structuredContent={"requeued": moved},
    )


# ---------------------------------------------------------------------------
# Specs
# ---------------------------------------------------------------------------


SYNC_SPECS: list[ToolSpec] = [
    ToolSpec(
        tool=types.Tool(
            name="sync_now",
            description=(
                "Run a sync cycle now (pull from every remote, reconcile, "
                "push queued changes) and return the cycle report. Joins "
                "the running cycle if one is in progress."
            ),
            annotations=types.ToolAnnotations(
                readOnlyHint=False,
                destructiveHint=False,
                idempotentHint=True,
                openWorldHint=True,
            ),
            inputSchema={"type": "object", "properties": {}, "required": []},
        ),
        mutating=True,
        handler=_handle_sync_now,
    ),
    ToolSpec(
        tool=types.Tool(
            name="sync_status",
            description=(
                "Show sync status: online state, last sync time, queued "
                "changes, dead-lettered changes and pending conflicts."
            ),
            annotations=types.ToolAnnotations(
                readOnlyHint=True,
                destructiveHint=False,
                idempotentHint=True,
                openWorldHint=False,
            ),
            inputSchema={"type": "object", "properties": {}, "required": []},
        ),
        mutating=False,
        handler=_handle_sync_status,
    ),
    ToolSpec(
        tool=types.Tool(
            name="dead_letter_list",
            description="List queued changes that exhausted their retries.",
            annotations=types.ToolAnnotations(
                readOnlyHint=True,
                destructiveHint=False,
                idempotentHint=True,
                openWorldHint=False,
            ),
            inputSchema={"type": "object", "properties": {}, "required": []},
        ),
        mutating=False,
        handler=_handle_dead_letter_list,
    ),
    ToolSpec(
        tool=types.Tool(
            name="dead_letter_requeue",
            description=(
                "Move dead-lettered changes back to the sync queue with "
                "their attempt counters reset. Omit ids to requeue all."
            ),
            annotations=types.ToolAnnotations(
                readOnlyHint=False,
                destructiveHint=False,
                idempotentHint=True,
                openWorldHint=False,
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "ids": {
                        "type": "array",
                        "items": {"type": "integer"},
                        "description": "Queue item ids from dead_letter_list",
                    },
                },
                "required": [],
            },
        ),
        mutating=True,
        handler=_handle_dead_letter_requeue,
    ),
]
