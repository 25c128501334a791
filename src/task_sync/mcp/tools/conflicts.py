"""MCP tool handlers for manual conflict resolution.

- ``conflict_list`` -- pending conflicts with their field-level diffs.
- ``conflict_resolve`` -- close one with use_local, use_remote or merge.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import mcp.types as types

from ...sync.models import Resolution
from ...sync.reporter import format_conflict
from .registry import ToolSpec

if TYPE_CHECKING:
    from ...service import SyncService


async def _handle_conflict_list(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    conflicts = await service.adapter.conflicts()
    if conflicts:
        text = "\n\n".join(format_conflict(c) for c in conflicts)
    else:
        text = "No pending conflicts."
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        structuredContent={"conflicts": [c.to_store() for c in conflicts]},
    )


async def _handle_conflict_resolve(
    service: SyncService, args: dict[str, Any]
) -> types.CallToolResult:
    conflict_id = args.get("conflict_id")
    if not conflict_id:
        raise ValueError("conflict_id is required")
    resolution = Resolution.model_validate(
        {"action": args.get("action"), "merged_record": args.get("merged_record")}
    )

    task = await service.resolver.resolve_conflict(conflict_id, resolution)
    if task is None:
        return types.CallToolResult(
            content=[
                types.TextContent(
                    type="text",
                    text=f"Conflict {conflict_id} is not pending; nothing to do.",
                )
            ],
            structuredContent={"resolved": False, "conflict_id": conflict_id},
        )

    service.scheduler.notify_mutation()
    return types.CallToolResult(
        content=[
            types.TextContent(
                type="text",
                text=(
                    f"Resolved {conflict_id} ({resolution.action.value}); "
                    f"'{task.title}' queued for every remote."
                ),
            )
        ],
        structuredContent={
            "resolved": True,
            "conflict_id": conflict_id,
            "task": task.to_store(),
        },
    )


CONFLICT_SPECS: list[ToolSpec] = [
    ToolSpec(
        tool=types.Tool(
            name="conflict_list",
            description="List conflicts awaiting manual resolution.",
            annotations=types.ToolAnnotations(
                readOnlyHint=True,
                destructiveHint=False,
                idempotentHint=True,
                openWorldHint=False,
            ),
            inputSchema={"type": "object", "properties": {}, "required": []},
        ),
        mutating=False,
        handler=_handle_conflict_list,
    ),
    ToolSpec(
        tool=types.Tool(
            name="conflict_resolve",
            description=(
                "Resolve a pending conflict. use_local keeps this surface's "
                "copy, use_remote takes the remote copy, merge writes "
                "merged_record. The result is propagated to every remote. "
                "Resolving an already-resolved conflict is a no-op."
            ),
            annotations=types.ToolAnnotations(
                readOnlyHint=False,
                destructiveHint=True,
                idempotentHint=True,
                openWorldHint=False,
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "conflict_id": {"type": "string"},
                    "action": {
                        "type": "string",
                        "enum": ["use_local", "use_remote", "merge"],
                    },
                    "merged_record": {
                        "type": "object",
                        "description": "Full task record (required for merge)",
                    },
                },
                "required": ["conflict_id", "action"],
            },
        ),
        mutating=True,
        handler=_handle_conflict_resolve,
    ),
]
