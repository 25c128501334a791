"""Error response builders for MCP tool handlers.

Errors are returned as structured results with a corrective action so an
agent can recover without human intervention; they are never raised to
the transport.
"""

import mcp.types as types
from pydantic import ValidationError

from ...errors import QueueError, RemoteError, StoreError


def build_error_response(
    error_type: str, message: str, corrective_action: str
) -> types.CallToolResult:
    """Build a structured error response with corrective action.

    Args:
        error_type: Error category (not_found, validation_error,
            remote_error, storage_error, server_error)
        message: Human-readable error description
        corrective_action: Specific action the agent can take to resolve the error

    Returns:
        CallToolResult with isError=True

    Examples:
        >>> build_error_response("not_found", "Task abc not found", "Use task_list to see task ids.")
        CallToolResult(content=[TextContent(...)], isError=True)
    """
    error_text = f"Error ({error_type}): {message}\n\nAction: {corrective_action}"

    return types.CallToolResult(
        content=[types.TextContent(type="text", text=error_text)],
        isError=True,
    )


def translate_sync_error(error: Exception) -> types.CallToolResult:
    """Map a sync-core exception to a structured error response."""
    match error:
        case RemoteError():
            return build_error_response(
                "remote_error",
                str(error),
                f"The {error.remote} remote is unreachable; local changes stay "
                "queued. Retry later or check sync_status.",
            )
        case StoreError():
            return build_error_response(
                "storage_error",
                str(error),
                "Check that the state file is writable and not corrupted, then retry.",
            )
        case QueueError():
            return build_error_response(
                "validation_error",
                str(error),
                "Use one of: task-update, energy-update, focus-session.",
            )
        case ValidationError():
            return build_error_response(
                "validation_error",
                str(error),
                "Check field names and values (priority: low|medium|high, "
                "status: todo|in-progress|done) and retry.",
            )
        case ValueError():
            return build_error_response(
                "validation_error",
                str(error),
                "Check parameter values and retry.",
            )
        case _:
            return build_error_response(
                "server_error",
                str(error),
                "Check the server log and retry.",
            )
