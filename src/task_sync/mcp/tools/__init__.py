"""MCP tool handlers for the sync service.

This package contains MCP tool implementations that wrap the sync
service with async handlers and structured error responses.
"""

from .conflicts import CONFLICT_SPECS
from .errors import build_error_response, translate_sync_error
from .registry import ToolRegistry, ToolSpec
from .sync import SYNC_SPECS
from .tasks import TASK_SPECS

ALL_SPECS: list[ToolSpec] = SYNC_SPECS + TASK_SPECS + CONFLICT_SPECS

__all__ = [
    "build_error_response",
    "translate_sync_error",
    # Registry
    "ToolSpec",
    "ToolRegistry",
    # Spec lists
    "ALL_SPECS",
    "CONFLICT_SPECS",
    "SYNC_SPECS",
    "TASK_SPECS",
]
