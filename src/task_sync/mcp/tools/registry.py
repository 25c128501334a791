"""ToolSpec and ToolRegistry for MCP tool dispatch.

Key concepts:
- ToolSpec: Immutable dataclass linking a Tool definition, whether the tool
  mutates local state, and an async handler with standardized signature
  (service, args) -> CallToolResult.
- ToolRegistry: Drops mutating specs in read-only mode at construction time,
  then provides list_tools() and call_tool() dispatch with error translation.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import mcp.types as types

if TYPE_CHECKING:
    from ...service import SyncService

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """Immutable specification for a single MCP tool.

    Attributes:
        tool: The MCP Tool definition (name, description, inputSchema).
        mutating: True if the tool writes local state or triggers sync.
        handler: Async handler with signature (service, args) -> CallToolResult.
    """

    tool: types.Tool
    mutating: bool
    handler: Callable[["SyncService", dict], Awaitable[types.CallToolResult]]


class ToolRegistry:
    """Registry of ToolSpecs; read-only mode hides mutating tools."""

    def __init__(self, specs: list[ToolSpec], read_only: bool = False):
        self.read_only = read_only
        self._specs: dict[str, ToolSpec] = {
            spec.tool.name: spec
            for spec in specs
            if not (read_only and spec.mutating)
        }

    def list_tools(self) -> list[types.Tool]:
        """Return list of types.Tool for all registered specs."""
        return [spec.tool for spec in self._specs.values()]

    def tool_count(self) -> int:
        """Return number of registered tools."""
        return len(self._specs)

    async def call_tool(
        self,
        name: str,
        arguments: dict | None,
        service: "SyncService",
    ) -> types.CallToolResult:
        """Dispatch tool call to registered handler.

        Sync-core exceptions are translated into structured
        CallToolResult responses with corrective actions.

        Raises:
            ValueError: If tool name is not registered (unknown or hidden).
        """
        from .errors import translate_sync_error

        spec = self._specs.get(name)
        if spec is None:
            raise ValueError(f"Unknown tool: {name}")
        args = arguments or {}
        try:
            return await spec.handler(service, args)
        except Exception as e:
            if not isinstance(e, ValueError):
                logger.exception("Error in tool %s", name)
            return translate_sync_error(e)
