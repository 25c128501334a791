"""MCP Server for task sync using stdio transport.

This module implements the Model Context Protocol server that exposes one
surface's sync service (status, manual sync, task edits and conflict
resolution) to AI agents via standardized tools.

Transport: stdio
Protocol: JSON-RPC 2.0 over MCP
"""

import argparse
import asyncio
import logging
import sys

import mcp.server.stdio
import mcp.types as types
from mcp.server import NotificationOptions, Server
from mcp.server.models import InitializationOptions

from .. import __version__
from ..config import CONFLICT_STRATEGIES
from ..errors import RemoteError
from ..logger import DEFAULT_LOG_FILE, setup_logging
from ..service import SyncService
from .lifespan import server_lifespan
from .tools import ALL_SPECS, ToolRegistry, build_error_response
from .tools.registry import ToolSpec

logger = logging.getLogger(__name__)

# Initialize server instance
server = Server("task-sync-mcp")

# Global service instance (initialized in lifespan)
_service: SyncService | None = None

# Global registry instance (initialized in main)
_registry: ToolRegistry | None = None


# ---------------------------------------------------------------------------
# Ping tool (always available, read-only)
# ---------------------------------------------------------------------------


async def _handle_ping(
    service: SyncService, args: dict
) -> types.CallToolResult:
    """Handle ping tool -- probe each enabled remote."""
    lines = [f"Task Sync MCP server {__version__} (surface: {service.config.source})"]
    failed = False
    for client in service.clients:
        health = getattr(client, "health", None)
        if health is None:
            lines.append(f"  {client.name}: no health endpoint")
            continue
        try:
            await health()
            lines.append(f"  {client.name}: reachable")
        except RemoteError as e:
            failed = True
            lines.append(f"  {client.name}: unreachable ({e})")
    if not service.clients:
        lines.append("  no remotes enabled")
    return types.CallToolResult(
        content=[types.TextContent(type="text", text="\n".join(lines))],
        isError=failed,
    )


PING_SPEC = ToolSpec(
    tool=types.Tool(
        name="ping",
        description="Check the server is running and probe remote connectivity",
        inputSchema={
            "type": "object",
            "properties": {},
            "required": [],
        },
    ),
    mutating=False,
    handler=_handle_ping,
)


# ---------------------------------------------------------------------------
# Global accessors
# ---------------------------------------------------------------------------


def get_service() -> SyncService:
    """Get the global SyncService instance.

    Raises:
        RuntimeError: If service is not initialized
    """
    if _service is None:
        raise RuntimeError(
            "SyncService not initialized. Server lifespan not started."
        )
    return _service


def set_service(service: SyncService | None) -> None:
    """Set the global SyncService instance, or None to clear."""
    global _service
    _service = service


def get_registry() -> ToolRegistry:
    """Get the global ToolRegistry instance.

    Raises:
        RuntimeError: If registry is not initialized
    """
    if _registry is None:
        raise RuntimeError("ToolRegistry not initialized.")
    return _registry


def set_registry(registry: ToolRegistry | None) -> None:
    """Set the global ToolRegistry instance, or None to clear."""
    global _registry
    _registry = registry


# ---------------------------------------------------------------------------
# MCP protocol handlers
# ---------------------------------------------------------------------------


@server.list_tools()
async def handle_list_tools() -> list[types.Tool]:
    """List available tools (mutating tools are hidden in read-only mode)."""
    return get_registry().list_tools()


@server.call_tool()
async def handle_call_tool(
    name: str, arguments: dict | None
) -> types.CallToolResult:
    """Handle tool execution via ToolRegistry dispatch."""
    service = get_service()
    try:
        return await get_registry().call_tool(name, arguments, service)
    except ValueError as e:
        # Unknown or filtered-out tool name
        return build_error_response(
            "unknown_tool",
            str(e),
            "Use list_tools to see available tools.",
        )


# ---------------------------------------------------------------------------
# Server lifecycle
# ---------------------------------------------------------------------------


async def main(config_overrides: dict | None = None):
    """Run the MCP server with stdio transport.

    Sets up logging for MCP mode (file only, never stdout), starts the
    sync service via the lifespan manager, and serves JSON-RPC on stdio.

    Args:
        config_overrides: Optional dict of CLI overrides (source, state_file,
            backend_url, bridge_url, conflict_strategy, debug, log_file,
            read_only)
    """
    overrides = config_overrides or {}

    # Must run BEFORE stdio_server so nothing reaches stdout
    setup_logging(
        mode="mcp",
        debug=overrides.get("debug", False),
        log_file=overrides.get("log_file"),
    )

    read_only = bool(overrides.get("read_only"))
    all_specs = [PING_SPEC] + ALL_SPECS
    registry = ToolRegistry(all_specs, read_only=read_only)
    logger.info(
        "Registered %d tools (of %d total)",
        registry.tool_count(),
        len(all_specs),
    )
    if read_only:
        print(
            f"Read-only mode ({registry.tool_count()} of {len(all_specs)} tools enabled)",
            file=sys.stderr,
        )
    set_registry(registry)

    # set_service() is called here rather than in the lifespan so that
    # running as __main__ does not update a second copy of this module.
    async with server_lifespan(config_overrides=overrides) as ctx:
        set_service(ctx["service"])
        try:
            async with mcp.server.stdio.stdio_server() as (
                read_stream,
                write_stream,
            ):
                init_options = InitializationOptions(
                    server_name="task-sync-mcp",
                    server_version=__version__,
                    capabilities=server.get_capabilities(
                        notification_options=NotificationOptions(),
                        experimental_capabilities={},
                    ),
                )
                await server.run(read_stream, write_stream, init_options)
        finally:
            set_service(None)
            set_registry(None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="task-sync-mcp",
        description="Task Sync MCP Server - offline-first task sync for one surface",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with default config (from .env or .task_sync/config.yml)
  task-sync-mcp

  # Run as the desktop surface against a local backend
  task-sync-mcp --source desktop --backend-url http://localhost:3000/api

  # Expose only read-only tools
  task-sync-mcp --read-only

Note: This server uses stdio transport for JSON-RPC communication with MCP clients.
All user-facing messages are written to stderr.
        """,
    )
    parser.add_argument(
        "--source",
        help="Surface name written into every task this instance edits",
    )
    parser.add_argument("--state-file", help="Local state file path")
    parser.add_argument("--backend-url", help="Backend base URL")
    parser.add_argument("--bridge-url", help="Notes bridge sync endpoint")
    parser.add_argument(
        "--conflict-strategy",
        choices=CONFLICT_STRATEGIES,
        help="How detected conflicts are resolved (default: manual)",
    )
    parser.add_argument(
        "--read-only",
        action="store_true",
        help="Hide tools that edit tasks or trigger sync",
    )
    parser.add_argument(
        "--log-file",
        help=f"Log file path (default: logging.file, then $LOG_FILE, then {DEFAULT_LOG_FILE})",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"task-sync-mcp version {__version__}",
    )
    return parser


def run() -> None:
    """Entry point that handles errors gracefully and parses CLI arguments."""
    args = build_parser().parse_args()

    config_overrides = {
        key: value
        for key, value in (
            ("source", args.source),
            ("state_file", args.state_file),
            ("backend_url", args.backend_url),
            ("bridge_url", args.bridge_url),
            ("conflict_strategy", args.conflict_strategy),
            ("log_file", args.log_file),
            ("read_only", args.read_only),
            ("debug", args.debug),
        )
        if value
    }

    cli_keys = [k for k in config_overrides if k != "log_file"]
    if cli_keys:
        print(
            f"Config overrides from CLI: {', '.join(cli_keys)}",
            file=sys.stderr,
        )

    try:
        asyncio.run(main(config_overrides=config_overrides))
    except RuntimeError:
        # Error already printed to stderr by lifespan manager
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(0)


if __name__ == "__main__":
    run()
