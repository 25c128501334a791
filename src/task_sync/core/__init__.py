"""Core transport helpers shared by the sync clients and the MCP server."""

from .async_utils import run_sync, run_sync_timeout
from .client import HttpClient

__all__ = ["HttpClient", "run_sync", "run_sync_timeout"]
