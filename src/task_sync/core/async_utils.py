"""Async utilities for bridging blocking HTTP and file IO to the sync loop."""

import asyncio
import logging
from typing import Any, Callable, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Example:
        http = HttpClient("http://localhost:3001/api", remote="backend")
        body = await run_sync(http.request_json, "GET", "/health")
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def run_sync_timeout(
    timeout: float | None,
    func: Callable[..., T],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Like ``run_sync`` but bounded by *timeout* seconds.

    On timeout the awaiting coroutine gets ``asyncio.TimeoutError``; the
    worker thread itself cannot be interrupted and finishes in the
    background (its result is discarded).

    Args:
        timeout: Seconds to wait, or None for no bound
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func
    """
    return await asyncio.wait_for(run_sync(func, *args, **kwargs), timeout)
