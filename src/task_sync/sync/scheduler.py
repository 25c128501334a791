"""Scheduler: decides when sync cycles run.

State machine::

    idle --trigger--> syncing --ok--------------> idle
                              --ok, conflicts---> idle-with-pending-conflicts
                              --error/timeout---> idle-with-backoff

Triggers are the periodic timer, the offline -> online transition
(fed by the connectivity probe) and a debounced trigger on every local
mutation.  Cycles never overlap: a trigger that arrives while a cycle is
running sets a rerun flag, so at most one extra cycle runs right after
the current one (coalesced, not stacked).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from enum import Enum

from ..errors import RemoteError
from .engine import SyncEngine
from .models import CycleReport, utc_now

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    IDLE_PENDING_CONFLICTS = "idle-with-pending-conflicts"
    IDLE_BACKOFF = "idle-with-backoff"


class SyncScheduler:
    """Runs ``SyncEngine.run_cycle`` on timers and triggers.

    Args:
        engine: The engine whose cycles are scheduled.
        interval: Seconds between periodic cycles.
        debounce: Quiet period after a local mutation before syncing.
        cycle_timeout: A cycle running longer is abandoned.
        backoff_base: Retry delay after the first failed cycle.
        backoff_max: Upper bound for the retry delay.
        probe: Async connectivity check returning True when online
            (``RemoteError`` counts as offline); ``None`` disables it.
        probe_interval: Seconds between connectivity checks.
    """

    def __init__(
        self,
        engine: SyncEngine,
        *,
        interval: float = 300.0,
        debounce: float = 2.0,
        cycle_timeout: float = 120.0,
        backoff_base: float = 2.0,
        backoff_max: float = 300.0,
        probe: Callable[[], Awaitable[bool]] | None = None,
        probe_interval: float = 30.0,
    ) -> None:
        self.engine = engine
        self.interval = interval
        self.debounce = debounce
        self.cycle_timeout = cycle_timeout
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.probe = probe
        self.probe_interval = probe_interval

        self.state = SchedulerState.IDLE
        self.online = True
        self.last_report: CycleReport | None = None
        self.last_error: str | None = None
        self.consecutive_failures = 0
        self.backoff_until: datetime | None = None
        self.cycles_run = 0

        self._current: asyncio.Task[CycleReport | None] | None = None
        self._rerun = False
        self._debounce_task: asyncio.Task[None] | None = None
        self._loops: list[asyncio.Task[None]] = []

        engine.on_mutation = self.notify_mutation

    @property
    def running(self) -> bool:
        return bool(self._loops)

    @property
    def syncing(self) -> bool:
        return self._current is not None and not self._current.done()

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def request_sync(self, reason: str = "manual") -> asyncio.Task[CycleReport | None]:
        """Start a cycle, or coalesce into the one already running."""
        if self.syncing:
            self._rerun = True
            logger.debug("Sync already running; coalescing trigger (%s)", reason)
            return self._current  # type: ignore[return-value]
        self._current = asyncio.create_task(self._run(reason))
        return self._current

    async def trigger_now(self) -> CycleReport | None:
        """Run (or join) a cycle and wait for its report.

        Returns ``None`` when the cycle failed or timed out; see
        ``last_error``.
        """
        return await asyncio.shield(self.request_sync("manual"))

    def notify_mutation(self) -> None:
        """Schedule a debounced cycle after a local change."""
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = asyncio.create_task(self._debounced())

    def set_online(self, online: bool) -> None:
        """Record connectivity; going back online triggers a cycle."""
        if online == self.online:
            return
        self.online = online
        if online:
            logger.info("Connectivity restored; syncing now")
            self.request_sync("back online")
        else:
            logger.warning("Remote unreachable; sync paused until connectivity returns")

    async def _debounced(self) -> None:
        await asyncio.sleep(self.debounce)
        if self.online:
            self.request_sync("local change")

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def _run(self, reason: str) -> CycleReport | None:
        while True:
            self._rerun = False
            report = await self._cycle(reason)
            if not self._rerun:
                return report
            reason = "coalesced trigger"

    async def _cycle(self, reason: str) -> CycleReport | None:
        self.state = SchedulerState.SYNCING
        logger.info("Sync cycle starting (%s)", reason)
        self.cycles_run += 1
        try:
            report = await asyncio.wait_for(
                self.engine.run_cycle(), self.cycle_timeout
            )
        except asyncio.TimeoutError:
            self._failed(f"sync cycle timed out after {self.cycle_timeout}s")
            return None
        except Exception as exc:
            logger.exception("Sync cycle failed")
            self._failed(str(exc))
            return None

        self.last_report = report
        if report.ok:
            self.consecutive_failures = 0
            self.backoff_until = None
            self.last_error = None
            self.state = (
                SchedulerState.IDLE_PENDING_CONFLICTS
                if report.pending_conflicts
                else SchedulerState.IDLE
            )
        else:
            self._failed(
                "; ".join(
                    f"{o.remote}: {o.pull_error or o.push_error}" for o in report.errors
                )
            )
        return report

    def _failed(self, error: str) -> None:
        self.consecutive_failures += 1
        delay = self.backoff_delay()
        self.backoff_until = utc_now() + timedelta(seconds=delay)
        self.last_error = error
        self.state = SchedulerState.IDLE_BACKOFF
        logger.warning("Sync failed, will retry in %.0fs: %s", delay, error)

    def backoff_delay(self) -> float:
        exponent = max(self.consecutive_failures - 1, 0)
        return min(self.backoff_max, self.backoff_base * (2**exponent))

    def next_delay(self) -> float:
        """Seconds until the next periodic cycle."""
        if self.consecutive_failures:
            return self.backoff_delay()
        return self.interval

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self.next_delay())
            if self.online:
                await asyncio.shield(self.request_sync("periodic"))

    async def _probe_loop(self) -> None:
        assert self.probe is not None
        while True:
            await asyncio.sleep(self.probe_interval)
            try:
                ok = await self.probe()
            except RemoteError as exc:
                logger.debug("Connectivity probe failed: %s", exc)
                ok = False
            self.set_online(ok)

    def start(self, *, initial_sync: bool = True) -> None:
        """Start the periodic and probe loops (idempotent)."""
        if self._loops:
            return
        self._loops.append(asyncio.create_task(self._periodic_loop()))
        if self.probe is not None:
            self._loops.append(asyncio.create_task(self._probe_loop()))
        if initial_sync:
            self.request_sync("startup")
        logger.info(
            "Sync scheduler started: interval=%ss debounce=%ss", self.interval, self.debounce
        )

    async def stop(self) -> None:
        """Cancel loops, pending debounce and any in-flight cycle."""
        tasks = list(self._loops)
        if self._debounce_task is not None:
            tasks.append(self._debounce_task)
        if self._current is not None:
            tasks.append(self._current)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loops.clear()
        self._debounce_task = None
        self._current = None
        if self.state == SchedulerState.SYNCING:
            self.state = SchedulerState.IDLE
        logger.info("Sync scheduler stopped")

    def status(self) -> dict[str, object]:
        return {
            "state": self.state.value,
            "online": self.online,
            "syncing": self.syncing,
            "consecutiveFailures": self.consecutive_failures,
            "backoffUntil": self.backoff_until.isoformat() if self.backoff_until else None,
            "lastError": self.last_error,
            "cyclesRun": self.cycles_run,
        }
