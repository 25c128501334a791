"""Tests for the sync scheduler state machine and triggers."""

from __future__ import annotations

import asyncio

from conftest import T0

from task_sync.errors import RemoteError
from task_sync.sync.models import CycleReport, RemoteOutcome
from task_sync.sync.scheduler import SchedulerState, SyncScheduler


def _report(*, error: str | None = None, pending_conflicts: int = 0) -> CycleReport:
    return CycleReport(
        source="extension",
        started_at=T0,
        outcomes=[RemoteOutcome(remote="backend", pull_error=error)],
        pending_conflicts=pending_conflicts,
    )


class StubEngine:
    """Stands in for SyncEngine; only ``run_cycle`` and ``on_mutation`` are used."""

    def __init__(self, *reports: CycleReport) -> None:
        self.reports = list(reports)
        self.calls = 0
        self.gate: asyncio.Event | None = None
        self.error: Exception | None = None
        self.on_mutation = None

    async def run_cycle(self) -> CycleReport:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.reports.pop(0) if self.reports else _report()


def _scheduler(engine: StubEngine, **kwargs) -> SyncScheduler:
    kwargs.setdefault("interval", 3600)
    kwargs.setdefault("debounce", 0.01)
    return SyncScheduler(engine, **kwargs)  # type: ignore[arg-type]


async def _until(condition, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not condition():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------


class TestStates:
    async def test_successful_cycle_returns_to_idle(self) -> None:
        scheduler = _scheduler(StubEngine())
        report = await scheduler.trigger_now()
        assert report is not None and report.ok
        assert scheduler.state == SchedulerState.IDLE
        assert scheduler.cycles_run == 1

    async def test_pending_conflicts_state(self) -> None:
        scheduler = _scheduler(StubEngine(_report(pending_conflicts=2)))
        await scheduler.trigger_now()
        assert scheduler.state == SchedulerState.IDLE_PENDING_CONFLICTS

    async def test_remote_errors_enter_backoff(self) -> None:
        engine = StubEngine(_report(error="down"), _report(error="down"), _report())
        scheduler = _scheduler(engine, backoff_base=2.0)

        await scheduler.trigger_now()
        assert scheduler.state == SchedulerState.IDLE_BACKOFF
        assert scheduler.last_error == "backend: down"
        assert scheduler.backoff_delay() == 2.0
        assert scheduler.next_delay() == 2.0

        await scheduler.trigger_now()
        assert scheduler.consecutive_failures == 2
        assert scheduler.backoff_delay() == 4.0

        await scheduler.trigger_now()
        assert scheduler.state == SchedulerState.IDLE
        assert scheduler.consecutive_failures == 0
        assert scheduler.backoff_until is None
        assert scheduler.next_delay() == 3600

    async def test_backoff_is_capped(self) -> None:
        scheduler = _scheduler(StubEngine(), backoff_base=2.0, backoff_max=10.0)
        scheduler.consecutive_failures = 8
        assert scheduler.backoff_delay() == 10.0

    async def test_exception_reported_not_raised(self) -> None:
        engine = StubEngine()
        engine.error = RuntimeError("store exploded")
        scheduler = _scheduler(engine)

        assert await scheduler.trigger_now() is None
        assert scheduler.last_error == "store exploded"
        assert scheduler.state == SchedulerState.IDLE_BACKOFF

    async def test_timeout_abandons_cycle(self) -> None:
        engine = StubEngine()
        engine.gate = asyncio.Event()
        scheduler = _scheduler(engine, cycle_timeout=0.01)

        assert await scheduler.trigger_now() is None
        assert "timed out" in scheduler.last_error
        assert scheduler.state == SchedulerState.IDLE_BACKOFF


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


class TestTriggers:
    async def test_concurrent_triggers_coalesce(self) -> None:
        """Triggers during a cycle cause exactly one follow-up cycle."""
        engine = StubEngine()
        engine.gate = asyncio.Event()
        scheduler = _scheduler(engine)

        first = scheduler.request_sync()
        assert scheduler.request_sync() is first
        assert scheduler.request_sync() is first
        await asyncio.sleep(0)
        assert scheduler.state == SchedulerState.SYNCING

        engine.gate.set()
        await first
        assert engine.calls == 2
        assert not scheduler.syncing

    async def test_mutations_are_debounced(self) -> None:
        engine = StubEngine()
        scheduler = _scheduler(engine, debounce=0.02)

        for _ in range(3):
            engine.on_mutation()
        assert engine.calls == 0
        await asyncio.sleep(0.1)

        assert engine.calls == 1
        assert scheduler.state == SchedulerState.IDLE

    async def test_no_debounced_sync_while_offline(self) -> None:
        engine = StubEngine()
        scheduler = _scheduler(engine)
        scheduler.set_online(False)

        scheduler.notify_mutation()
        await asyncio.sleep(0.05)

        assert engine.calls == 0

    async def test_back_online_triggers_sync(self) -> None:
        engine = StubEngine()
        scheduler = _scheduler(engine)

        scheduler.set_online(True)
        assert not scheduler.syncing
        scheduler.set_online(False)
        scheduler.set_online(True)
        await asyncio.sleep(0.01)

        assert engine.calls == 1


# ---------------------------------------------------------------------------
# Background loops
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_start_runs_initial_sync_and_stop_cancels(self) -> None:
        engine = StubEngine()
        scheduler = _scheduler(engine)

        scheduler.start()
        scheduler.start()
        await asyncio.sleep(0.01)
        assert scheduler.running
        assert engine.calls == 1

        await scheduler.stop()
        assert not scheduler.running
        assert scheduler.state == SchedulerState.IDLE

    async def test_stop_cancels_in_flight_cycle(self) -> None:
        engine = StubEngine()
        engine.gate = asyncio.Event()
        scheduler = _scheduler(engine)
        scheduler.start()
        await asyncio.sleep(0.01)
        assert scheduler.state == SchedulerState.SYNCING

        await scheduler.stop()

        assert not scheduler.syncing
        assert scheduler.state == SchedulerState.IDLE

    async def test_probe_drives_connectivity(self) -> None:
        answers = iter([False, True])

        async def probe() -> bool:
            try:
                return next(answers)
            except StopIteration:
                raise RemoteError("backend", "gone") from None

        engine = StubEngine()
        scheduler = _scheduler(engine, probe=probe, probe_interval=0.01)
        scheduler.start(initial_sync=False)
        try:
            # offline, then back online (one cycle), then offline on error
            await _until(lambda: engine.calls == 1)
            await _until(lambda: not scheduler.online)
            assert engine.calls == 1
        finally:
            await scheduler.stop()

    async def test_status(self) -> None:
        scheduler = _scheduler(StubEngine())
        await scheduler.trigger_now()
        assert scheduler.status() == {
            "state": "idle",
            "online": True,
            "syncing": False,
            "consecutiveFailures": 0,
            "backoffUntil": None,
            "lastError": None,
            "cyclesRun": 1,
        }
