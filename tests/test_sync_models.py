"""Tests for sync data models."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from conftest import T0, at, make_task

from task_sync.sync.models import (
    ConflictRecord,
    CycleReport,
    FieldDiff,
    Priority,
    QueueItem,
    QueueItemType,
    RemoteOutcome,
    ResolutionStatus,
    SyncStatus,
    Task,
    TaskStatus,
    next_timestamp,
    utc_now,
)

# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------


class TestTaskDefaults:
    """Task.new fills in the creation defaults."""

    def test_new_assigns_defaults(self) -> None:
        task = Task.new("Write tests", source="desktop")
        assert len(task.id) == 32
        assert task.priority == Priority.MEDIUM
        assert task.status == TaskStatus.TODO
        assert task.estimated_minutes == 30
        assert task.actual_minutes == 0
        assert task.created_at == task.updated_at
        assert task.source == "desktop"
        assert task.sync_status == SyncStatus.PENDING

    def test_new_keeps_explicit_id(self) -> None:
        task = Task.new("x", source="desktop", id="abc")
        assert task.id == "abc"

    def test_completed_is_derived_from_status(self) -> None:
        assert make_task(status="done").completed is True
        assert make_task(status="in-progress").completed is False

    def test_naive_timestamps_become_utc(self) -> None:
        task = make_task(updated_at=datetime(2026, 3, 1, 9, 0))
        assert task.updated_at.tzinfo == timezone.utc

    def test_integral_float_minutes_normalised(self) -> None:
        assert make_task(estimated_minutes=45.0).estimated_minutes == 45
        assert make_task(estimated_minutes=12.5).estimated_minutes == 12.5


class TestTaskEdit:
    """Task.edit produces a newer pending version."""

    def test_edit_bumps_updated_at(self) -> None:
        task = make_task(updated_at=at(10))
        edited = task.edit(title="Draft intro v2", source="desktop")
        assert edited.title == "Draft intro v2"
        assert edited.updated_at > task.updated_at
        assert edited.sync_status == SyncStatus.PENDING
        assert edited.source == "desktop"

    def test_edit_coerces_enum_strings(self) -> None:
        edited = make_task().edit(priority="high", status="done")
        assert edited.priority == Priority.HIGH
        assert edited.completed

    def test_edit_from_future_timestamp_still_increases(self) -> None:
        future = utc_now() + timedelta(hours=1)
        edited = make_task(updated_at=future).edit(title="x")
        assert edited.updated_at == future + timedelta(milliseconds=1)


class TestPushBookkeeping:
    """last_push_time is tracked per remote."""

    def test_needs_push_when_never_pushed(self) -> None:
        assert make_task().needs_push("backend")

    def test_pushed_to_records_version(self) -> None:
        task = make_task(updated_at=at(5)).pushed_to("backend", at(5))
        assert not task.needs_push("backend")
        assert task.needs_push("bridge")

    def test_pushed_to_never_moves_backwards(self) -> None:
        task = make_task().pushed_to("backend", at(5))
        assert task.pushed_to("backend", at(1)).last_push_time["backend"] == at(5)

    def test_newer_local_version_needs_push_again(self) -> None:
        task = make_task(updated_at=at(10)).pushed_to("backend", at(5))
        assert task.needs_push("backend")


class TestContentHash:
    """content_hash covers content only, not sync bookkeeping."""

    def test_bookkeeping_ignored(self) -> None:
        a = make_task(source="extension", sync_status=SyncStatus.PENDING)
        b = make_task(source="obsidian", sync_status=SyncStatus.SYNCED).pushed_to(
            "backend", T0
        )
        assert a.content_hash() == b.content_hash()

    def test_content_change_detected(self) -> None:
        assert make_task().content_hash() != make_task(title="Other").content_hash()

    def test_store_shape_is_camel_case(self) -> None:
        stored = make_task().to_store()
        assert stored["updatedAt"].startswith("2026-03-01T09:00:00")
        assert stored["syncStatus"] == "synced"
        assert stored["completed"] is False
        assert Task.model_validate(stored) == make_task()


def test_next_timestamp_strictly_after_inputs() -> None:
    future = utc_now() + timedelta(days=1)
    assert next_timestamp(future, None) == future + timedelta(milliseconds=1)
    assert next_timestamp() <= utc_now()


# ---------------------------------------------------------------------------
# Conflicts, queue items, reports
# ---------------------------------------------------------------------------


class TestConflictRecord:
    def test_create_and_resolve(self) -> None:
        local = make_task(title="A")
        remote = make_task(title="B")
        diffs = [FieldDiff(field="title", local_value="A", remote_value="B")]
        conflict = ConflictRecord.create(local, remote, "backend", diffs)

        assert conflict.id.startswith("conflict_7_")
        assert conflict.resolution_status == ResolutionStatus.PENDING

        closed = conflict.resolved("use_local")
        assert closed.resolution_status == ResolutionStatus.RESOLVED
        assert closed.resolution == "use_local"
        assert closed.resolved_at is not None

    def test_round_trips_through_store_shape(self) -> None:
        conflict = ConflictRecord.create(
            make_task(title="A"), make_task(title="B"), "bridge", []
        )
        stored = conflict.to_store()
        assert stored["taskId"] == "7"
        assert stored["localSnapshot"]["title"] == "A"
        assert ConflictRecord.model_validate(stored).remote == "bridge"


class TestQueueItem:
    def test_task_id_for_task_updates(self) -> None:
        item = QueueItem(
            id=1,
            type=QueueItemType.TASK_UPDATE,
            payload={"task": {"id": "7"}},
            enqueued_at=T0,
        )
        assert item.task_id == "7"

    def test_task_id_none_for_other_types(self) -> None:
        item = QueueItem(
            id=1, type=QueueItemType.ENERGY_UPDATE, payload={"level": 3}, enqueued_at=T0
        )
        assert item.task_id is None

    def test_is_due(self) -> None:
        item = QueueItem(
            id=1,
            type=QueueItemType.TASK_UPDATE,
            enqueued_at=T0,
            next_attempt_at=at(5),
        )
        assert not item.is_due(at(4))
        assert item.is_due(at(5))


def test_cycle_report_errors() -> None:
    report = CycleReport(
        source="desktop",
        started_at=T0,
        outcomes=[
            RemoteOutcome(remote="backend", pulled=2),
            RemoteOutcome(remote="bridge", push_error="bridge: timed out"),
        ],
    )
    assert not report.ok
    assert [o.remote for o in report.errors] == ["bridge"]
