"""Tests for the Local Store Adapter and its backing stores."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import T0, at, make_task

from task_sync.errors import StoreError, StoreWriteError
from task_sync.sync.models import ConflictRecord, SyncStatus
from task_sync.sync.store import (
    CONFLICTS_KEY,
    LAST_SYNC_KEY,
    TASKS_KEY,
    JsonFileStore,
    MemoryStore,
    StoreAdapter,
    cursor_key,
    upsert_stored,
)

# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------


class TestMemoryStore:
    async def test_read_missing_keys_absent(self) -> None:
        store = MemoryStore({"a": 1})
        assert await store.read(["a", "b"]) == {"a": 1}

    async def test_values_are_copied(self) -> None:
        store = MemoryStore()
        value = {"nested": [1]}
        await store.write({"k": value})
        value["nested"].append(2)
        read = await store.read(["k"])
        assert read["k"] == {"nested": [1]}


# ---------------------------------------------------------------------------
# JsonFileStore
# ---------------------------------------------------------------------------


class TestJsonFileStore:
    async def test_missing_file_reads_empty(self, tmp_path: Path) -> None:
        store = JsonFileStore(tmp_path / "state.json")
        assert await store.read() == {}

    async def test_write_merges_patch(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "state.json"
        store = JsonFileStore(path)
        await store.write({"a": 1})
        await store.write({"b": 2})
        assert json.loads(path.read_text()) == {"a": 1, "b": 2}

    async def test_persists_across_instances(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        await JsonFileStore(path).write({TASKS_KEY: [make_task().to_store()]})
        adapter = StoreAdapter(JsonFileStore(path))
        tasks = await adapter.tasks()
        assert [t.id for t in tasks] == ["7"]

    async def test_corrupt_file_raises_store_error(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text("{not json")
        with pytest.raises(StoreError):
            await JsonFileStore(path).read()

    async def test_non_object_root_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text("[1, 2]")
        with pytest.raises(StoreError):
            await JsonFileStore(path).read()

    async def test_failed_replace_leaves_old_document(self, tmp_path: Path) -> None:
        """A failed atomic replace raises StoreWriteError and changes nothing."""
        path = tmp_path / "state.json"
        store = JsonFileStore(path)
        await store.write({"a": 1})

        with patch("task_sync.sync.store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StoreWriteError):
                await store.write({"a": 2})

        assert json.loads(path.read_text()) == {"a": 1}
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    async def test_unserialisable_value_raises_write_error(self, tmp_path: Path) -> None:
        store = JsonFileStore(tmp_path / "state.json")
        with pytest.raises(StoreWriteError):
            await store.write({"bad": object()})


# ---------------------------------------------------------------------------
# StoreAdapter
# ---------------------------------------------------------------------------


class TestTransaction:
    async def test_writes_only_changed_keys(self) -> None:
        store = MemoryStore({"a": 1, "b": 2})
        adapter = StoreAdapter(store)
        with patch.object(store, "write", wraps=store.write) as write:
            async with adapter.transaction("a", "b") as state:
                state["a"] = 10
        write.assert_called_once_with({"a": 10})

    async def test_no_write_when_unchanged(self) -> None:
        store = MemoryStore({"a": 1})
        adapter = StoreAdapter(store)
        with patch.object(store, "write", wraps=store.write) as write:
            async with adapter.transaction("a"):
                pass
        write.assert_not_called()

    async def test_nothing_written_when_body_raises(self) -> None:
        store = MemoryStore({"a": 1})
        adapter = StoreAdapter(store)
        with pytest.raises(RuntimeError):
            async with adapter.transaction("a") as state:
                state["a"] = 2
                raise RuntimeError("boom")
        assert await store.read(["a"]) == {"a": 1}

    async def test_transactions_serialise(self) -> None:
        """Concurrent read-modify-write transactions never lose updates."""
        adapter = StoreAdapter(MemoryStore({"n": 0}))

        async def bump() -> None:
            async with adapter.transaction("n") as state:
                value = state["n"]
                await asyncio.sleep(0)
                state["n"] = value + 1

        await asyncio.gather(*(bump() for _ in range(10)))
        assert await adapter.read(["n"]) == {"n": 10}


class TestTaskAccess:
    async def test_put_task_inserts_then_replaces(self, adapter: StoreAdapter) -> None:
        await adapter.put_task(make_task("1"))
        await adapter.put_task(make_task("2"))
        await adapter.put_task(make_task("1", title="Renamed"))
        tasks = await adapter.tasks()
        assert [t.id for t in tasks] == ["2", "1"]
        assert (await adapter.task("1")).title == "Renamed"

    async def test_unreadable_entries_skipped(self) -> None:
        adapter = StoreAdapter(
            MemoryStore({TASKS_KEY: [make_task().to_store(), {"title": "no id"}]})
        )
        assert [t.id for t in await adapter.tasks()] == ["7"]

    async def test_mark_pushed_settles_pending_task(self, adapter: StoreAdapter) -> None:
        await adapter.put_task(make_task(updated_at=at(5), sync_status=SyncStatus.PENDING))
        await adapter.mark_pushed("backend", {"7": at(5)})
        task = await adapter.task("7")
        assert task.sync_status == SyncStatus.SYNCED
        assert task.last_push_time == {"backend": at(5)}

    async def test_mark_pushed_keeps_newer_edit_pending(self, adapter: StoreAdapter) -> None:
        """An edit made while a push was in flight stays eligible."""
        await adapter.put_task(make_task(updated_at=at(9), sync_status=SyncStatus.PENDING))
        await adapter.mark_pushed("backend", {"7": at(5)})
        task = await adapter.task("7")
        assert task.sync_status == SyncStatus.PENDING
        assert task.needs_push("backend")


class TestMetadata:
    async def test_conflicts_returns_pending_only(self) -> None:
        open_ = ConflictRecord.create(make_task(), make_task(title="B"), "backend", [])
        closed = ConflictRecord.create(
            make_task("8"), make_task("8", title="B"), "backend", []
        ).resolved("use_local")
        adapter = StoreAdapter(
            MemoryStore({CONFLICTS_KEY: [open_.to_store(), closed.to_store()]})
        )
        assert [c.id for c in await adapter.conflicts()] == [open_.id]

    async def test_last_sync_time_parsed(self) -> None:
        adapter = StoreAdapter(MemoryStore({LAST_SYNC_KEY: "2026-03-01T09:00:00.000Z"}))
        assert await adapter.last_sync_time() == T0

    async def test_last_sync_time_garbage_is_none(self) -> None:
        adapter = StoreAdapter(MemoryStore({LAST_SYNC_KEY: "yesterday"}))
        assert await adapter.last_sync_time() is None

    async def test_cursor_keys(self) -> None:
        assert cursor_key("backend") == "lastBackendPullCursor"
        assert cursor_key("bridge") == "pullCursor:bridge"
        adapter = StoreAdapter(MemoryStore({"lastBackendPullCursor": "c1"}))
        assert await adapter.cursor("backend") == "c1"
        assert await adapter.cursor("bridge") is None


def test_upsert_stored_inserts_at_front() -> None:
    stored = upsert_stored([{"id": "1"}], make_task("2"))
    assert [e["id"] for e in stored] == ["2", "1"]
