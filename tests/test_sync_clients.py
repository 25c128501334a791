"""Tests for BackendClient and BridgeClient against a mocked requests session."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import MagicMock

import pytest
import requests
from conftest import at, make_task

from task_sync.errors import RemoteError
from task_sync.sync.clients import BackendClient, BridgeClient
from task_sync.sync.models import QueueItemType, SyncStatus
from task_sync.sync.store import ID_MAP_KEY, StoreAdapter

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _response(body: Any = None, status: int = 200) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.content = json.dumps(body).encode() if body is not None else b""
    response.json.return_value = body
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(response=response)
    return response


def _session(*responses: MagicMock) -> MagicMock:
    session = MagicMock(spec=requests.Session)
    session.request.side_effect = list(responses)
    return session


def _sent(session: MagicMock, call: int = -1) -> dict:
    return session.request.call_args_list[call].kwargs["json"]


def _backend(adapter: StoreAdapter, session: MagicMock) -> BackendClient:
    return BackendClient(
        "http://backend.test/api/", adapter, source="desktop", session=session
    )


def _bridge(adapter: StoreAdapter, session: MagicMock) -> BridgeClient:
    return BridgeClient(
        "http://bridge.test/api/sync", adapter, source="desktop", session=session
    )


# ---------------------------------------------------------------------------
# Backend push
# ---------------------------------------------------------------------------


class TestBackendPush:
    async def test_push_sends_wire_records(self, adapter: StoreAdapter) -> None:
        task = await adapter.put_task(make_task(sync_status=SyncStatus.PENDING))
        session = _session(_response({"success": True, "data": {"created": 1}}))

        result = await _backend(adapter, session).push([task])

        method, url = session.request.call_args.args
        assert (method, url) == ("POST", "http://backend.test/api/sync/push")
        body = _sent(session)
        assert body["source"] == "desktop"
        assert body["tasks"][0]["id"] == 7
        assert result.pushed == {"7": task.updated_at}
        stored = await adapter.task("7")
        assert stored.sync_status == SyncStatus.SYNCED
        assert not stored.needs_push("backend")

    async def test_push_is_idempotent(self, adapter: StoreAdapter) -> None:
        """A second push of unchanged tasks makes no request."""
        await adapter.put_task(make_task(sync_status=SyncStatus.PENDING))
        session = _session(_response({"success": True}))
        client = _backend(adapter, session)

        await client.push(await adapter.tasks())
        second = await client.push(await adapter.tasks())

        assert session.request.call_count == 1
        assert second.pushed == {}
        assert second.skipped == 1

    async def test_string_ids_persisted_in_id_map(self, adapter: StoreAdapter) -> None:
        task = await adapter.put_task(make_task("uuid-1"))
        session = _session(_response({"success": True}))

        await _backend(adapter, session).push([task])

        numeric = _sent(session)["tasks"][0]["id"]
        id_map = (await adapter.read([ID_MAP_KEY]))[ID_MAP_KEY]
        assert id_map == {str(numeric): "uuid-1"}

    async def test_rejected_tasks_not_marked(self, adapter: StoreAdapter) -> None:
        a = await adapter.put_task(make_task("1"))
        b = await adapter.put_task(make_task("2"))
        session = _session(
            _response({"success": True, "data": {"errors": [{"id": 2, "error": "bad"}]}})
        )

        result = await _backend(adapter, session).push([a, b])

        assert list(result.pushed) == ["1"]
        assert (await adapter.task("2")).needs_push("backend")

    async def test_success_false_raises(self, adapter: StoreAdapter) -> None:
        task = await adapter.put_task(make_task())
        session = _session(_response({"success": False, "error": "db locked"}))
        with pytest.raises(RemoteError, match="db locked"):
            await _backend(adapter, session).push([task])
        assert (await adapter.task("7")).needs_push("backend")

    async def test_http_error_raises_remote_error(self, adapter: StoreAdapter) -> None:
        task = await adapter.put_task(make_task())
        session = _session(_response({"error": "x"}, status=503))
        with pytest.raises(RemoteError) as exc_info:
            await _backend(adapter, session).push([task])
        assert exc_info.value.status == 503
        assert exc_info.value.remote == "backend"

    async def test_connection_error_raises_remote_error(self, adapter: StoreAdapter) -> None:
        task = await adapter.put_task(make_task())
        session = MagicMock(spec=requests.Session)
        session.request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(RemoteError, match="refused"):
            await _backend(adapter, session).push([task])


# ---------------------------------------------------------------------------
# Backend pull
# ---------------------------------------------------------------------------


class TestBackendPull:
    async def test_pull_maps_records_and_cursor(self, adapter: StoreAdapter) -> None:
        session = _session(
            _response(
                {
                    "success": True,
                    "data": [
                        {"id": 7, "title": "Remote", "updatedAt": "2026-03-01T09:05:00Z"},
                        {"title": "no id"},
                    ],
                    "metadata": {"timestamp": "2026-03-01T10:00:00.000Z"},
                }
            )
        )

        result = await _backend(adapter, session).pull("2026-03-01T08:00:00.000Z")

        kwargs = session.request.call_args.kwargs
        assert kwargs["params"] == {"source": "desktop", "since": "2026-03-01T08:00:00.000Z"}
        assert [t.id for t in result.tasks] == ["7"]
        assert result.tasks[0].updated_at == at(5)
        assert result.malformed == 1
        assert result.cursor == "2026-03-01T10:00:00.000Z"

    async def test_first_pull_omits_since(self, adapter: StoreAdapter) -> None:
        session = _session(_response({"success": True, "data": []}))
        result = await _backend(adapter, session).pull(None)
        assert session.request.call_args.kwargs["params"] == {"source": "desktop"}
        assert result.cursor is not None

    async def test_round_trip(self, adapter: StoreAdapter) -> None:
        """pull(push(task)) returns the same title and status."""
        task = await adapter.put_task(make_task("uuid-rt", title="Ship it", status="done"))
        push_session = _session(_response({"success": True}))
        await _backend(adapter, push_session).push([task])
        wire = _sent(push_session)["tasks"]

        pull_session = _session(_response({"success": True, "data": wire}))
        result = await _backend(adapter, pull_session).pull(None)

        (pulled,) = result.tasks
        assert pulled.id == "uuid-rt"
        assert (pulled.title, pulled.status) == (task.title, task.status)

    async def test_non_list_body_ignored(self, adapter: StoreAdapter) -> None:
        session = _session(_response({"success": True, "data": {"oops": 1}}))
        result = await _backend(adapter, session).pull("c0")
        assert result.tasks == []
        assert result.cursor == "c0"

    async def test_invalid_json_raises(self, adapter: StoreAdapter) -> None:
        response = _response({"x": 1})
        response.json.side_effect = ValueError("bad json")
        with pytest.raises(RemoteError, match="invalid JSON"):
            await _backend(adapter, _session(response)).pull(None)

    async def test_health(self, adapter: StoreAdapter) -> None:
        session = _session(_response({"status": "ok"}))
        assert await _backend(adapter, session).health() is True
        assert session.request.call_args.args == ("GET", "http://backend.test/api/health")

    def test_accepts_only_task_updates(self, adapter: StoreAdapter) -> None:
        client = _backend(adapter, MagicMock())
        assert client.accepts(QueueItemType.TASK_UPDATE)
        assert not client.accepts(QueueItemType.ENERGY_UPDATE)


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------


class TestBridgeClient:
    async def test_push_exchange_carries_extras(self, adapter: StoreAdapter) -> None:
        task = await adapter.put_task(make_task("note-1"))
        session = _session(_response({"success": True, "data": {}, "timestamp": "t1"}))

        result = await _bridge(adapter, session).push(
            [task], {"currentEnergyLevel": 4, "focusSessions": []}
        )

        body = _sent(session)
        assert body["action"] == "bidirectional_sync"
        assert body["data"]["source"] == "desktop"
        assert body["data"]["tasks"][0]["id"] == "note-1"
        assert body["data"]["currentEnergyLevel"] == 4
        assert result.pushed == {"note-1": task.updated_at}

    async def test_push_nothing_due_skips_request(self, adapter: StoreAdapter) -> None:
        task = make_task().pushed_to("bridge", make_task().updated_at)
        session = _session()
        result = await _bridge(adapter, session).push([task])
        session.request.assert_not_called()
        assert result.skipped == 1

    async def test_pull_parses_state(self, adapter: StoreAdapter) -> None:
        session = _session(
            _response(
                {
                    "success": True,
                    "data": {
                        "tasks": [{"id": "n1", "title": "From notes", "source": "obsidian"}, {}],
                        "currentEnergyLevel": 2,
                        "focusSessions": [{"startTime": "s", "duration": 25}],
                    },
                    "conflicts": [{"id": "n9"}],
                    "timestamp": "2026-03-01T11:00:00.000Z",
                }
            )
        )

        result = await _bridge(adapter, session).pull("t0")

        body = _sent(session)
        assert body["data"]["tasks"] == []
        assert body["timestamp"] == "t0"
        assert [t.id for t in result.tasks] == ["n1"]
        assert result.tasks[0].source == "obsidian"
        assert result.malformed == 1
        assert result.extras == {
            "currentEnergyLevel": 2,
            "focusSessions": [{"startTime": "s", "duration": 25}],
        }
        assert result.remote_conflicts == [{"id": "n9"}]
        assert result.cursor == "2026-03-01T11:00:00.000Z"

    async def test_non_object_body_raises(self, adapter: StoreAdapter) -> None:
        session = _session(_response([1, 2]))
        with pytest.raises(RemoteError):
            await _bridge(adapter, session).pull(None)

    def test_accepts_everything(self, adapter: StoreAdapter) -> None:
        client = _bridge(adapter, MagicMock())
        assert all(client.accepts(t) for t in QueueItemType)
