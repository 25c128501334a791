import threading
from unittest.mock import MagicMock

import pytest
import requests

from task_sync.core.client import HttpClient
from task_sync.errors import RemoteError


def _response(body=None, status=200, content=None):
    response = MagicMock()
    response.status_code = status
    response.content = content if content is not None else (b"{}" if body is not None else b"")
    response.json.return_value = body
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(response=response)
    return response


def _client(session=None, **kwargs):
    return HttpClient(
        "http://backend.test/api/", remote="backend", session=session, **kwargs
    )


# URL building
def test_base_url_trailing_slash_stripped():
    """Test that the base URL loses its trailing slash."""
    assert _client().base_url == "http://backend.test/api"


def test_url_joins_paths():
    client = _client()
    assert client.url() == "http://backend.test/api"
    assert client.url("sync/push") == "http://backend.test/api/sync/push"
    assert client.url("/health") == "http://backend.test/api/health"


# Sessions
def test_session_created_per_thread():
    """Test that each worker thread gets its own requests.Session."""
    client = _client()
    main_session = client.session
    assert client.session is main_session
    assert main_session.headers["Accept"] == "application/json"

    seen = []
    worker = threading.Thread(target=lambda: seen.append(client.session))
    worker.start()
    worker.join()
    assert seen[0] is not main_session


def test_injected_session_shared():
    session = MagicMock(spec=requests.Session)
    assert _client(session).session is session


# request_json
def test_request_json_success():
    """Test that the decoded body is returned and None params are dropped."""
    session = MagicMock(spec=requests.Session)
    session.request.return_value = _response({"success": True})
    client = _client(session, timeout=30)

    body = client.request_json(
        "GET", "sync/pull", params={"source": "desktop", "since": None}
    )

    assert body == {"success": True}
    args, kwargs = session.request.call_args
    assert args == ("GET", "http://backend.test/api/sync/pull")
    assert kwargs["params"] == {"source": "desktop"}
    assert kwargs["timeout"] == (10, 30)


def test_request_json_sends_payload():
    session = MagicMock(spec=requests.Session)
    session.request.return_value = _response({})
    _client(session).request_json("POST", "sync/push", payload={"tasks": []})
    assert session.request.call_args.kwargs["json"] == {"tasks": []}


def test_empty_body_returns_empty_dict():
    session = MagicMock(spec=requests.Session)
    session.request.return_value = _response(content=b"")
    assert _client(session).request_json("GET", "health") == {}


def test_http_error_carries_status():
    """Test that non-2xx responses raise RemoteError with the status code."""
    session = MagicMock(spec=requests.Session)
    session.request.return_value = _response({"error": "nope"}, status=502)

    with pytest.raises(RemoteError, match="HTTP 502") as exc_info:
        _client(session).request_json("GET", "health")

    assert exc_info.value.status == 502
    assert exc_info.value.remote == "backend"


def test_timeout_raises_remote_error():
    session = MagicMock(spec=requests.Session)
    session.request.side_effect = requests.Timeout("read timed out")
    with pytest.raises(RemoteError, match="timed out"):
        _client(session).request_json("GET", "health")


def test_connection_error_raises_remote_error():
    session = MagicMock(spec=requests.Session)
    session.request.side_effect = requests.ConnectionError("refused")
    with pytest.raises(RemoteError, match="refused") as exc_info:
        _client(session).request_json("GET", "health")
    assert exc_info.value.status is None


def test_invalid_json_raises_remote_error():
    session = MagicMock(spec=requests.Session)
    response = _response({"x": 1})
    response.json.side_effect = ValueError("Expecting value")
    session.request.return_value = response

    with pytest.raises(RemoteError, match="invalid JSON") as exc_info:
        _client(session).request_json("GET", "health")
    assert exc_info.value.status == 200
