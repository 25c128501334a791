import threading
from typing import Any

import requests

from ..errors import RemoteError


class HttpClient:
    """Blocking JSON-over-HTTP client for one remote.

    Each worker thread gets its own ``requests.Session`` (sessions are
    not thread-safe), unless a shared *session* is injected.  Every
    transport failure surfaces as ``RemoteError``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        remote: str,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.remote = remote
        self.timeout = timeout
        self._shared_session = session
        self._thread_local = threading.local()

    @property
    def session(self) -> requests.Session:
        """Session used by the current thread."""
        return self._get_session()

    def _get_session(self) -> requests.Session:
        if self._shared_session is not None:
            return self._shared_session
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update({"Accept": "application/json"})
        return session

    def url(self, path: str = "") -> str:
        if not path:
            return self.base_url
        return f"{self.base_url}/{path.lstrip('/')}"

    def request_json(
        self,
        method: str,
        path: str = "",
        *,
        params: dict[str, Any] | None = None,
        payload: Any = None,
    ) -> Any:
        """
        Send one request and return the decoded JSON body.
        """
        url = self.url(path)
        session = self._get_session()
        try:
            response = session.request(
                method,
                url,
                params={k: v for k, v in (params or {}).items() if v is not None},
                json=payload,
                timeout=(min(self.timeout, 10), self.timeout),
            )
            response.raise_for_status()
        except requests.Timeout as exc:
            raise RemoteError(
                self.remote, f"{method} {url} timed out: {exc}"
            ) from exc
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            raise RemoteError(
                self.remote, f"{method} {url} failed: HTTP {status}", status=status
            ) from exc
        except requests.RequestException as exc:
            raise RemoteError(self.remote, f"{method} {url} failed: {exc}") from exc

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteError(
                self.remote,
                f"{method} {url} returned invalid JSON",
                status=response.status_code,
            ) from exc
