"""HTTP transport to the reconciliation server, plus connectivity tracking."""

from __future__ import annotations

import inspect
import logging
import threading
from typing import Any, Awaitable, Callable, Protocol

import requests
from pydantic import ValidationError

from ..core.async_utils import run_sync_limited
from ..errors import NetworkError, ServerError
from ..models import DraftAudit, SyncRequest, SyncResponse

logger = logging.getLogger(__name__)

SYNC_PATH = "/api/offline-sync"
AUDITS_PATH = "/api/audits"
HEALTH_PATH = "/health"


class Transport(Protocol):
    """What the sync engine needs from a server connection."""

    async def reconcile(self, request: SyncRequest) -> SyncResponse:
        ...  # pragma: no cover

    async def create_audit(self, draft: DraftAudit) -> str:
        ...  # pragma: no cover

    async def ping(self) -> bool:
        ...  # pragma: no cover


class HttpTransport:
    """``requests``-based transport.

    Blocking calls run on worker threads through ``run_sync_limited``;
    each worker thread keeps its own ``requests.Session``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session_factory = session_factory
        self._thread_local = threading.local()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._session_factory()
        return self._thread_local.session

    def _request(
        self, method: str, path: str, payload: dict[str, Any] | None = None
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self._get_session().request(
                method,
                url,
                json=payload,
                timeout=(10, self.timeout),
            )
        except requests.RequestException as exc:
            raise NetworkError(f"{method} {url} failed: {exc}") from exc

        if not response.ok:
            raise NetworkError(
                f"HTTP {response.status_code}: {_error_message(response)}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ServerError(
                f"Unreadable response from {url}: {exc}"
            ) from exc

    # ------------------------------------------------------------------
    # Blocking implementations
    # ------------------------------------------------------------------

    def reconcile_blocking(self, request: SyncRequest) -> SyncResponse:
        data = self._request("POST", SYNC_PATH, request.to_payload())
        try:
            response = SyncResponse.model_validate(data)
        except ValidationError as exc:
            raise ServerError(f"Malformed sync response: {exc}") from exc
        if not response.ok:
            raise ServerError(response.error or "Sync failed")
        return response

    def create_audit_blocking(self, draft: DraftAudit) -> str:
        data = self._request(
            "POST", AUDITS_PATH, draft.model_dump(by_alias=True)
        )
        audit_id = data.get("id") if isinstance(data, dict) else None
        if not audit_id:
            raise ServerError("Server did not return an audit id")
        return str(audit_id)

    def ping_blocking(self) -> bool:
        try:
            self._request("GET", HEALTH_PATH)
        except (NetworkError, ServerError) as exc:
            logger.debug("Health check failed: %s", exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Async API
    # ------------------------------------------------------------------

    async def reconcile(self, request: SyncRequest) -> SyncResponse:
        return await run_sync_limited(self.reconcile_blocking, request)

    async def create_audit(self, draft: DraftAudit) -> str:
        return await run_sync_limited(self.create_audit_blocking, draft)

    async def ping(self) -> bool:
        return await run_sync_limited(self.ping_blocking)


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason or "no body"
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return str(body)[:200]


# ---------------------------------------------------------------------------
# Connectivity
# ---------------------------------------------------------------------------

Listener = Callable[[], Any]


class ConnectivityMonitor:
    """Tracks whether the server is believed reachable.

    Listeners registered with ``subscribe()`` run on every offline to
    online transition.  An optional *probe* (usually
    ``HttpTransport.ping``) lets ``check()`` refresh the flag.
    """

    def __init__(
        self,
        online: bool = True,
        probe: Callable[[], Awaitable[bool]] | None = None,
    ) -> None:
        self._online = online
        self._probe = probe
        self._listeners: list[Listener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def set_online(self, online: bool) -> None:
        """Update the flag, notifying listeners when connectivity returns."""
        was_online = self._online
        self._online = online
        if online and not was_online:
            logger.info("Connectivity restored")
            for listener in list(self._listeners):
                result = listener()
                if inspect.isawaitable(result):
                    await result
        elif was_online and not online:
            logger.info("Connectivity lost")

    async def check(self) -> bool:
        """Run the probe, if any, and return the current flag."""
        if self._probe is not None:
            await self.set_online(await self._probe())
        return self._online
