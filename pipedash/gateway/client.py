from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import httpx

from pipedash.errors import AuthExpired, RequestFailed
from pipedash.notifications.channel import NotificationChannel
from pipedash.session.store import SessionStore
from pipedash.telemetry.audit import AuditLogger

GENERIC_ERROR = "Request failed"
TIMEOUT_ERROR = "Request timed out"
NETWORK_ERROR = "Network error"


def _error_message(r: httpx.Response) -> str:
    try:
        body = r.json()
    except ValueError:
        return GENERIC_ERROR
    if not isinstance(body, dict):
        return GENERIC_ERROR
    for key in ("error", "message", "detail"):
        v = body.get(key)
        if isinstance(v, str) and v.strip():
            return v.strip()
        if isinstance(v, dict):
            inner = v.get("error") or v.get("message")
            if isinstance(inner, str) and inner.strip():
                return inner.strip()
    return GENERIC_ERROR


class Gateway:
    """
    The single outbound HTTP client. Every other component talks to the API through it.

    Per call:
    - the session token is read once, before sending, and attached as a bearer token;
    - 401 on an authenticated call expires the session (storage cleared, login redirect)
      and the call still fails with AuthExpired;
    - any other non-2xx, timeout or transport error publishes a notification and fails
      with RequestFailed. Nothing is retried.

    `transport` exists so tests can plug in httpx.MockTransport / ASGITransport.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: SessionStore,
        notifications: NotificationChannel,
        timeout_s: float = 30.0,
        audit: AuditLogger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session
        self.notifications = notifications
        self.timeout_s = float(timeout_s)
        self._audit = audit
        self._client = httpx.AsyncClient(
            base_url=self.base_url + "/",
            timeout=httpx.Timeout(self.timeout_s),
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "Gateway":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get(self, path: str, *, params: Optional[Dict[str, Any]] = None, authenticated: bool = True) -> Dict[str, Any]:
        return await self.request("GET", path, params=params, authenticated=authenticated)

    async def post(self, path: str, *, json: Any = None, authenticated: bool = True) -> Dict[str, Any]:
        return await self.request("POST", path, json=json, authenticated=authenticated)

    async def put(self, path: str, *, json: Any = None) -> Dict[str, Any]:
        return await self.request("PUT", path, json=json)

    async def delete(self, path: str) -> Dict[str, Any]:
        return await self.request("DELETE", path)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        authenticated: bool = True,
    ) -> Dict[str, Any]:
        method = method.upper()
        rel = path.lstrip("/")
        token = self.session.token if authenticated else None
        if authenticated and not token:
            raise AuthExpired("Not signed in", method=method, path=path)

        headers: Dict[str, str] = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        query = {k: v for k, v in (params or {}).items() if v is not None}

        try:
            # httpx.Timeout bounds each phase; wait_for bounds the whole call.
            r = await asyncio.wait_for(
                self._client.request(method, rel, params=query or None, json=json, headers=headers),
                timeout=self.timeout_s,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise self._failed(TIMEOUT_ERROR, method=method, path=path, event_type="gateway.timeout") from e
        except httpx.DecodingError as e:
            raise self._failed("Malformed response from server", method=method, path=path) from e
        except httpx.RequestError as e:
            raise self._failed(f"{NETWORK_ERROR}: {type(e).__name__}", method=method, path=path) from e

        try:
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            if r.status_code == 401 and authenticated:
                self.session.expire(token)
                raise AuthExpired("Session expired, please sign in again", method=method, path=path) from e
            raise self._failed(_error_message(r), status_code=r.status_code, method=method, path=path) from e

        if not r.content:
            return {}
        try:
            body = r.json()
        except ValueError as e:
            raise self._failed("Malformed response from server", status_code=r.status_code, method=method, path=path) from e
        if isinstance(body, dict):
            return body
        return {"data": body}

    def report(self, err: RequestFailed) -> RequestFailed:
        """Publish a failure detected after the transport layer (e.g. an unparseable entity)."""
        self.notifications.publish(err.message, source=f"{err.method} {err.path}")
        self._write("gateway.request_failed", err)
        return err

    def _failed(
        self,
        message: str,
        *,
        method: str,
        path: str,
        status_code: int | None = None,
        event_type: str = "gateway.request_failed",
    ) -> RequestFailed:
        err = RequestFailed(message, status_code=status_code, method=method, path=path)
        self.notifications.publish(message, source=f"{method} {path}")
        self._write(event_type, err)
        return err

    def _write(self, event_type: str, err: RequestFailed) -> None:
        if self._audit is None:
            return
        self._audit.write(
            "gateway",
            event_type,
            {"method": err.method, "path": err.path, "status_code": err.status_code, "message": err.message},
        )
