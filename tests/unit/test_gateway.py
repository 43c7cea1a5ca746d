from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import httpx
import pytest

from pipedash.controllers.resources import builds_controller
from pipedash.errors import AuthExpired, RequestFailed
from pipedash.gateway.api import CicdApi
from pipedash.gateway.client import GENERIC_ERROR, TIMEOUT_ERROR, Gateway
from pipedash.logs.viewer import LOAD_FAILED_TEXT, LogViewer, ViewerState
from pipedash.models import Session, User
from pipedash.notifications.channel import NotificationChannel
from pipedash.session.storage import SessionStorage
from pipedash.session.store import SessionStore
from pipedash.telemetry.audit import AuditLogger, tail_jsonl

BASE = "http://testserver/api/v1"


class _Env:
    def __init__(self, tmp_path, *, token: str | None = "t1") -> None:
        self.storage = SessionStorage(str(tmp_path / "session.json"))
        if token:
            self.storage.save(Session(user=User(id=1, username="admin"), token=token))
        self.redirects: List[str] = []
        self.session = SessionStore(self.storage, navigate=self.redirects.append)
        self.session.restore()
        self.notifications = NotificationChannel()
        self.audit = AuditLogger(str(tmp_path / "audit.jsonl"))
        self.seen: List[httpx.Request] = []

    def gateway(self, handler) -> Gateway:
        def _recording(request: httpx.Request):
            self.seen.append(request)
            return handler(request)

        return Gateway(
            BASE,
            session=self.session,
            notifications=self.notifications,
            audit=self.audit,
            transport=httpx.MockTransport(_recording),
        )


def test_gateway_attaches_bearer_and_drops_empty_params(tmp_path) -> None:
    env = _Env(tmp_path)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"builds": [], "path": request.url.path})

    async def _go() -> Dict[str, Any]:
        async with env.gateway(handler) as gw:
            return await gw.get("/builds", params={"pipelineId": 7, "environment": None})

    body = asyncio.run(_go())
    assert body["path"] == "/api/v1/builds"
    req = env.seen[0]
    assert req.headers["authorization"] == "Bearer t1"
    assert dict(req.url.params) == {"pipelineId": "7"}


def test_gateway_without_session_sends_nothing(tmp_path) -> None:
    env = _Env(tmp_path, token=None)

    async def _go() -> None:
        async with env.gateway(lambda r: httpx.Response(200, json={})) as gw:
            await gw.get("/projects")

    with pytest.raises(AuthExpired):
        asyncio.run(_go())
    assert env.seen == []
    assert env.redirects == []


def test_gateway_401_expires_session_once(tmp_path) -> None:
    env = _Env(tmp_path)

    async def _go() -> List[Any]:
        async with env.gateway(lambda r: httpx.Response(401, json={"error": "Invalid or expired token"})) as gw:
            return await asyncio.gather(
                gw.get("/builds"), gw.get("/deployments"), gw.get("/projects"), return_exceptions=True
            )

    results = asyncio.run(_go())
    assert all(isinstance(r, AuthExpired) for r in results)
    assert env.redirects == ["/login"]
    assert env.session.is_authenticated is False
    assert env.storage.load() is None
    # Expiry is not a notification; the redirect is the feedback.
    assert env.notifications.history == []


def test_gateway_stale_401_does_not_clear_newer_session(tmp_path) -> None:
    env = _Env(tmp_path, token="old")
    gates: Dict[str, asyncio.Event] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        gates["reached"].set()
        await gates["release"].wait()
        return httpx.Response(401, json={"error": "expired"})

    class _Api:
        async def login(self, *, username: str, password: str) -> Session:
            return Session(user=User(id=1, username=username), token="new")

    async def _go() -> None:
        gates["reached"] = asyncio.Event()
        gates["release"] = asyncio.Event()
        async with env.gateway(handler) as gw:
            pending = asyncio.ensure_future(gw.get("/builds"))
            await gates["reached"].wait()
            await env.session.login(_Api(), username="admin", password="x")
            gates["release"].set()
            with pytest.raises(AuthExpired):
                await pending

    asyncio.run(_go())
    assert env.session.token == "new"
    assert env.redirects == []
    assert env.storage.load().token == "new"


def test_gateway_error_message_is_published(tmp_path) -> None:
    env = _Env(tmp_path)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/builds"):
            return httpx.Response(500, json={"error": "database unavailable"})
        return httpx.Response(502, text="<html>bad gateway</html>")

    async def _go() -> List[Any]:
        async with env.gateway(handler) as gw:
            return await asyncio.gather(gw.get("/builds"), gw.get("/projects"), return_exceptions=True)

    first, second = asyncio.run(_go())
    assert isinstance(first, RequestFailed)
    assert first.status_code == 500
    assert first.message == "database unavailable"
    assert isinstance(second, RequestFailed)
    assert second.message == GENERIC_ERROR

    notes = env.notifications.history
    assert sorted(n.message for n in notes) == sorted(["database unavailable", GENERIC_ERROR])
    assert {n.source for n in notes} == {"GET /builds", "GET /projects"}
    assert env.session.is_authenticated
    events = [r.event_type for r in tail_jsonl(env.audit.path)]
    assert events == ["gateway.request_failed", "gateway.request_failed"]


def test_gateway_timeout_and_network_errors(tmp_path) -> None:
    env = _Env(tmp_path)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/builds"):
            raise httpx.ReadTimeout("timed out", request=request)
        raise httpx.ConnectError("refused", request=request)

    async def _go() -> List[Any]:
        async with env.gateway(handler) as gw:
            return await asyncio.gather(gw.get("/builds"), gw.get("/projects"), return_exceptions=True)

    timeout, network = asyncio.run(_go())
    assert isinstance(timeout, RequestFailed)
    assert timeout.timed_out
    assert timeout.message == TIMEOUT_ERROR
    assert isinstance(network, RequestFailed)
    assert not network.timed_out
    assert network.message == "Network error: ConnectError"
    assert len(env.notifications.history) == 2
    events = [r.event_type for r in tail_jsonl(env.audit.path)]
    assert "gateway.timeout" in events


def test_gateway_unauthenticated_401_is_a_plain_failure(tmp_path) -> None:
    env = _Env(tmp_path)

    async def _go() -> None:
        async with env.gateway(lambda r: httpx.Response(401, json={"error": "Invalid username or password"})) as gw:
            await gw.post("/auth/login", json={"username": "a", "password": "b"}, authenticated=False)

    with pytest.raises(RequestFailed) as ei:
        asyncio.run(_go())
    assert not isinstance(ei.value, AuthExpired)
    assert ei.value.message == "Invalid username or password"
    assert "authorization" not in env.seen[0].headers
    assert env.session.token == "t1"
    assert env.redirects == []


def test_gateway_wraps_list_bodies_and_tolerates_empty(tmp_path) -> None:
    env = _Env(tmp_path)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "DELETE":
            return httpx.Response(204)
        return httpx.Response(200, json=[1, 2])

    async def _go():
        async with env.gateway(handler) as gw:
            return await gw.get("/things"), await gw.delete("/things/1")

    listed, deleted = asyncio.run(_go())
    assert listed == {"data": [1, 2]}
    assert deleted == {}


def test_gateway_undecodable_body_is_reported(tmp_path) -> None:
    env = _Env(tmp_path)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"Content-Encoding": "gzip"}, content=b"not gzip")

    async def _go() -> None:
        async with env.gateway(handler) as gw:
            await gw.get("/builds/1/logs")

    with pytest.raises(RequestFailed) as ei:
        asyncio.run(_go())
    assert ei.value.message == "Malformed response from server"
    assert isinstance(ei.value.__cause__, httpx.DecodingError)
    assert [n.message for n in env.notifications.history] == ["Malformed response from server"]


def test_gateway_timeout_bounds_the_whole_call(tmp_path) -> None:
    env = _Env(tmp_path)

    async def handler(request: httpx.Request) -> httpx.Response:
        # No httpx phase timeout fires here; only the overall bound can stop it.
        await asyncio.sleep(5)
        return httpx.Response(200, json={})

    async def _go() -> float:
        gw = Gateway(
            BASE,
            session=env.session,
            notifications=env.notifications,
            timeout_s=0.1,
            transport=httpx.MockTransport(handler),
        )
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            with pytest.raises(RequestFailed) as ei:
                await gw.get("/builds")
        finally:
            await gw.aclose()
        assert ei.value.timed_out
        assert ei.value.message == TIMEOUT_ERROR
        return loop.time() - started

    elapsed = asyncio.run(_go())
    assert elapsed < 1.0
    assert len(env.notifications.history) == 1


def test_undecodable_body_settles_viewer_and_controller(tmp_path) -> None:
    env = _Env(tmp_path)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"Content-Encoding": "gzip"}, content=b"not gzip")

    async def _go():
        async with env.gateway(handler) as gw:
            api = CicdApi(gw)
            viewer = LogViewer(api.get_build_logs, entity_type="build")
            state = await viewer.open(1)
            builds = builds_controller(api, interval_s=30)
            builds.start()
            await builds.wait_idle()
            builds.stop()
            return state, viewer.text, builds

    state, text, builds = asyncio.run(_go())
    assert state is ViewerState.error
    assert text == LOAD_FAILED_TEXT
    assert builds.loading is False
    assert isinstance(builds.last_error, RequestFailed)
    assert len(env.notifications.history) == 2
