from __future__ import annotations

import asyncio
from typing import Dict

from pipedash.errors import RequestFailed
from pipedash.logs.viewer import LOAD_FAILED_TEXT, NO_LOGS_TEXT, LogViewer, ViewerState
from pipedash.telemetry.audit import AuditLogger, tail_jsonl


class _Logs:
    def __init__(self) -> None:
        self.pending: Dict[int, asyncio.Future] = {}
        self.calls = 0

    async def __call__(self, entity_id: int) -> str:
        self.calls += 1
        fut = asyncio.get_running_loop().create_future()
        self.pending[entity_id] = fut
        return await fut


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def test_last_open_wins() -> None:
    async def _go():
        logs = _Logs()
        viewer = LogViewer(logs, entity_type="build")
        a = asyncio.ensure_future(viewer.open(1))
        await _settle()
        b = asyncio.ensure_future(viewer.open(2))
        await _settle()
        logs.pending[2].set_result("log of 2")
        await b
        logs.pending[1].set_result("log of 1")
        await a
        return viewer

    viewer = asyncio.run(_go())
    assert viewer.state is ViewerState.loaded
    assert viewer.entity_id == 2
    assert viewer.text == "log of 2"
    assert viewer.blob.entity_id == 2


def test_close_drops_late_response() -> None:
    async def _go():
        logs = _Logs()
        viewer = LogViewer(logs, entity_type="deployment")
        pending = asyncio.ensure_future(viewer.open(5))
        await _settle()
        assert viewer.loading
        viewer.close()
        logs.pending[5].set_result("too late")
        await pending
        return viewer

    viewer = asyncio.run(_go())
    assert viewer.state is ViewerState.closed
    assert viewer.visible is False
    assert viewer.text == ""
    assert viewer.blob is None


def test_failure_shows_fallback_text(tmp_path) -> None:
    audit = AuditLogger(str(tmp_path / "audit.jsonl"))

    async def failing(entity_id: int) -> str:
        raise RequestFailed("Request failed", status_code=500)

    viewer = LogViewer(failing, entity_type="build", audit=audit)
    state = asyncio.run(viewer.open(3))
    assert state is ViewerState.error
    assert viewer.text == LOAD_FAILED_TEXT
    assert viewer.blob is None
    events = [r.event_type for r in tail_jsonl(audit.path)]
    assert events == ["logs.opened", "logs.failed"]


def test_empty_logs_show_placeholder_and_reopen_refetches() -> None:
    calls = []

    async def empty(entity_id: int) -> str:
        calls.append(entity_id)
        return ""

    viewer = LogViewer(empty, entity_type="build")
    states = []
    viewer.subscribe(lambda v: states.append(v.state))

    async def _go() -> None:
        await viewer.open(4)
        viewer.close()
        await viewer.open(4)

    asyncio.run(_go())
    assert viewer.text == NO_LOGS_TEXT
    assert calls == [4, 4]
    assert states == [
        ViewerState.loading,
        ViewerState.loaded,
        ViewerState.closed,
        ViewerState.loading,
        ViewerState.loaded,
    ]
