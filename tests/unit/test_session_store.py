from __future__ import annotations

import asyncio
import json
import os

import pytest

from pipedash.errors import RequestFailed
from pipedash.models import Session, User
from pipedash.session.storage import SessionStorage
from pipedash.session.store import SessionStatus, SessionStore
from pipedash.telemetry.audit import AuditLogger, tail_jsonl


class _Api:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.logins = 0

    async def login(self, *, username: str, password: str) -> Session:
        self.logins += 1
        if self.fail:
            raise RequestFailed("Invalid username or password", status_code=401)
        return Session(user=User(id=7, username=username, email=f"{username}@example.com"), token=f"tok-{self.logins}")


def _store(tmp_path, **kw) -> SessionStore:
    return SessionStore(SessionStorage(str(tmp_path / "s" / "session.json")), **kw)


def test_restore_without_file_resolves_unauthenticated(tmp_path) -> None:
    store = _store(tmp_path)
    assert store.status is SessionStatus.loading
    assert store.resolved is False
    assert store.restore() is SessionStatus.unauthenticated
    assert store.resolved is True
    assert store.token is None


def test_restore_ignores_corrupt_file(tmp_path) -> None:
    path = tmp_path / "s" / "session.json"
    os.makedirs(path.parent, exist_ok=True)
    path.write_text("{not json", encoding="utf-8")
    store = SessionStore(SessionStorage(str(path)))
    assert store.restore() is SessionStatus.unauthenticated


def test_login_persists_and_restores(tmp_path) -> None:
    audit = AuditLogger(str(tmp_path / "audit.jsonl"))
    store = _store(tmp_path, audit=audit)
    store.restore()
    user = asyncio.run(store.login(_Api(), username="alice", password="pw"))
    assert user.username == "alice"
    assert store.is_authenticated
    assert store.token == "tok-1"

    with open(tmp_path / "s" / "session.json", "r", encoding="utf-8") as f:
        raw = json.load(f)
    assert raw["token"] == "tok-1"
    assert raw["user"]["username"] == "alice"

    again = _store(tmp_path)
    assert again.restore() is SessionStatus.authenticated
    assert again.user.email == "alice@example.com"
    assert [r.event_type for r in tail_jsonl(audit.path)] == ["session.login"]


def test_failed_login_leaves_unauthenticated(tmp_path) -> None:
    store = _store(tmp_path)
    store.restore()
    with pytest.raises(RequestFailed):
        asyncio.run(store.login(_Api(fail=True), username="alice", password="bad"))
    assert store.status is SessionStatus.unauthenticated
    assert not os.path.exists(tmp_path / "s" / "session.json")


def test_logout_is_idempotent(tmp_path) -> None:
    store = _store(tmp_path)
    store.restore()
    asyncio.run(store.login(_Api(), username="alice", password="pw"))
    store.logout()
    store.logout()
    assert store.status is SessionStatus.unauthenticated
    assert store.token is None
    assert SessionStorage(str(tmp_path / "s" / "session.json")).load() is None


def test_expire_acts_once_and_only_for_current_token(tmp_path) -> None:
    redirects = []
    statuses = []
    store = _store(tmp_path, navigate=redirects.append, login_path="/signin")
    store.subscribe(statuses.append)
    store.restore()
    asyncio.run(store.login(_Api(), username="alice", password="pw"))

    assert store.expire("some-other-token") is False
    assert store.is_authenticated

    assert store.expire("tok-1") is True
    assert store.expire("tok-1") is False
    assert store.expire(None) is False
    assert redirects == ["/signin"]
    assert statuses == [SessionStatus.unauthenticated, SessionStatus.authenticated, SessionStatus.unauthenticated]


def test_failed_login_also_clears_stored_session(tmp_path) -> None:
    storage = SessionStorage(str(tmp_path / "s" / "session.json"))
    storage.save(Session(user=User(id=1, username="bob"), token="T1"))
    store = SessionStore(storage)
    assert store.restore() is SessionStatus.authenticated

    with pytest.raises(RequestFailed):
        asyncio.run(store.login(_Api(fail=True), username="alice", password="bad"))
    assert store.status is SessionStatus.unauthenticated

    next_process = SessionStore(SessionStorage(str(tmp_path / "s" / "session.json")))
    assert next_process.restore() is SessionStatus.unauthenticated
