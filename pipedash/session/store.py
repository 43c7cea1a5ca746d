from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Callable, List, Optional

from pipedash.errors import GatewayError
from pipedash.models import Session, User
from pipedash.session.storage import SessionStorage
from pipedash.telemetry.audit import AuditLogger

if TYPE_CHECKING:
    from pipedash.gateway.api import CicdApi


class SessionStatus(str, Enum):
    loading = "loading"
    unauthenticated = "unauthenticated"
    authenticated = "authenticated"


class SessionStore:
    """
    Authentication state for one dashboard process.

    Boot sequence: the store starts in `loading` (not resolved). `restore()` reads
    the persisted session once and resolves to `authenticated` (optimistically,
    without asking the server) or `unauthenticated`. Views that need a user must
    wait for `resolved` so an already-authenticated user never sees the login
    surface flash by.

    Only `login`, `logout` and `expire` mutate the session, and all three are
    safe to call repeatedly.
    """

    def __init__(
        self,
        storage: SessionStorage,
        *,
        navigate: Callable[[str], None] | None = None,
        login_path: str = "/login",
        audit: AuditLogger | None = None,
    ) -> None:
        self._storage = storage
        self._navigate = navigate
        self._login_path = login_path
        self._audit = audit
        self._session: Optional[Session] = None
        self._status = SessionStatus.loading
        self._listeners: List[Callable[[SessionStatus], None]] = []

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def resolved(self) -> bool:
        return self._status is not SessionStatus.loading

    @property
    def is_authenticated(self) -> bool:
        return self._status is SessionStatus.authenticated and self._session is not None

    @property
    def token(self) -> Optional[str]:
        return self._session.token if self._session else None

    @property
    def user(self) -> Optional[User]:
        return self._session.user if self._session else None

    def subscribe(self, callback: Callable[[SessionStatus], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def restore(self) -> SessionStatus:
        if self.resolved:
            return self._status
        session = self._storage.load()
        if session is None:
            self._set(None, SessionStatus.unauthenticated)
        else:
            self._set(session, SessionStatus.authenticated)
            self._write("session.restored", {"username": session.user.username})
        return self._status

    async def login(self, api: "CicdApi", *, username: str, password: str) -> User:
        try:
            session = await api.login(username=username, password=password)
        except GatewayError as e:
            # A failed sign-in replaces any previous session, on disk as well.
            self._discard_storage()
            self._set(None, SessionStatus.unauthenticated)
            self._write("session.login_failed", {"username": username, "error": e.message})
            raise
        self._storage.save(session)
        self._set(session, SessionStatus.authenticated)
        self._write("session.login", {"username": session.user.username})
        return session.user

    def logout(self) -> None:
        had_session = self._session is not None
        self._discard_storage()
        self._set(None, SessionStatus.unauthenticated)
        if had_session:
            self._write("session.logout", {})

    def expire(self, token: str | None) -> bool:
        """
        Server said the session is no longer valid. Clears the session and sends the
        user to the login surface, once. Responses carrying a token other than the
        current one (already expired, or replaced by a newer login) are ignored.
        """
        if token is None or self._session is None or self._session.token != token:
            return False
        username = self._session.user.username
        self._discard_storage()
        self._set(None, SessionStatus.unauthenticated)
        self._write("session.expired", {"username": username, "redirect": self._login_path})
        if self._navigate is not None:
            self._navigate(self._login_path)
        return True

    def _discard_storage(self) -> None:
        try:
            self._storage.clear()
        except OSError as e:
            self._write("session.storage_clear_failed", {"error": f"{type(e).__name__}: {e}"})

    def _set(self, session: Optional[Session], status: SessionStatus) -> None:
        changed = status is not self._status or session is not self._session
        self._session = session
        self._status = status
        if not changed:
            return
        for cb in list(self._listeners):
            try:
                cb(status)
            except Exception:  # noqa: BLE001
                continue

    def _write(self, event_type: str, payload: dict) -> None:
        if self._audit is not None:
            self._audit.write("session", event_type, payload)
