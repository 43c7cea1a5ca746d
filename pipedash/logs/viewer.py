from __future__ import annotations

from enum import Enum
from typing import Awaitable, Callable, List, Optional

from pipedash.errors import GatewayError
from pipedash.models import LogBlob
from pipedash.telemetry.audit import AuditLogger

NO_LOGS_TEXT = "No logs available."
LOAD_FAILED_TEXT = "Failed to load logs."


class ViewerState(str, Enum):
    closed = "closed"
    loading = "loading"
    loaded = "loaded"
    error = "error"


class LogViewer:
    """
    On-demand log pane for one kind of entity (builds or deployments).

    closed -> loading -> loaded | error -> closed. Every `open()` refetches the whole
    blob; nothing is cached. If the user opens another entity (or closes the pane)
    before a fetch returns, that response is ignored: the last open wins.
    Fetch failures end in the `error` state with a fixed message, never an exception.
    """

    def __init__(
        self,
        fetch_logs: Callable[[int], Awaitable[str]],
        *,
        entity_type: str,
        audit: AuditLogger | None = None,
        empty_text: str = NO_LOGS_TEXT,
        error_text: str = LOAD_FAILED_TEXT,
    ) -> None:
        self.entity_type = entity_type
        self._fetch_logs = fetch_logs
        self._audit = audit
        self.empty_text = empty_text
        self.error_text = error_text

        self.state = ViewerState.closed
        self.entity_id: Optional[int] = None
        self.text = ""
        self._open_token = 0
        self._listeners: List[Callable[["LogViewer"], None]] = []

    @property
    def visible(self) -> bool:
        return self.state is not ViewerState.closed

    @property
    def loading(self) -> bool:
        return self.state is ViewerState.loading

    @property
    def blob(self) -> Optional[LogBlob]:
        if self.state is not ViewerState.loaded or self.entity_id is None:
            return None
        return LogBlob(entity_type=self.entity_type, entity_id=self.entity_id, text=self.text)

    def subscribe(self, callback: Callable[["LogViewer"], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    async def open(self, entity_id: int) -> ViewerState:
        self._open_token += 1
        token = self._open_token
        self.entity_id = int(entity_id)
        self.text = ""
        self.state = ViewerState.loading
        self._notify()
        self._write("logs.opened", {"entity_id": self.entity_id})

        try:
            text = await self._fetch_logs(self.entity_id)
        except GatewayError as e:
            if token != self._open_token:
                return self.state
            self.state = ViewerState.error
            self.text = self.error_text
            self._write("logs.failed", {"entity_id": self.entity_id, "error": e.message})
            self._notify()
            return self.state

        if token != self._open_token:
            return self.state
        self.state = ViewerState.loaded
        self.text = text if text else self.empty_text
        self._notify()
        return self.state

    def close(self) -> None:
        # Invalidate any fetch still in flight.
        self._open_token += 1
        if self.state is ViewerState.closed:
            return
        self.state = ViewerState.closed
        self.entity_id = None
        self.text = ""
        self._notify()

    def _notify(self) -> None:
        for cb in list(self._listeners):
            try:
                cb(self)
            except Exception:  # noqa: BLE001
                continue

    def _write(self, event_type: str, payload: dict) -> None:
        if self._audit is not None:
            self._audit.write(f"logs:{self.entity_type}", event_type, payload)
