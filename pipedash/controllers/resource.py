from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, Set, Tuple, TypeVar

from pipedash.controllers.filters import Predicate, match_all
from pipedash.errors import GatewayError
from pipedash.telemetry.audit import AuditLogger

T = TypeVar("T")

Fetcher = Callable[[Dict[str, Any]], Awaitable[Sequence[T]]]


class ResourceController(Generic[T]):
    """
    Keeps one list view's collection fresh: an immediate fetch on start, an optional
    fixed-interval re-fetch, manual refreshes, and a local filter over the snapshot.

    Ordering: every fetch is tagged with an increasing sequence number and ticks never
    coalesce. A response is applied only if it carries the latest issued number and the
    controller is still active; anything else is dropped. In-flight requests are never
    cancelled, not even by `stop()`.

    Each applied response replaces the whole snapshot. A failed fetch keeps the previous
    snapshot, clears `loading` and leaves the ticker running; the gateway has already
    told the user.

    Must be driven from a running event loop.
    """

    def __init__(
        self,
        name: str,
        fetch: Fetcher,
        *,
        interval_s: float | None = None,
        params: Optional[Dict[str, Any]] = None,
        filter: Predicate | None = None,
        gate: Callable[[], bool] | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self.name = name
        self.interval_s = float(interval_s) if interval_s else None
        self._fetch = fetch
        self._params: Dict[str, Any] = dict(params or {})
        self._filter: Predicate = filter or match_all
        self._gate = gate
        self._audit = audit

        self._items: Tuple[T, ...] = ()
        self.loading: bool = False
        self.last_error: GatewayError | None = None
        self.refreshed_at: float | None = None

        self._issued_seq = 0
        self._applied_seq = 0
        self._active = False
        self._ticker: asyncio.Task | None = None
        self._inflight: Set[asyncio.Task] = set()
        self._listeners: List[Callable[["ResourceController[T]"], None]] = []

        # Dedupe repeated refresh failures in the audit log.
        self._last_error_sig: str | None = None
        self._last_error_ts: float = 0.0

    # ---- state ----

    @property
    def items(self) -> Tuple[T, ...]:
        return self._items

    @property
    def filter(self) -> Predicate:
        return self._filter

    @property
    def server_params(self) -> Dict[str, Any]:
        return dict(self._params)

    @property
    def active(self) -> bool:
        return self._active

    @property
    def issued_seq(self) -> int:
        return self._issued_seq

    @property
    def applied_seq(self) -> int:
        return self._applied_seq

    @property
    def visible(self) -> List[T]:
        return self.view()

    def view(self) -> List[T]:
        """The filtered view of the last applied snapshot. The snapshot itself is never touched."""
        pred = self._filter
        return [item for item in self._items if pred(item)]

    def subscribe(self, callback: Callable[["ResourceController[T]"], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    # ---- lifecycle ----

    def start(self) -> Optional[asyncio.Task]:
        if self._active:
            return None
        self._active = True
        self._write("controller.started", {"interval_s": self.interval_s, "params": self._params})
        task = self._issue()
        self._restart_ticker()
        return task

    def stop(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        if not self._active:
            return
        self._active = False
        self.loading = False
        self._write("controller.stopped", {"issued_seq": self._issued_seq, "applied_seq": self._applied_seq})

    def set_filter(self, predicate: Predicate | None) -> None:
        self._filter = predicate or match_all
        self._notify()

    def set_server_params(self, params: Optional[Dict[str, Any]] = None, **overrides: Any) -> Optional[asyncio.Task]:
        """
        Replace the server-side query parameters. While active this issues one fetch
        right away and restarts the ticker from now, so no second fetch follows it
        back-to-back.
        """
        new_params = dict(params or {})
        new_params.update(overrides)
        self._params = new_params
        if not self._active:
            return None
        task = self._issue()
        self._restart_ticker()
        return task

    def refresh_now(self) -> Optional[asyncio.Task]:
        if not self._active:
            return None
        return self._issue()

    async def wait_idle(self) -> None:
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ---- internals ----

    def _restart_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        if self._active and self.interval_s:
            self._ticker = asyncio.get_running_loop().create_task(self._tick_loop(), name=f"{self.name}-ticker")

    async def _tick_loop(self) -> None:
        interval = float(self.interval_s or 0)
        while self._active:
            await asyncio.sleep(interval)
            if not self._active:
                return
            self._issue()

    def _issue(self) -> Optional[asyncio.Task]:
        if self._gate is not None and not self._gate():
            return None
        self._issued_seq += 1
        seq = self._issued_seq
        self.loading = True
        self._notify()
        task = asyncio.get_running_loop().create_task(
            self._run_fetch(seq, dict(self._params)), name=f"{self.name}-fetch-{seq}"
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    def _accepts(self, seq: int) -> bool:
        return self._active and seq == self._issued_seq

    async def _run_fetch(self, seq: int, params: Dict[str, Any]) -> None:
        try:
            items = await self._fetch(params)
        except GatewayError as e:
            if not self._accepts(seq):
                self._dropped(seq, outcome="error")
                return
            self.loading = False
            self.last_error = e
            self._refresh_failed(e)
            self._notify()
            return

        if not self._accepts(seq):
            self._dropped(seq, outcome="ok")
            return
        self._items = tuple(items)
        self._applied_seq = seq
        self.loading = False
        self.last_error = None
        self.refreshed_at = time.time()
        self._notify()

    def _dropped(self, seq: int, *, outcome: str) -> None:
        self._write(
            "controller.stale_response_dropped",
            {"seq": seq, "latest_seq": self._issued_seq, "active": self._active, "outcome": outcome},
        )

    def _refresh_failed(self, e: GatewayError) -> None:
        err_sig = f"{type(e).__name__}: {e.message}"
        now_s = time.monotonic()
        if (self._last_error_sig != err_sig) or (now_s - self._last_error_ts > 60.0):
            self._write("controller.refresh_failed", {"error": err_sig, "params": self._params})
            self._last_error_sig = err_sig
            self._last_error_ts = now_s

    def _notify(self) -> None:
        for cb in list(self._listeners):
            try:
                cb(self)
            except Exception:  # noqa: BLE001
                continue

    def _write(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._audit is not None:
            self._audit.write(f"controller:{self.name}", event_type, payload)
