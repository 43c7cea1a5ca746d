from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional


@dataclass(frozen=True)
class Notification:
    message: str
    level: str
    source: Optional[str]
    emitted_at_unix: float


Subscriber = Callable[[Notification], None]


class NotificationChannel:
    """
    Process-wide transient notifications (the "toast" surface).
    Best-effort: a failing subscriber must never break the publisher.
    """

    def __init__(self, *, history_size: int = 200) -> None:
        self._subscribers: List[Subscriber] = []
        self._history: Deque[Notification] = deque(maxlen=max(1, int(history_size)))

    @property
    def history(self) -> List[Notification]:
        return list(self._history)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, message: str, *, level: str = "error", source: str | None = None) -> Notification:
        note = Notification(message=message, level=level, source=source, emitted_at_unix=time.time())
        self._history.append(note)
        for cb in list(self._subscribers):
            try:
                cb(note)
            except Exception:  # noqa: BLE001
                # Best-effort: swallow.
                continue
        return note
