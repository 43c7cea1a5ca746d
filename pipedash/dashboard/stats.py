from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Sequence, TypeVar

from pipedash.models import BuildStatus

T = TypeVar("T")


@dataclass(frozen=True)
class StatusSummary:
    total: int
    pending: int
    running: int
    success: int
    failed: int
    cancelled: int


def status_counts(items: Iterable[object]) -> StatusSummary:
    counts = {s: 0 for s in BuildStatus}
    total = 0
    for item in items:
        total += 1
        st = getattr(item, "status", None)
        if isinstance(st, BuildStatus):
            counts[st] += 1
    return StatusSummary(
        total=total,
        pending=counts[BuildStatus.pending],
        running=counts[BuildStatus.running],
        success=counts[BuildStatus.success],
        failed=counts[BuildStatus.failed],
        cancelled=counts[BuildStatus.cancelled],
    )


def recent(items: Sequence[T], *, limit: int = 5) -> List[T]:
    """Newest first by `created_at`; records without a timestamp sort last."""
    floor = datetime.min.replace(tzinfo=timezone.utc)

    def _key(item: T) -> datetime:
        ts = getattr(item, "created_at", None)
        if ts is None:
            return floor
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts

    return sorted(items, key=_key, reverse=True)[: max(0, int(limit))]
