from __future__ import annotations

from pipedash.dashboard.stats import recent, status_counts
from pipedash.models import Build


def _b(i: int, status: str, created_at: str | None) -> Build:
    return Build.model_validate({"id": i, "pipeline_id": 1, "status": status, "created_at": created_at})


def test_status_counts_and_recent() -> None:
    builds = [
        _b(1, "success", "2025-12-14T09:00:00Z"),
        _b(2, "failed", "2025-12-14T10:00:00Z"),
        _b(3, "running", None),
        _b(4, "success", "2025-12-14T11:00:00Z"),
    ]
    s = status_counts(builds)
    assert (s.total, s.success, s.failed, s.running, s.pending, s.cancelled) == (4, 2, 1, 1, 0, 0)
    assert [b.id for b in recent(builds, limit=3)] == [4, 2, 1]
    assert [b.id for b in recent(builds, limit=10)][-1] == 3
    assert recent(builds, limit=0) == []
