from __future__ import annotations

import os

import pytest

from pipedash.settings import Settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Keep tests deterministic and isolated from developer machine env.
    """
    for k in list(os.environ.keys()):
        if k.startswith("PIPEDASH_"):
            monkeypatch.delenv(k, raising=False)


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        api_base_url="http://testserver/api/v1",
        session_path=str(tmp_path / "session" / "session.json"),
        audit_log_path=str(tmp_path / "audit" / "pipedash_audit.jsonl"),
        builds_refresh_interval_s=0.05,
        deployments_refresh_interval_s=0.05,
    )
