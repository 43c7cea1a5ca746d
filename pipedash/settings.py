from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PIPEDASH_", extra="ignore")

    # All REST calls are issued relative to this versioned base path.
    api_base_url: str = "http://localhost:8080/api/v1"
    # Fixed per-call upper bound. Controllers add no deadline of their own.
    request_timeout_s: float = 30.0

    # Durable session (token + user profile). Read once at startup, written on login,
    # removed on logout or session expiry.
    session_path: str = "var/session/session.json"

    audit_log_path: str = "var/audit/pipedash_audit.jsonl"

    # Polling intervals for the list views that refresh on their own.
    # Projects and pipelines only refresh on demand.
    builds_refresh_interval_s: float = 10.0
    deployments_refresh_interval_s: float = 15.0

    # Transient notifications kept for late subscribers / the CLI.
    notification_history_size: int = 200

    # Where the client navigates once the server rejects the session.
    login_path: str = "/login"
