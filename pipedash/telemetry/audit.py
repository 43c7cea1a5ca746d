from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class AuditRecord:
    ts: str
    correlation_id: str
    actor: str
    event_type: str
    payload: Dict[str, Any]


class AuditLogger:
    """
    Append-only JSONL event log for the client (session changes, failed requests,
    refresh drops, user actions). One JSON object per line.
    """

    def __init__(self, path: str):
        self.path = path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)

    def write(
        self,
        correlation_id: str,
        event_type: str,
        payload: Dict[str, Any],
        *,
        actor: str = "pipedash",
        timestamp: Optional[str] = None,
    ) -> None:
        record = {
            "ts": timestamp or datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "correlation_id": correlation_id,
            "actor": actor,
            "event_type": event_type,
            "payload": payload,
        }
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")


def tail_jsonl(path: str, *, max_lines: int = 200) -> List[AuditRecord]:
    if not os.path.exists(path):
        return []
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        lines = f.read().splitlines()
    out: List[AuditRecord] = []
    for ln in lines[-max_lines:]:
        try:
            obj = json.loads(ln)
        except json.JSONDecodeError:
            continue
        out.append(
            AuditRecord(
                ts=obj.get("ts", ""),
                correlation_id=obj.get("correlation_id", ""),
                actor=obj.get("actor", ""),
                event_type=obj.get("event_type", ""),
                payload=obj.get("payload", {}) or {},
            )
        )
    return out
