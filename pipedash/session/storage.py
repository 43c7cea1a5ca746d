from __future__ import annotations

import json
import os
from typing import Optional

from pydantic import ValidationError

from pipedash.models import Session


class SessionStorage:
    """
    Durable `{token, user}` record kept in a small JSON file.
    A missing or unreadable file means "no session".
    """

    def __init__(self, path: str) -> None:
        self.path = path

    def load(self) -> Optional[Session]:
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f) or {}
        except (OSError, json.JSONDecodeError):
            return None
        if not isinstance(raw, dict) or not raw.get("token"):
            return None
        try:
            return Session.model_validate(raw)
        except ValidationError:
            return None

    def save(self, session: Session) -> None:
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(session.model_dump(mode="json"), f)
        os.replace(tmp, self.path)

    def clear(self) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
