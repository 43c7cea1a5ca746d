from __future__ import annotations

from enum import Enum
from typing import Any, Callable

Predicate = Callable[[Any], bool]


def match_all(_item: Any) -> bool:
    return True


def _field_value(item: Any, field: str) -> Any:
    # Dotted paths reach embedded records, e.g. "pipeline.name".
    cur = item
    for part in field.split("."):
        if cur is None:
            return None
        cur = cur.get(part) if isinstance(cur, dict) else getattr(cur, part, None)
    if isinstance(cur, Enum):
        return cur.value
    return cur


def text_search(query: str | None, *fields: str) -> Predicate:
    """Case-insensitive substring match of `query` against any of `fields`. Blank query matches everything."""
    needle = (query or "").strip().lower()
    if not needle:
        return match_all

    def _pred(item: Any) -> bool:
        for f in fields:
            v = _field_value(item, f)
            if v is not None and needle in str(v).lower():
                return True
        return False

    return _pred


def field_equals(field: str, value: Any) -> Predicate:
    """Exact match on one field. `None` means "no selection" and matches everything."""
    if value is None:
        return match_all
    expected = value.value if isinstance(value, Enum) else value

    def _pred(item: Any) -> bool:
        return _field_value(item, field) == expected

    return _pred


def all_of(*preds: Predicate) -> Predicate:
    active = [p for p in preds if p is not None and p is not match_all]
    if not active:
        return match_all
    if len(active) == 1:
        return active[0]

    def _pred(item: Any) -> bool:
        return all(p(item) for p in active)

    return _pred
