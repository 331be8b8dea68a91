from __future__ import annotations

import time
from collections.abc import Iterable, Mapping, MutableSequence
from typing import Any, TypeVar
from uuid import uuid4

T = TypeVar("T", bound=Mapping[str, Any])


def new_uid() -> str:
    return str(uuid4())


def now_ms() -> int:
    return int(time.time() * 1000)


def push_unique(target: MutableSequence[T], items: Iterable[T], key: str) -> list[T]:
    """Append items whose ``key`` is not already in ``target``.

    Returns the items that were appended, in arrival order. Duplicates within
    ``items`` itself are also collapsed to their first occurrence.
    """

    seen = {item.get(key) for item in target}
    added: list[T] = []
    for item in items:
        value = item.get(key)
        if value in seen:
            continue
        seen.add(value)
        target.append(item)
        added.append(item)
    return added


def get_min(items: Iterable[T], key: str) -> T | None:
    lowest: T | None = None
    for item in items:
        value = item.get(key)
        if value is None:
            continue
        if lowest is None or value < lowest[key]:
            lowest = item
    return lowest


def pretty_edited_at(timestamp_ms: int, *, now: int | None = None) -> str:
    current = now_ms() if now is None else now
    seconds = max(0, (current - int(timestamp_ms)) // 1000)
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds >= size:
            count = seconds // size
            suffix = "" if count == 1 else "s"
            return f"Edited {count} {unit}{suffix} ago"
    return "Edited just now"
