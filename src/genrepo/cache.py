"""Cache adapter for materialized query results, keyed by caller-chosen strings."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheEntry:
    """An immutable snapshot of a result set stored under ``key``."""

    key: str
    payload: tuple[Any, ...]
    timestamp: datetime = field(default_factory=_now)


@runtime_checkable
class CacheAdapter(Protocol):
    """Key to result-set store. Entries never expire on their own."""

    def get(self, key: str) -> CacheEntry | None: ...

    def set(self, key: str, payload: Iterable[Any]) -> CacheEntry: ...

    def remove(self, key: str) -> bool: ...

    def clear(self) -> None: ...

    def keys(self) -> list[str]: ...


class MemoryCacheAdapter:
    """In-process cache shared by every caller of a repository.

    Entries are replaced whole under a lock, so a reader sees either the
    previous entry or the new one, never a partially written result.
    """

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> CacheEntry | None:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: str, payload: Iterable[Any]) -> CacheEntry:
        entry = CacheEntry(key=key, payload=tuple(payload))
        with self._lock:
            self._entries[key] = entry
        return entry

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
