from __future__ import annotations

import copy
import threading
import time
from typing import Any, Callable, Optional, Protocol, Tuple

from cachetools import TTLCache

# (user_id, document_id, normalized query, k); None stands for anonymous or all documents.
CacheKey = Tuple[Optional[str], Optional[str], str, int]


class QueryCache(Protocol):
    def get(self, key: CacheKey) -> dict[str, Any] | None: ...

    def put(self, key: CacheKey, value: dict[str, Any]) -> None: ...


def normalize_query(query: str) -> str:
    return query.strip().casefold()


def make_cache_key(user_id: str | None, document_id: str | None, query: str, k: int) -> CacheKey:
    return (user_id, document_id, normalize_query(query), k)


class TTLQueryCache:
    """Answer payloads that expire a fixed time after they were written."""

    def __init__(
        self,
        *,
        ttl_seconds: float = 60.0,
        max_entries: int = 1024,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: TTLCache[CacheKey, dict[str, Any]] = TTLCache(
            maxsize=max_entries,
            ttl=ttl_seconds,
            timer=timer,
        )
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> dict[str, Any] | None:
        with self._lock:
            value = self._entries.get(key)
        return copy.deepcopy(value) if value is not None else None

    def put(self, key: CacheKey, value: dict[str, Any]) -> None:
        with self._lock:
            self._entries[key] = copy.deepcopy(value)

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)
