from __future__ import annotations

import time
from typing import Any, Dict, Optional, Tuple

from .base import AsyncCacheBackend


class InMemoryAsyncCache(AsyncCacheBackend):
    """
    Simple in-memory cache with optional TTL.
    Intended for tests and single-process deployments.
    """

    def __init__(self) -> None:
        self._store: Dict[str, Tuple[Any, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        value_ttl = self._store.get(key)
        if value_ttl is None:
            return None
        _, expires_at = value_ttl
        if expires_at is not None and expires_at < time.time():
            self._store.pop(key, None)
            return None
        return value_ttl

    async def get(self, key: str) -> Optional[Any]:
        value_ttl = self._live(key)
        return value_ttl[0] if value_ttl is not None else None

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        expires_at = time.time() + ttl_seconds if ttl_seconds is not None else None
        self._store[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    async def incr(self, key: str, ttl_seconds: int) -> tuple[int, float]:
        now = time.time()
        value_ttl = self._live(key)
        if value_ttl is None:
            expires_at = now + ttl_seconds
            self._store[key] = (1, expires_at)
            return 1, float(ttl_seconds)
        count, expires_at = value_ttl
        count = int(count) + 1
        self._store[key] = (count, expires_at)
        return count, max(0.0, (expires_at or now) - now)
