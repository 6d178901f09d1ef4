from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional


class AsyncCacheBackend(ABC):
    """
    Minimal async cache abstraction used for frequently read, rarely
    written data (the pricing document) and for rate-limit counters.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def incr(self, key: str, ttl_seconds: int) -> tuple[int, float]:
        """
        Increment a counter, starting a `ttl_seconds` window on first use.
        Returns the new count and the seconds left in the window.
        """
        ...
