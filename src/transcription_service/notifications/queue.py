from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class AsyncNotificationQueue(ABC):
    """
    Hand-off point between the billing services and whatever delivers
    emails or in-app messages. Payloads carry the stored notification id,
    so a consumer can mark the NotificationEvent sent or failed.
    """

    @abstractmethod
    async def enqueue(self, payload: Dict[str, Any]) -> None:
        ...


class InMemoryNotificationQueue(AsyncNotificationQueue):
    """Collects payloads in a list; used by tests and local runs."""

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []

    async def enqueue(self, payload: Dict[str, Any]) -> None:
        self.messages.append(payload)

    def of_type(self, notification_type: str, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            m
            for m in self.messages
            if m["type"] == notification_type and (user_id is None or m["user_id"] == user_id)
        ]
