from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class WebhookEventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"


class WebhookEvent(DBSerializableModel):
    """
    Log of inbound payment-gateway events, keyed by the gateway event id.
    Used to acknowledge re-delivered events without re-applying them.
    """

    collection_name: ClassVar[str] = "subscriptionEvents"

    id: str = Field(description="Gateway-assigned event id.")
    event_type: str
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None
    status: WebhookEventStatus = WebhookEventStatus.RECEIVED
    error: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
