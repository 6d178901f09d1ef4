from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class LedgerEventType(str, Enum):
    USAGE = "usage"
    BALANCE = "balance"
    SUBSCRIPTION = "subscription"
    ERROR = "error"


class LedgerEntry(DBSerializableModel):
    """
    Structured ledger entry for every minute or money movement, persisted
    to the DB and mirrored to the JSONL ledger file.
    """

    collection_name: ClassVar[str] = "ledger"

    id: Optional[str] = Field(default=None)
    event_type: LedgerEventType
    user_id: Optional[str] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Correlation id for tracing a logical operation (usually the job id).",
    )
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
