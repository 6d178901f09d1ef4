from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Optional

from pydantic import ConfigDict, Field

from .base import DBSerializableModel, utcnow
from .job import TranscriptionMode


class UsageSource(str, Enum):
    FREE_TRIAL = "free_trial"
    SUBSCRIPTION = "subscription"
    CREDITS = "credits"
    OVERAGE = "overage"


class MinuteReservation(DBSerializableModel):
    """
    Funds held for a job while it runs: included subscription minutes,
    free-trial minutes, legacy credits and wallet money.

    Keyed by job id. `committed` and `released` are claimed with a
    conditional update so exactly one settlement or release happens.
    """

    collection_name: ClassVar[str] = "minuteReservations"

    id: Optional[str] = Field(default=None)
    user_id: str
    job_id: str
    mode: TranscriptionMode
    estimated_minutes: int = Field(ge=0)
    reserved_minutes: int = Field(
        ge=0, description="Share of the estimate held against included minutes."
    )
    free_trial_reserved: int = Field(default=0, ge=0)
    credits_reserved: int = Field(default=0, ge=0)
    wallet_reserved: Decimal = Field(default=Decimal("0.00"), ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    committed: bool = False
    released: bool = False
    closed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return not (self.committed or self.released)


class UsageRecord(DBSerializableModel):
    """
    Immutable record of one completed job's consumption.
    """

    model_config = ConfigDict(frozen=True)

    collection_name: ClassVar[str] = "usageRecords"

    id: str
    user_id: str
    job_id: str
    mode: TranscriptionMode
    source: UsageSource
    minutes_used: int = Field(ge=0, description="Actual billed minutes for the job.")
    minutes_from_free_trial: int = Field(default=0, ge=0)
    minutes_from_subscription: int = Field(default=0, ge=0)
    overage_minutes: int = Field(default=0, ge=0)
    credits_used: int = Field(default=0, ge=0)
    wallet_charged: Decimal = Decimal("0.00")
    billing_cycle_start: Optional[datetime] = None
    billing_cycle_end: Optional[datetime] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @staticmethod
    def id_for_job(job_id: str) -> str:
        return f"usage-{job_id}"
