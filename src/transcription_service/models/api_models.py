from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .job import (
    MAX_DURATION_SECONDS,
    JobStatus,
    TranscriptionJob,
    TranscriptionMode,
    TranscriptSegment,
)
from .pricing import CreditRates, ModeRates
from .transaction import Transaction
from .usage import UsageRecord
from .user import UserAccount


class ApiModel(BaseModel):
    """Request/response bodies use camelCase on the wire, like the stored documents."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Auth
class SessionRequest(ApiModel):
    id_token: str = Field(min_length=1)


class SessionResponse(ApiModel):
    user: UserAccount


# Transcriptions
class CreateTranscriptionRequest(ApiModel):
    original_filename: str = Field(min_length=1, max_length=255)
    download_url: Optional[str] = Field(default=None, max_length=2048)
    mode: TranscriptionMode
    duration: float = Field(ge=0, le=MAX_DURATION_SECONDS, description="Audio length in seconds.")
    language: str = Field(default="en", min_length=2, max_length=16)
    domain: Optional[str] = Field(default=None, max_length=64)
    special_instructions: Optional[str] = Field(default=None, max_length=2000)


class JobProgress(ApiModel):
    id: str
    status: str
    step: str
    attempts: int
    error: Optional[str] = None
    estimated_minutes: int
    billed_minutes: Optional[int] = None
    has_transcript: bool


class TranscriptResponse(ApiModel):
    job_id: str
    segments: List[TranscriptSegment]


class JobListResponse(ApiModel):
    jobs: List[TranscriptionJob]
    limit: int
    offset: int


class ShareRequest(ApiModel):
    is_shared: bool


class ShareResponse(ApiModel):
    is_shared: bool
    share_id: Optional[str] = None
    share_url: Optional[str] = None


class SharedTranscription(ApiModel):
    """The public view of a shared job: no owner, billing or source URL."""

    id: str
    original_filename: str
    mode: TranscriptionMode
    status: JobStatus
    duration: float
    language: str
    created_at: datetime
    completed_at: Optional[datetime] = None
    shared_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: TranscriptionJob) -> "SharedTranscription":
        return cls.model_validate(job.model_dump(include=set(cls.model_fields)))


# Subscriptions
class CreateSubscriptionRequest(ApiModel):
    plan_id: str
    trial_days: Optional[int] = Field(default=None, ge=1, le=90)


class CancelSubscriptionRequest(ApiModel):
    immediately: bool = False


class ChangePlanRequest(ApiModel):
    plan_id: str


# Wallet
class TopUpRequest(ApiModel):
    amount: Decimal = Field(gt=0, le=Decimal("1000"), decimal_places=2)


class TopUpResponse(ApiModel):
    payment_intent_id: str
    client_secret: Optional[str] = None
    amount: Decimal
    currency: str


# Admin
class AdminWalletUpdate(ApiModel):
    wallet_balance: Decimal


class AdminCreditsUpdate(ApiModel):
    credits: int


class AdminFreeTrialUpdate(ApiModel):
    free_trial_minutes: int
    reason: Optional[str] = Field(default=None, max_length=500)


class AdminNotifyRequest(ApiModel):
    subject: str = Field(min_length=1, max_length=200)
    body: str = Field(min_length=1, max_length=10000)


class AdminCompleteJobRequest(ApiModel):
    transcript: Optional[List[TranscriptSegment]] = None
    duration: Optional[float] = Field(default=None, ge=0, le=MAX_DURATION_SECONDS)


class AdminFailJobRequest(ApiModel):
    reason: str = Field(min_length=1, max_length=500)


class PricingUpdateRequest(ApiModel):
    pay_as_you_go: ModeRates
    credits_per_minute: Optional[CreditRates] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)


class UserActivityResponse(ApiModel):
    user: UserAccount
    transactions: List[Transaction]
    usage: List[UsageRecord]
    jobs: List[TranscriptionJob]


class UserListResponse(ApiModel):
    users: List[UserAccount]
    total: int
    limit: int
    offset: int
