from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .base import DBSerializableModel, utcnow


MAX_DURATION_SECONDS = 86400
MAX_CREDITS_PER_JOB = 10000


class TranscriptionMode(str, Enum):
    AI = "ai"
    HYBRID = "hybrid"
    HUMAN = "human"


class JobStatus(str, Enum):
    PROCESSING = "processing"
    PENDING_REVIEW = "pending-review"
    PENDING_TRANSCRIPTION = "pending-transcription"
    COMPLETE = "complete"
    FAILED = "failed"


class ProcessingStep(str, Enum):
    """Durable orchestration steps, persisted before and after each one runs."""

    QUEUED = "queued"
    DOWNLOADING = "downloading"
    SUBMITTED = "submitted"
    TRANSCRIBING = "transcribing"
    STORING = "storing"
    DONE = "done"
    FAILED = "failed"


class StepTransition(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    step: ProcessingStep
    at: datetime = Field(default_factory=utcnow)
    detail: Optional[str] = None


class TranscriptSegment(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    start: float = Field(ge=0)
    end: float = Field(ge=0)
    text: str
    speaker: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=1)


class TranscriptionJob(DBSerializableModel):
    """
    A unit of transcription work and its durable processing record.

    ``step``/``step_history`` let a restarted process see how far the
    orchestrator got, and let an admin spot jobs stuck mid-flight.
    """

    collection_name: ClassVar[str] = "transcriptions"

    id: Optional[str] = Field(default=None)
    user_id: str
    original_filename: str = Field(min_length=1, max_length=255)
    download_url: Optional[str] = None
    mode: TranscriptionMode
    status: JobStatus = JobStatus.PROCESSING
    duration: float = Field(
        default=0, ge=0, le=MAX_DURATION_SECONDS, description="Audio length in seconds."
    )
    estimated_minutes: int = Field(default=0, ge=0)
    billed_minutes: Optional[int] = Field(default=None, ge=0)
    credits_used: int = Field(default=0, ge=0, le=MAX_CREDITS_PER_JOB)
    language: str = Field(default="en", max_length=16)
    domain: Optional[str] = Field(default=None, max_length=64)
    special_instructions: Optional[str] = Field(default=None, max_length=2000)

    vendor_job_id: Optional[str] = None
    transcript: Optional[List[TranscriptSegment]] = None
    transcript_ref: Optional[str] = Field(
        default=None, description="Blob-storage pointer for transcripts too large to inline."
    )

    step: ProcessingStep = ProcessingStep.QUEUED
    step_history: List[StepTransition] = Field(default_factory=list)
    attempts: int = 0
    error: Optional[str] = None

    is_shared: bool = False
    share_id: Optional[str] = None
    shared_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def advance(self, step: ProcessingStep, detail: Optional[str] = None) -> None:
        self.step = step
        self.step_history = [*self.step_history, StepTransition(step=step, detail=detail)]
        self.updated_at = utcnow()

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETE, JobStatus.FAILED)
