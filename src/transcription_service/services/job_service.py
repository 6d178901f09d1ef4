from __future__ import annotations

import asyncio
import json
import logging
from datetime import timedelta
from typing import Awaitable, Callable, List, Optional
from uuid import uuid4

from ..db.base import BaseDBManager
from ..errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    UpstreamError,
    ValidationFailed,
)
from ..integrations.speechmatics import TranscriptionVendor, VendorStatus
from ..logging.ledger_logger import LedgerLogger
from ..models.api_models import CreateTranscriptionRequest, JobProgress
from ..models.base import utcnow
from ..models.job import (
    MAX_DURATION_SECONDS,
    JobStatus,
    ProcessingStep,
    TranscriptionJob,
    TranscriptionMode,
    TranscriptSegment,
)
from ..models.usage import UsageRecord
from ..models.user import UserAccount
from ..storage.base import TranscriptStore
from .notification_service import NotificationService
from .usage_service import UsageService, minutes_for_duration


logger = logging.getLogger(__name__)

MACHINE_MODES = (TranscriptionMode.AI, TranscriptionMode.HYBRID)
RUNNABLE_STATUSES = (JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.PENDING_TRANSCRIPTION)
SHAREABLE_STATUSES = (JobStatus.COMPLETE, JobStatus.PENDING_REVIEW)


class JobService:
    """
    Transcription job lifecycle.

    Creating a job reserves its estimated minutes first; a job that cannot
    be paid for is never created. Processing walks the durable steps
    (queued, downloading, submitted, transcribing, storing, done/failed),
    saving the job at every step, and ends by settling the reservation
    with the vendor-reported duration or releasing it on failure.
    """

    def __init__(
        self,
        db: BaseDBManager,
        usage: UsageService,
        transcripts: TranscriptStore,
        ledger: LedgerLogger,
        vendor: Optional[TranscriptionVendor] = None,
        notifications: Optional[NotificationService] = None,
        inline_limit_bytes: int = 900_000,
        poll_interval_seconds: float = 5.0,
        max_polls: int = 120,
        submit_retries: int = 3,
        stuck_after_minutes: int = 30,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._db = db
        self._usage = usage
        self._transcripts = transcripts
        self._ledger = ledger
        self._vendor = vendor
        self._notifications = notifications
        self._inline_limit_bytes = inline_limit_bytes
        self._poll_interval = poll_interval_seconds
        self._max_polls = max_polls
        self._submit_retries = max(1, submit_retries)
        self._stuck_after = timedelta(minutes=stuck_after_minutes)
        self._sleep = sleep

    # Queries
    async def get_job(self, job_id: str) -> TranscriptionJob:
        job = await self._db.get_job(job_id)
        if job is None:
            raise NotFoundError(f"transcription {job_id} not found")
        return job

    async def list_jobs(
        self,
        user_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[TranscriptionJob]:
        return await self._db.list_jobs(user_id=user_id, status=status, limit=limit, offset=offset)

    async def find_stuck_jobs(self, older_than: Optional[timedelta] = None) -> List[TranscriptionJob]:
        return await self._db.find_stale_jobs(utcnow() - (older_than or self._stuck_after))

    @staticmethod
    def get_status(job: TranscriptionJob) -> JobProgress:
        return JobProgress(
            id=job.id or "",
            status=job.status.value,
            step=job.step.value,
            attempts=job.attempts,
            error=job.error,
            estimated_minutes=job.estimated_minutes,
            billed_minutes=job.billed_minutes,
            has_transcript=job.transcript is not None or job.transcript_ref is not None,
        )

    async def get_transcript(self, job: TranscriptionJob) -> List[TranscriptSegment]:
        if job.transcript is not None:
            return job.transcript
        if job.transcript_ref:
            return await self._transcripts.load(job.transcript_ref)
        raise NotFoundError("transcript is not available yet", {"status": job.status.value})

    # Sharing
    async def set_sharing(
        self, job: TranscriptionJob, user: UserAccount, shared: bool
    ) -> TranscriptionJob:
        """
        Turn the public read-only link for a finished transcript on or off.
        Turning it off drops the share id, so an old link stops working.
        """
        if job.user_id != user.id:
            raise AuthorizationError("Only the owner can share a transcription")
        if not shared:
            job.is_shared = False
            job.share_id = None
            job.shared_at = None
            return await self._db.update_job(job)

        if job.status not in SHAREABLE_STATUSES:
            raise ConflictError(
                f"a {job.status.value} transcription cannot be shared",
                {"status": job.status.value},
            )
        if not job.is_shared:
            job.is_shared = True
            job.share_id = f"{job.id}-{uuid4().hex[:12]}"
            job.shared_at = utcnow()
            job = await self._db.update_job(job)
            logger.info("Job %s shared as %s", job.id, job.share_id)
        return job

    async def get_shared_job(self, share_id: str) -> TranscriptionJob:
        job = await self._db.find_job_by_share_id(share_id)
        if job is None:
            raise NotFoundError("Shared transcript not found or is no longer available")
        return job

    # Creation
    async def create_job(
        self, user: UserAccount, request: CreateTranscriptionRequest
    ) -> TranscriptionJob:
        if request.mode in MACHINE_MODES and not request.download_url:
            raise ValidationFailed(
                "downloadUrl is required for ai and hybrid transcriptions",
                {"downloadUrl": "required"},
            )
        estimate = max(1, minutes_for_duration(request.duration))
        job_id = uuid4().hex

        # Raises InsufficientFundsError before anything is written.
        await self._usage.reserve_minutes(user.id or "", job_id, request.mode, estimate)

        job = TranscriptionJob(
            id=job_id,
            user_id=user.id or "",
            original_filename=request.original_filename,
            download_url=request.download_url,
            mode=request.mode,
            status=(
                JobStatus.PENDING_TRANSCRIPTION
                if request.mode == TranscriptionMode.HUMAN
                else JobStatus.PROCESSING
            ),
            duration=request.duration,
            estimated_minutes=estimate,
            language=request.language,
            domain=request.domain,
            special_instructions=request.special_instructions,
        )
        job.advance(ProcessingStep.QUEUED)
        try:
            job = await self._db.add_job(job)
        except Exception:
            await self._usage.release_reservation(job_id)
            raise
        logger.info(
            "Created %s job %s for user %s (%d min estimated)",
            job.mode.value,
            job.id,
            job.user_id,
            estimate,
        )
        return job

    # Processing
    @staticmethod
    def check_processable(job: TranscriptionJob) -> None:
        if job.mode not in MACHINE_MODES:
            raise ValidationFailed(
                "human transcriptions are completed by an admin", {"mode": job.mode.value}
            )
        if job.status not in RUNNABLE_STATUSES:
            raise ConflictError(
                f"transcription is already {job.status.value}", {"status": job.status.value}
            )

    async def process_job(self, job_id: str) -> TranscriptionJob:
        """
        Run (or re-run) a machine transcription to completion.

        A failed job is retried with a fresh reservation. Vendor errors end
        with the job marked failed rather than an exception.
        """
        job = await self.get_job(job_id)
        self.check_processable(job)

        if self._vendor is None:
            if job.status != JobStatus.PENDING_TRANSCRIPTION:
                job.status = JobStatus.PENDING_TRANSCRIPTION
                job.advance(ProcessingStep.QUEUED, "no transcription vendor configured")
                job = await self._db.update_job(job)
            logger.warning("No transcription vendor configured; job %s left pending", job.id)
            return job

        if job.status == JobStatus.FAILED:
            await self._usage.reserve_minutes(
                job.user_id, job.id or "", job.mode, job.estimated_minutes
            )

        job.status = JobStatus.PROCESSING
        job.error = None
        job.attempts += 1
        try:
            if job.vendor_job_id is None:
                job.advance(ProcessingStep.DOWNLOADING)
                job = await self._db.update_job(job)
                audio = await self._vendor.download(job.download_url or "")
                job.vendor_job_id = await self._submit(job, audio)
                job.advance(ProcessingStep.SUBMITTED, job.vendor_job_id)
                job = await self._db.update_job(job)

            job.advance(ProcessingStep.TRANSCRIBING)
            job = await self._db.update_job(job)
            status = await self._wait_for_vendor(job.vendor_job_id)

            if status == VendorStatus.REJECTED:
                job.vendor_job_id = None
                return await self._fail(job, "transcription vendor rejected the job")
            if status == VendorStatus.RUNNING:
                return await self._fail(
                    job, f"transcription did not finish after {self._max_polls} status checks"
                )
            job = await self._settle(job)
        except UpstreamError as exc:
            return await self._fail(job, exc.message)
        except Exception:
            logger.exception("Unexpected error while processing job %s", job.id)
            if not await self._is_billed(job):
                await self._fail(job, "internal error while processing the transcription")
            raise
        return await self._mark_done(job)

    async def retrieve_job(self, job_id: str) -> TranscriptionJob:
        """Check a stuck job's vendor status once and finish it if the vendor is done."""
        job = await self.get_job(job_id)
        if job.status != JobStatus.PROCESSING:
            raise ConflictError(
                f"transcription is {job.status.value}, not processing", {"status": job.status.value}
            )
        if not job.vendor_job_id:
            raise ConflictError("transcription was never submitted to the vendor")
        if self._vendor is None:
            raise ConflictError("no transcription vendor configured")

        try:
            status = await self._vendor.poll(job.vendor_job_id)
            if status == VendorStatus.RUNNING:
                logger.info("Job %s is still running at the vendor", job.id)
                return job
            if status == VendorStatus.REJECTED:
                job.vendor_job_id = None
                return await self._fail(job, "transcription vendor rejected the job")
            job = await self._settle(job)
        except UpstreamError as exc:
            return await self._fail(job, exc.message)
        return await self._mark_done(job)

    async def _submit(self, job: TranscriptionJob, audio: bytes) -> str:
        options = {}
        if job.domain:
            options["domain"] = job.domain
        attempt = 1
        while True:
            try:
                return await self._vendor.submit(audio, job.original_filename, job.language, options)
            except UpstreamError:
                if attempt >= self._submit_retries:
                    raise
                logger.warning(
                    "Submitting job %s failed (attempt %d/%d), retrying",
                    job.id,
                    attempt,
                    self._submit_retries,
                )
                attempt += 1

    async def _wait_for_vendor(self, vendor_job_id: str) -> VendorStatus:
        status = VendorStatus.RUNNING
        for poll in range(self._max_polls):
            status = await self._vendor.poll(vendor_job_id)
            if status != VendorStatus.RUNNING:
                break
            if poll + 1 < self._max_polls:
                await self._sleep(self._poll_interval)
        return status

    async def _settle(self, job: TranscriptionJob) -> TranscriptionJob:
        result = await self._vendor.fetch(job.vendor_job_id)
        job.advance(ProcessingStep.STORING)
        job = await self._db.update_job(job)
        await self._store_transcript(job, result.segments)

        if result.duration_seconds:
            job.duration = min(result.duration_seconds, MAX_DURATION_SECONDS)
        record = await self._usage.commit_reservation(
            job.id or "", minutes_for_duration(job.duration)
        )
        job.billed_minutes = record.minutes_used
        job.credits_used = record.credits_used
        return job

    async def _mark_done(self, job: TranscriptionJob) -> TranscriptionJob:
        # The job is billed by now; nothing past this point may fail it.
        if job.mode == TranscriptionMode.HYBRID:
            job.status = JobStatus.PENDING_REVIEW
        else:
            job.status = JobStatus.COMPLETE
            job.completed_at = utcnow()
        job.advance(ProcessingStep.DONE)
        job = await self._db.update_job(job)

        logger.info(
            "Job %s finished as %s (%s min billed)", job.id, job.status.value, job.billed_minutes
        )
        await self._notify_completed(job)
        return job

    async def _is_billed(self, job: TranscriptionJob) -> bool:
        if job.billed_minutes is not None:
            return True
        record = await self._db.get_usage_record(UsageRecord.id_for_job(job.id or ""))
        return record is not None

    async def _notify_completed(self, job: TranscriptionJob) -> None:
        if self._notifications is None:
            return
        try:
            await self._notifications.notify_job_completed(
                job.user_id, job.id or "", job.original_filename
            )
        except Exception:
            logger.exception("Could not queue the completion notice for job %s", job.id)

    async def _store_transcript(self, job: TranscriptionJob, segments: List[TranscriptSegment]) -> None:
        encoded = json.dumps([s.model_dump(mode="json") for s in segments]).encode("utf-8")
        if len(encoded) > self._inline_limit_bytes:
            job.transcript_ref = await self._transcripts.save(job.id or "", segments)
            job.transcript = None
            logger.info(
                "Transcript for job %s is %d bytes; stored at %s",
                job.id,
                len(encoded),
                job.transcript_ref,
            )
        else:
            job.transcript = segments
            job.transcript_ref = None

    async def _fail(self, job: TranscriptionJob, reason: str) -> TranscriptionJob:
        await self._usage.release_reservation(job.id or "")
        job.status = JobStatus.FAILED
        job.error = reason
        job.advance(ProcessingStep.FAILED, reason)
        job = await self._db.update_job(job)

        logger.warning("Job %s failed: %s", job.id, reason)
        await self._ledger.log_error(
            message="Transcription failed",
            details={"reason": reason, "step_attempts": job.attempts, "mode": job.mode.value},
            user_id=job.user_id,
            correlation_id=job.id,
        )
        if self._notifications is not None:
            await self._notifications.notify_job_failed(job.user_id, job.id or "", reason)
        return job

    # Admin
    async def admin_complete_job(
        self,
        job_id: str,
        admin: UserAccount,
        transcript: Optional[List[TranscriptSegment]] = None,
        duration_seconds: Optional[float] = None,
    ) -> TranscriptionJob:
        """
        Finish a human job, or sign off a reviewed hybrid job. Bills the job
        unless processing already did.
        """
        job = await self.get_job(job_id)
        if job.status in (JobStatus.COMPLETE, JobStatus.FAILED):
            raise ConflictError(
                f"transcription is already {job.status.value}", {"status": job.status.value}
            )
        if transcript is not None:
            await self._store_transcript(job, transcript)
        elif job.transcript is None and job.transcript_ref is None:
            raise ValidationFailed("a transcript is required to complete this job", {"transcript": "required"})

        if duration_seconds is not None:
            job.duration = duration_seconds
        if job.billed_minutes is None:
            record = await self._usage.commit_reservation(
                job.id or "", minutes_for_duration(job.duration)
            )
            job.billed_minutes = record.minutes_used
            job.credits_used = record.credits_used

        job.status = JobStatus.COMPLETE
        job.completed_at = utcnow()
        job.error = None
        job.advance(ProcessingStep.DONE, f"completed by {admin.email or admin.id}")
        job = await self._db.update_job(job)

        logger.info("Admin %s completed job %s", admin.id, job.id)
        await self._notify_completed(job)
        return job

    async def admin_fail_job(self, job_id: str, admin: UserAccount, reason: str) -> TranscriptionJob:
        job = await self.get_job(job_id)
        if job.status == JobStatus.FAILED:
            return job
        if job.status == JobStatus.COMPLETE or job.billed_minutes is not None:
            raise ConflictError(
                "transcription has already been billed; refund the wallet instead",
                {"status": job.status.value},
            )
        logger.info("Admin %s failing job %s", admin.id, job.id)
        return await self._fail(job, reason)
