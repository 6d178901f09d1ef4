from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status

from ...container import ServiceContainer
from ...models.api_models import (
    CreateTranscriptionRequest,
    JobListResponse,
    JobProgress,
    ShareRequest,
    ShareResponse,
    TranscriptResponse,
)
from ...models.job import JobStatus, TranscriptionJob
from ...models.user import UserAccount
from ..deps import ensure_job_access, get_container, get_current_user


router = APIRouter(prefix="/transcriptions", tags=["transcriptions"])


async def _owned_job(job_id: str, user: UserAccount, container: ServiceContainer) -> TranscriptionJob:
    job = await container.jobs.get_job(job_id)
    ensure_job_access(job, user)
    return job


@router.post("", response_model=TranscriptionJob, status_code=status.HTTP_201_CREATED)
async def create_transcription(
    payload: CreateTranscriptionRequest,
    user: UserAccount = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> TranscriptionJob:
    return await container.jobs.create_job(user, payload)


@router.get("", response_model=JobListResponse)
async def list_transcriptions(
    status_filter: Optional[JobStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: UserAccount = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> JobListResponse:
    jobs = await container.jobs.list_jobs(
        user_id=user.id, status=status_filter, limit=limit, offset=offset
    )
    return JobListResponse(jobs=jobs, limit=limit, offset=offset)


@router.get("/{job_id}", response_model=TranscriptionJob)
async def get_transcription(
    job_id: str,
    user: UserAccount = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> TranscriptionJob:
    return await _owned_job(job_id, user, container)


@router.get("/{job_id}/status", response_model=JobProgress)
async def get_transcription_status(
    job_id: str,
    user: UserAccount = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> JobProgress:
    job = await _owned_job(job_id, user, container)
    return container.jobs.get_status(job)


@router.get("/{job_id}/transcript", response_model=TranscriptResponse)
async def get_transcript(
    job_id: str,
    user: UserAccount = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> TranscriptResponse:
    job = await _owned_job(job_id, user, container)
    segments = await container.jobs.get_transcript(job)
    return TranscriptResponse(job_id=job_id, segments=segments)


@router.post("/{job_id}/process", status_code=status.HTTP_202_ACCEPTED)
async def process_transcription(
    job_id: str,
    background_tasks: BackgroundTasks,
    user: UserAccount = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    job = await _owned_job(job_id, user, container)
    container.jobs.check_processable(job)
    background_tasks.add_task(container.jobs.process_job, job_id)
    return {"jobId": job_id, "accepted": True}


@router.post("/{job_id}/retrieve", response_model=TranscriptionJob)
async def retrieve_transcription(
    job_id: str,
    user: UserAccount = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> TranscriptionJob:
    await _owned_job(job_id, user, container)
    return await container.jobs.retrieve_job(job_id)


@router.post("/{job_id}/share", response_model=ShareResponse)
async def share_transcription(
    job_id: str,
    payload: ShareRequest,
    user: UserAccount = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
) -> ShareResponse:
    job = await container.jobs.get_job(job_id)
    job = await container.jobs.set_sharing(job, user, payload.is_shared)
    share_url = None
    if job.share_id:
        share_url = f"{container.public_app_url}/share/{job.share_id}"
    return ShareResponse(is_shared=job.is_shared, share_id=job.share_id, share_url=share_url)
