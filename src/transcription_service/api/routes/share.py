from __future__ import annotations

from fastapi import APIRouter, Depends

from ...container import ServiceContainer
from ...models.api_models import SharedTranscription, TranscriptResponse
from ..deps import get_container


# Public: anyone holding a share id may read, nothing else.
router = APIRouter(prefix="/share", tags=["share"])


@router.get("/{share_id}", response_model=SharedTranscription)
async def get_shared_transcription(
    share_id: str,
    container: ServiceContainer = Depends(get_container),
) -> SharedTranscription:
    job = await container.jobs.get_shared_job(share_id)
    return SharedTranscription.from_job(job)


@router.get("/{share_id}/transcript", response_model=TranscriptResponse)
async def get_shared_transcript(
    share_id: str,
    container: ServiceContainer = Depends(get_container),
) -> TranscriptResponse:
    job = await container.jobs.get_shared_job(share_id)
    segments = await container.jobs.get_transcript(job)
    return TranscriptResponse(job_id=job.id, segments=segments)
