from __future__ import annotations

import json
import logging
from typing import List

from gridfs.errors import NoFile
from motor.motor_asyncio import AsyncIOMotorDatabase, AsyncIOMotorGridFSBucket

from .base import TranscriptStore, transcript_ref_for
from ..errors import NotFoundError
from ..models.job import TranscriptSegment


logger = logging.getLogger(__name__)


class GridFSTranscriptStore(TranscriptStore):
    """
    Stores large transcripts as JSON files in a GridFS bucket next to the
    job documents. The file name doubles as the reference kept on the job.
    """

    def __init__(self, database: AsyncIOMotorDatabase, bucket_name: str = "transcripts") -> None:
        self._bucket = AsyncIOMotorGridFSBucket(database, bucket_name=bucket_name)

    async def save(self, job_id: str, segments: List[TranscriptSegment]) -> str:
        ref = transcript_ref_for(job_id)
        payload = json.dumps(
            [s.model_dump(by_alias=True, exclude_none=True) for s in segments]
        ).encode("utf-8")
        await self._bucket.upload_from_stream(
            ref, payload, metadata={"jobId": job_id, "contentType": "application/json"}
        )
        logger.info("Stored transcript for job %s in GridFS (%d bytes)", job_id, len(payload))
        return ref

    async def load(self, ref: str) -> List[TranscriptSegment]:
        try:
            stream = await self._bucket.open_download_stream_by_name(ref)
        except NoFile as exc:
            raise NotFoundError(f"transcript {ref} not found") from exc
        raw = await stream.read()
        return [TranscriptSegment.model_validate(item) for item in json.loads(raw)]
