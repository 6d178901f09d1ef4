from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List

from ..models.job import TranscriptSegment


def transcript_ref_for(job_id: str) -> str:
    return f"transcripts/{job_id}/transcript.json"


class TranscriptStore(ABC):
    """
    Blob storage for transcripts too large to inline on the job document.
    """

    @abstractmethod
    async def save(self, job_id: str, segments: List[TranscriptSegment]) -> str:
        """Store the segments and return the reference to keep on the job."""
        ...

    @abstractmethod
    async def load(self, ref: str) -> List[TranscriptSegment]: ...
