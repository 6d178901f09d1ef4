from __future__ import annotations

from typing import Dict, List

from .base import TranscriptStore, transcript_ref_for
from ..errors import NotFoundError
from ..models.job import TranscriptSegment


class InMemoryTranscriptStore(TranscriptStore):
    """
    Dict-backed transcript store for tests and local development.
    """

    def __init__(self) -> None:
        self.blobs: Dict[str, List[TranscriptSegment]] = {}

    async def save(self, job_id: str, segments: List[TranscriptSegment]) -> str:
        ref = transcript_ref_for(job_id)
        self.blobs[ref] = [s.model_copy() for s in segments]
        return ref

    async def load(self, ref: str) -> List[TranscriptSegment]:
        if ref not in self.blobs:
            raise NotFoundError(f"transcript {ref} not found")
        return [s.model_copy() for s in self.blobs[ref]]
