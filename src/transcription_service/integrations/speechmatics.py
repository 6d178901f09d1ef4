from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import httpx
from pydantic import BaseModel, Field

from ..errors import UpstreamError
from ..models.job import TranscriptSegment


logger = logging.getLogger(__name__)

SENTENCE_END = re.compile(r"[.!?]$")


class VendorStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    REJECTED = "rejected"


class VendorTranscript(BaseModel):
    duration_seconds: float = Field(ge=0)
    segments: List[TranscriptSegment] = Field(default_factory=list)


class TranscriptionVendor(ABC):
    """
    Batch speech-to-text vendor: submit audio, poll, fetch the result.
    """

    @abstractmethod
    async def download(self, url: str) -> bytes:
        """Fetch the uploaded audio from storage."""
        ...

    @abstractmethod
    async def submit(
        self,
        audio: bytes,
        filename: str,
        language: str,
        options: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """Returns the vendor job id."""
        ...

    @abstractmethod
    async def poll(self, vendor_job_id: str) -> VendorStatus: ...

    @abstractmethod
    async def fetch(self, vendor_job_id: str) -> VendorTranscript: ...


def segments_from_results(results: List[Mapping[str, Any]]) -> List[TranscriptSegment]:
    """
    Group json-v2 word results into sentence segments.

    A segment closes on sentence-ending punctuation or a speaker change.
    Punctuation attaches to the preceding word; segment confidence is the
    mean of its word confidences.
    """
    segments: List[TranscriptSegment] = []
    words: List[str] = []
    confidences: List[float] = []
    start: Optional[float] = None
    end = 0.0
    speaker: Optional[str] = None

    def flush() -> None:
        nonlocal words, confidences, start, end, speaker
        if words and start is not None:
            segments.append(
                TranscriptSegment(
                    start=start,
                    end=max(end, start),
                    text=" ".join(words),
                    speaker=speaker,
                    confidence=sum(confidences) / len(confidences) if confidences else None,
                )
            )
        words, confidences, start, end, speaker = [], [], None, 0.0, None

    for result in results:
        alternatives = result.get("alternatives") or []
        if not alternatives or not alternatives[0].get("content"):
            continue
        best = alternatives[0]
        content = best["content"]
        word_speaker = best.get("speaker")

        if result.get("type") == "punctuation" and words:
            words[-1] += content
        else:
            if words and word_speaker and speaker and word_speaker != speaker:
                flush()
            if start is None:
                start = float(result.get("start_time") or 0)
                speaker = word_speaker
            words.append(content)
            confidence = best.get("confidence")
            if isinstance(confidence, (int, float)) and result.get("type") != "punctuation":
                confidences.append(float(confidence))
        end = float(result.get("end_time") or end)

        if SENTENCE_END.search(content):
            flush()
    flush()
    return segments


class SpeechmaticsClient(TranscriptionVendor):
    """
    Speechmatics v2 batch API over httpx.

    Pass `client` to share a connection pool or to mount a mock transport;
    otherwise one is created and closed by `aclose()`.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://asr.api.speechmatics.com/v2",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 300.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, description: str, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Speechmatics %s failed: %s - %s",
                description,
                exc.response.status_code,
                exc.response.text[:500],
            )
            raise UpstreamError(
                f"transcription vendor error during {description}",
                {"status": exc.response.status_code},
            ) from exc
        except httpx.RequestError as exc:
            logger.error("Speechmatics %s network error: %s", description, exc)
            raise UpstreamError(f"transcription vendor unreachable during {description}") from exc
        return response

    async def download(self, url: str) -> bytes:
        response = await self._request("audio download", "GET", url, follow_redirects=True)
        return response.content

    async def submit(
        self,
        audio: bytes,
        filename: str,
        language: str,
        options: Optional[Mapping[str, Any]] = None,
    ) -> str:
        options = dict(options or {})
        transcription_config: Dict[str, Any] = {
            "language": language,
            "operating_point": options.pop("operating_point", "enhanced"),
        }
        if options.pop("diarization", True):
            transcription_config["diarization"] = "speaker"
        transcription_config.update(options)
        config = {"type": "transcription", "transcription_config": transcription_config}

        response = await self._request(
            "job submission",
            "POST",
            f"{self._base_url}/jobs",
            headers=self._headers,
            files={"data_file": (filename, audio)},
            data={"config": json.dumps(config)},
        )
        vendor_job_id = response.json()["id"]
        logger.info("Submitted %s to Speechmatics as job %s", filename, vendor_job_id)
        return vendor_job_id

    async def poll(self, vendor_job_id: str) -> VendorStatus:
        response = await self._request(
            "status check", "GET", f"{self._base_url}/jobs/{vendor_job_id}", headers=self._headers
        )
        status = (response.json().get("job") or {}).get("status")
        if status == "done":
            return VendorStatus.DONE
        if status == "running":
            return VendorStatus.RUNNING
        logger.warning("Speechmatics job %s ended with status %s", vendor_job_id, status)
        return VendorStatus.REJECTED

    async def fetch(self, vendor_job_id: str) -> VendorTranscript:
        response = await self._request(
            "transcript fetch",
            "GET",
            f"{self._base_url}/jobs/{vendor_job_id}/transcript",
            headers=self._headers,
            params={"format": "json-v2"},
        )
        data = response.json()
        return VendorTranscript(
            duration_seconds=float((data.get("job") or {}).get("duration") or 0),
            segments=segments_from_results(data.get("results") or []),
        )
