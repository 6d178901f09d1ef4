import httpx
import pytest

from transcription_service.errors import UpstreamError
from transcription_service.integrations.speechmatics import (
    SpeechmaticsClient,
    VendorStatus,
    segments_from_results,
)


def _word(content, start, end, speaker="S1", confidence=0.9, kind="word"):
    return {
        "type": kind,
        "start_time": start,
        "end_time": end,
        "alternatives": [{"content": content, "speaker": speaker, "confidence": confidence}],
    }


RESULTS = [
    _word("Hello", 0.0, 0.4, confidence=1.0),
    _word("there", 0.5, 0.9, confidence=0.8),
    _word(".", 0.9, 0.9, kind="punctuation"),
    _word("How", 1.2, 1.4, speaker="S2"),
    _word("are", 1.5, 1.6, speaker="S2"),
    _word("you", 1.7, 1.9, speaker="S2"),
    _word("Fine", 2.5, 2.8, speaker="S1"),
]


def test_segments_split_on_punctuation_and_speaker_change():
    segments = segments_from_results(RESULTS)

    assert [s.text for s in segments] == ["Hello there.", "How are you", "Fine"]
    assert [s.speaker for s in segments] == ["S1", "S2", "S1"]
    assert segments[0].start == 0.0
    assert segments[0].end == 0.9
    assert segments[0].confidence == pytest.approx(0.9)


def test_segments_skip_empty_alternatives():
    results = [{"type": "word", "start_time": 0, "end_time": 1, "alternatives": []}]
    assert segments_from_results(results) == []


def _client(handler):
    transport = httpx.MockTransport(handler)
    return SpeechmaticsClient(
        api_key="key",
        base_url="https://asr.example.com/v2",
        client=httpx.AsyncClient(transport=transport),
    )


@pytest.mark.asyncio
async def test_submit_poll_and_fetch():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        assert request.headers["Authorization"] == "Bearer key"
        if request.method == "POST":
            return httpx.Response(201, json={"id": "sm-1"})
        if request.url.path.endswith("/transcript"):
            assert request.url.params["format"] == "json-v2"
            return httpx.Response(200, json={"job": {"duration": 125.5}, "results": RESULTS})
        return httpx.Response(200, json={"job": {"status": "done"}})

    client = _client(handler)

    assert await client.submit(b"audio", "call.mp3", "en") == "sm-1"
    assert await client.poll("sm-1") == VendorStatus.DONE
    transcript = await client.fetch("sm-1")

    assert transcript.duration_seconds == 125.5
    assert len(transcript.segments) == 3
    assert seen == [
        ("POST", "/v2/jobs"),
        ("GET", "/v2/jobs/sm-1"),
        ("GET", "/v2/jobs/sm-1/transcript"),
    ]


@pytest.mark.asyncio
async def test_submit_sends_diarization_config():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = request.content.decode("latin-1")
        return httpx.Response(201, json={"id": "sm-2"})

    await _client(handler).submit(b"audio", "call.mp3", "fr", {"domain": "medical"})

    assert 'name="data_file"; filename="call.mp3"' in captured["body"]
    assert '"language": "fr"' in captured["body"]
    assert '"diarization": "speaker"' in captured["body"]
    assert '"domain": "medical"' in captured["body"]


@pytest.mark.asyncio
async def test_non_running_status_is_rejected():
    client = _client(lambda request: httpx.Response(200, json={"job": {"status": "rejected"}}))
    assert await client.poll("sm-3") == VendorStatus.REJECTED


@pytest.mark.asyncio
async def test_http_errors_become_upstream_errors():
    client = _client(lambda request: httpx.Response(503, text="busy"))
    with pytest.raises(UpstreamError) as excinfo:
        await client.poll("sm-4")
    assert excinfo.value.details == {"status": 503}
