from fastapi import FastAPI
from fastapi.testclient import TestClient

from transcription_service.api.middleware import RateLimitMiddleware, RateLimitRule, client_identifier
from transcription_service.cache.memory import InMemoryAsyncCache


def _app(**options) -> FastAPI:
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, cache=InMemoryAsyncCache(), **options)

    @app.post("/api/transcriptions")
    async def create() -> dict:
        return {"ok": True}

    @app.get("/api/transcriptions")
    async def listing() -> dict:
        return {"ok": True}

    @app.post("/api/webhooks/stripe")
    async def webhook() -> dict:
        return {"ok": True}

    @app.get("/public")
    async def public() -> dict:
        return {"ok": True}

    return app


def test_group_limit_returns_429_with_retry_after():
    client = TestClient(_app())

    for remaining in (4, 3, 2, 1, 0):
        response = client.post("/api/transcriptions")
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == str(remaining)

    blocked = client.post("/api/transcriptions")
    assert blocked.status_code == 429
    assert int(blocked.headers["Retry-After"]) >= 1
    body = blocked.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["details"]["group"] == "transcriptions"


def test_reads_fall_into_general_group():
    client = TestClient(_app())
    for _ in range(6):
        client.post("/api/transcriptions")

    response = client.get("/api/transcriptions")
    assert response.status_code == 200
    assert response.headers["X-RateLimit-Limit"] == "100"


def test_clients_are_counted_separately():
    client = TestClient(_app(rules=(RateLimitRule("transcriptions", "/api/transcriptions", 1),)))

    assert client.post("/api/transcriptions", headers={"x-forwarded-for": "10.0.0.1"}).status_code == 200
    assert client.post("/api/transcriptions", headers={"x-forwarded-for": "10.0.0.1"}).status_code == 429
    assert client.post("/api/transcriptions", headers={"x-forwarded-for": "10.0.0.2"}).status_code == 200


def test_skipped_paths_are_not_limited():
    client = TestClient(_app(general_limit=1))
    for _ in range(3):
        response = client.post("/api/webhooks/stripe")
        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers
    assert "X-RateLimit-Limit" not in client.get("/public").headers


def test_client_identifier_prefers_forwarded_ip():
    from starlette.requests import Request

    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [
            (b"x-forwarded-for", b"203.0.113.9, 10.0.0.1"),
            (b"user-agent", b"x" * 80),
        ],
        "client": ("127.0.0.1", 1234),
    }
    assert client_identifier(Request(scope)) == "203.0.113.9:" + "x" * 50
