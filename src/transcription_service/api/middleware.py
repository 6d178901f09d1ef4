"""
Starlette middleware for per-client, per-route-group rate limiting.

Flow:
  1. The request path (and method) picks a route group, e.g. transcriptions.
  2. The client is identified by the forwarded IP plus a user-agent prefix.
  3. A fixed-window counter for (group, client) is incremented in the cache.
  4. Over the group's limit the request is answered with 429 and
     `Retry-After`; otherwise it runs untouched.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..cache.base import AsyncCacheBackend


logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60
UNSAFE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass(frozen=True)
class RateLimitRule:
    group: str
    prefix: str
    max_requests: int
    unsafe_only: bool = False

    def matches(self, path: str, method: str) -> bool:
        if self.unsafe_only and method not in UNSAFE_METHODS:
            return False
        return path == self.prefix or path.startswith(self.prefix.rstrip("/") + "/")


# First match wins; anything else under the prefix falls into "general".
DEFAULT_RULES: Tuple[RateLimitRule, ...] = (
    RateLimitRule("transcriptions", "/api/transcriptions", 5, unsafe_only=True),
    RateLimitRule("billing", "/api/subscriptions", 10, unsafe_only=True),
    RateLimitRule("billing", "/api/wallet", 10, unsafe_only=True),
    RateLimitRule("auth", "/api/auth", 20),
    RateLimitRule("admin", "/api/admin", 30),
)
GENERAL_LIMIT = 100


def client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.headers.get("x-real-ip") or (request.client.host if request.client else "unknown")
    user_agent = request.headers.get("user-agent", "unknown")[:50]
    return f"{ip}:{user_agent}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Fixed-window rate limiter backed by `AsyncCacheBackend.incr`, so the
    windows are shared by every worker that shares the cache.
    """

    def __init__(
        self,
        app: Any,
        cache: AsyncCacheBackend,
        *,
        path_prefix: str = "/api",
        rules: Sequence[RateLimitRule] = DEFAULT_RULES,
        general_limit: int = GENERAL_LIMIT,
        window_seconds: int = WINDOW_SECONDS,
        skip_paths: Optional[Sequence[str]] = ("/api/webhooks", "/api/health"),
        identifier: Callable[[Request], str] = client_identifier,
    ) -> None:
        super().__init__(app)
        self.cache = cache
        self.path_prefix = path_prefix.rstrip("/")
        self.rules = tuple(rules)
        self.general_limit = general_limit
        self.window_seconds = window_seconds
        self.skip_paths = tuple(skip_paths or ())
        self.identifier = identifier

    def _should_apply(self, path: str) -> bool:
        if not path.startswith(self.path_prefix + "/") and path != self.path_prefix:
            return False
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return False
        return True

    def _limit_for(self, path: str, method: str) -> Tuple[str, int]:
        for rule in self.rules:
            if rule.matches(path, method):
                return rule.group, rule.max_requests
        return "general", self.general_limit

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        path = request.url.path
        if not self._should_apply(path):
            return await call_next(request)

        group, limit = self._limit_for(path, request.method)
        client = self.identifier(request)
        count, seconds_left = await self.cache.incr(
            f"ratelimit:{group}:{client}", self.window_seconds
        )
        if count > limit:
            retry_after = max(1, math.ceil(seconds_left))
            logger.warning("Rate limit exceeded for %s on %s (%s group)", client, path, group)
            return JSONResponse(
                status_code=429,
                content={
                    "error": f"Too many requests. Try again in {retry_after} seconds.",
                    "code": "RATE_LIMITED",
                    "details": {"retryAfter": retry_after, "group": group},
                },
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, limit - count))
        return response
