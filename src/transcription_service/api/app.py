from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..config import Settings, load_settings
from ..container import ServiceContainer
from ..errors import ServiceError
from .middleware import RateLimitMiddleware
from .routes import (
    admin,
    auth,
    health,
    share,
    subscriptions,
    transcriptions,
    usage,
    wallet,
    webhooks,
)


logger = logging.getLogger(__name__)

API_PREFIX = "/api"


def _validation_details(exc: RequestValidationError) -> Dict[str, Any]:
    details: Dict[str, Any] = {}
    for error in exc.errors():
        # Drop the "body"/"query" location prefix; clients only need the field.
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        details[".".join(loc) or "request"] = error.get("msg", "invalid")
    return details


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_envelope())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "error": "Invalid request",
                "code": "VALIDATION_FAILED",
                "details": _validation_details(exc),
            },
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "code": "INTERNAL_ERROR"},
        )


def create_app(
    settings: Optional[Settings] = None, container: Optional[ServiceContainer] = None
) -> FastAPI:
    """
    Build the API. Without a `container`, settings are loaded (and
    validated, exiting on error) from the environment and the production
    clients are created.
    """
    if container is None:
        settings = settings or load_settings()
        container = ServiceContainer.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await container.startup()
        try:
            yield
        finally:
            await container.shutdown()

    app = FastAPI(title="Transcription Service API", lifespan=lifespan)
    app.state.container = container

    if settings is not None and settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    if container.rate_limit_enabled:
        app.add_middleware(RateLimitMiddleware, cache=container.cache, path_prefix=API_PREFIX)

    register_exception_handlers(app)
    for module in (
        health,
        auth,
        transcriptions,
        share,
        usage,
        subscriptions,
        wallet,
        webhooks,
        admin,
    ):
        app.include_router(module.router, prefix=API_PREFIX)
    return app


def run() -> None:
    import uvicorn

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    settings = load_settings()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000)
