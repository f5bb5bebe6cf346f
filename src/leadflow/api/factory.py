"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from leadflow.config import Settings, load_settings
from leadflow.errors import LeadflowError, PersistenceError
from leadflow.observability.correlation import (
    CORRELATION_ID_HEADER,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from leadflow.observability.logging import get_logger
from leadflow.observability.redaction import safe_log_context

from .routes import health, live, messages, tokens, webhooks_whatsapp
from .services import Services, build_services

logger = get_logger(__name__)


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Create the FastAPI app.

    Args:
        settings: Explicit settings. If None, read from the environment.
        services: Pre-wired service container (tests). Built from settings
            when omitted.

    Returns:
        Configured FastAPI application. Its lifespan loads the message
        ledger snapshot and starts the token refresh scheduler.
    """
    if services is None:
        services = build_services(settings or load_settings())
    settings = services.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            services.ledger.load()
        except PersistenceError:
            logger.error("message ledger snapshot unreadable, starting empty")
            services.ledger.set_aside_snapshot()
        if settings.token_refresh_enabled:
            services.scheduler.start()
        try:
            yield
        finally:
            services.scheduler.shutdown()
            await services.http.aclose()

    app = FastAPI(
        title="Leadflow",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Correlation ID middleware
    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_ID_HEADER) or generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    @app.exception_handler(LeadflowError)
    async def leadflow_error_handler(request: Request, exc: LeadflowError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "request failed",
            extra={
                "extra_fields": safe_log_context(
                    path=request.url.path, kind=exc.kind, status=exc.status_code
                )
            },
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.to_dict()},
        )

    app.include_router(health.router)
    app.include_router(webhooks_whatsapp.router)
    app.include_router(messages.router)
    app.include_router(tokens.router)
    app.include_router(live.router)

    return app
