from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.serveai.api import docker, kubernetes, shimmy, system
from backend.serveai.api.common import register_exception_handlers
from backend.serveai.dependencies import get_settings, get_telemetry
from backend.serveai.logging_config import configure_application_logging
from backend.serveai.telemetry import HTTP_REQUEST_ERROR, HTTP_REQUEST_FINISH, HTTP_REQUEST_START

LOGGER = logging.getLogger("shimmyserve.app")


def health_check() -> dict[str, str]:
    return {"status": "ok"}


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    log_path = configure_application_logging(settings)
    LOGGER.info(
        "shimmyserve starting log_file=%s exec_enabled=%s admin_token_configured=%s",
        log_path,
        settings.exec_enabled,
        settings.admin_api_token is not None,
    )
    try:
        yield
    finally:
        LOGGER.info("shimmyserve stopping")


def create_app() -> FastAPI:
    app = FastAPI(title="ShimmyServe API", version="0.1.0", lifespan=app_lifespan)

    async def request_context_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        telemetry = get_telemetry()
        incoming_request_id = request.headers.get("X-Request-ID")
        request_id = (
            incoming_request_id.strip()
            if isinstance(incoming_request_id, str) and incoming_request_id.strip()
            else str(uuid4())
        )
        context_tokens = bind_contextvars(
            http_request_id=request_id,
            http_method=request.method,
            http_path=request.url.path,
        )
        started_at = perf_counter()
        telemetry.emit(
            HTTP_REQUEST_START,
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        try:
            response = await call_next(request)
        except Exception as exc:
            telemetry.emit(
                HTTP_REQUEST_ERROR,
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=int((perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            raise
        else:
            response.headers["X-Request-ID"] = request_id
            telemetry.emit(
                HTTP_REQUEST_FINISH,
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=int((perf_counter() - started_at) * 1000),
                status_code=response.status_code,
            )
            return response
        finally:
            reset_contextvars(**context_tokens)

    app.middleware("http")(request_context_middleware)
    register_exception_handlers(app)
    app.include_router(system.router)
    app.include_router(shimmy.router)
    app.include_router(docker.router)
    app.include_router(kubernetes.router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )

    return app


app = create_app()
