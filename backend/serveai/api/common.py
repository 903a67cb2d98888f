from __future__ import annotations

import dataclasses
import logging
import secrets
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from starlette.exceptions import HTTPException as StarletteHTTPException

from backend.serveai.config import AppSettings
from backend.serveai.dependencies import get_operations_rate_limiter, get_settings
from backend.serveai.services.identifiers import InvalidArgumentError
from backend.serveai.services.rate_limiter import SlidingWindowRateLimiter
from backend.serveai.services.results import FetchResult

LOGGER = logging.getLogger("shimmyserve.api")


class ApiResponse(BaseModel):
    """Envelope shared by every `/api` route."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    data: Any = None
    error: str | None = None
    details: str | None = None
    count: int | None = None
    message: str | None = None


class ApiError(Exception):
    def __init__(
        self,
        status_code: int,
        error: str,
        *,
        details: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.details = details
        self.headers = headers


def to_payload(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, list):
        return [to_payload(item) for item in value]
    if isinstance(value, dict):
        return {key: to_payload(item) for key, item in value.items()}
    return value


def envelope(
    data: Any = None,
    *,
    message: str | None = None,
    count: int | None = None,
) -> ApiResponse:
    return ApiResponse(success=True, data=to_payload(data), message=message, count=count)


def fetched(result: FetchResult[Any], *, error: str) -> ApiResponse:
    if not result.ok:
        raise ApiError(500, error, details=result.error)
    data = to_payload(result.value)
    return ApiResponse(
        success=True,
        data=data,
        count=len(data) if isinstance(data, list) else None,
    )


def mutated(succeeded: bool, *, message: str, failure: str) -> ApiResponse:
    if not succeeded:
        raise ApiError(400, failure)
    return ApiResponse(success=True, message=message)


def require_admin(
    request: Request,
    settings: Annotated[AppSettings, Depends(get_settings)],
) -> None:
    expected = settings.admin_api_token
    if expected is None:
        raise ApiError(
            403,
            "Administrative operations are disabled",
            details="Set SHIMMYSERVE_ADMIN_API_TOKEN to enable them.",
        )
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    token = token.strip()
    if (
        scheme.lower() != "bearer"
        or not token
        or not secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))
    ):
        raise ApiError(
            401,
            "Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_exec_enabled(
    settings: Annotated[AppSettings, Depends(get_settings)],
) -> None:
    if not settings.exec_enabled:
        raise ApiError(
            403,
            "Command execution is disabled",
            details="Set SHIMMYSERVE_EXEC_ENABLED=true to enable exec routes.",
        )


def enforce_operations_rate_limit(
    request: Request,
    limiter: Annotated[SlidingWindowRateLimiter, Depends(get_operations_rate_limiter)],
) -> None:
    client_key = request.client.host if request.client is not None else "unknown"
    decision = limiter.take(client_key)
    if not decision.allowed:
        raise ApiError(
            429,
            "Too many requests",
            details=f"Limit of {decision.limit} operations per window reached.",
            headers={"Retry-After": str(decision.retry_after_seconds)},
        )


ADMIN_DEPENDENCIES = [Depends(require_admin), Depends(enforce_operations_rate_limit)]
EXEC_DEPENDENCIES = [*ADMIN_DEPENDENCIES, Depends(require_exec_enabled)]


def _error_response(
    status_code: int,
    error: str,
    *,
    details: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ApiResponse(success=False, error=error, details=details)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


async def _handle_api_error(_: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, ApiError)
    return _error_response(
        exc.status_code,
        exc.error,
        details=exc.details,
        headers=exc.headers,
    )


async def _handle_invalid_argument(_: Request, exc: Exception) -> JSONResponse:
    return _error_response(400, "Invalid argument", details=str(exc))


async def _handle_request_validation(_: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, RequestValidationError)
    problems = [
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', 'invalid')}"
        for error in exc.errors()
    ]
    return _error_response(400, "Invalid request", details="; ".join(problems) or None)


async def _handle_http_exception(_: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, StarletteHTTPException)
    return _error_response(
        exc.status_code,
        str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.error(
        "unhandled error path=%s",
        request.url.path,
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    return _error_response(500, "Internal server error", details=type(exc).__name__)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, _handle_api_error)
    app.add_exception_handler(InvalidArgumentError, _handle_invalid_argument)
    app.add_exception_handler(RequestValidationError, _handle_request_validation)
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)
    app.add_exception_handler(Exception, _handle_unexpected)
