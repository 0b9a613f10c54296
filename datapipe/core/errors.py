"""Error taxonomy and the standard JSON error envelope."""
from typing import Any

import sentry_sdk
import structlog
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error envelope returned by all API error handlers."""
    error: str
    message: str
    detail: Any = None
    request_id: str = "unknown"

logger = structlog.get_logger()


# ── Application errors ───────────────────────────────────────────────────────


class AppError(Exception):
    """Base class for every error that maps to a user-visible message."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, detail: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class BadRequestError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource") -> None:
        super().__init__(f"{resource} not found")


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"


# ── Codec ────────────────────────────────────────────────────────────────────


class UnsupportedFormatError(BadRequestError):
    code = "UNSUPPORTED_FORMAT"

    def __init__(self, fmt: str) -> None:
        super().__init__(f"Unsupported format: {fmt}", detail={"format": fmt})
        self.format = fmt


class DecodeError(AppError):
    """Malformed input; ``position`` is a human-readable hint such as ``line 3``."""

    status_code = 422
    code = "DECODE_ERROR"

    def __init__(self, message: str, position: str | None = None) -> None:
        full = f"{message} ({position})" if position else message
        super().__init__(full, detail={"position": position} if position else None)
        self.position = position


class EncodeError(AppError):
    status_code = 422
    code = "ENCODE_ERROR"


# ── PII ──────────────────────────────────────────────────────────────────────


class PIIConfigurationError(BadRequestError):
    code = "PII_CONFIGURATION_ERROR"


# ── Storage ──────────────────────────────────────────────────────────────────


class StorageError(AppError):
    status_code = 502
    code = "STORAGE_ERROR"


# ── Jobs ─────────────────────────────────────────────────────────────────────


class JobNotFoundError(NotFoundError):
    def __init__(self, job_id: int) -> None:
        super().__init__("Job")
        self.job_id = job_id


class JobAlreadyTerminalError(ConflictError):
    """Cancel or re-enqueue against a job that already finished."""

    code = "JOB_ALREADY_TERMINAL"

    def __init__(self, job_id: int, status: str) -> None:
        super().__init__(
            f"Job {job_id} is already {status}",
            detail={"job_id": job_id, "status": status},
        )
        self.job_id = job_id
        self.status = status


# ── Handlers ─────────────────────────────────────────────────────────────────


def _request_id(request: Request) -> str:
    return request.headers.get("x-request-id", "unknown")


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render an AppError into the standard envelope."""
    if exc.status_code >= 500:
        logger.error(
            "app_error",
            error=exc.message,
            code=exc.code,
            path=request.url.path,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=exc.code.lower(),
            message=exc.message,
            detail=exc.detail,
            request_id=_request_id(request),
        ).model_dump(),
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch unhandled exceptions and return a consistent JSON envelope."""
    request_id = _request_id(request)

    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        request_id=request_id,
    )

    sentry_sdk.capture_exception(exc)

    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred. Our team has been notified.",
            "request_id": request_id,
        },
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Standardize HTTPException responses into the same JSON envelope."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": f"http_{exc.status_code}",
            "message": str(exc.detail),
            "detail": exc.detail,
            "request_id": _request_id(request),
        },
        headers=dict(exc.headers or {}),
    )
