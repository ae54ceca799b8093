"""Typed service errors and the handlers that render them as response envelopes."""
import logging
from typing import Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException

from wallet_shared import DuplicateRequestError

from . import metrics
from .config import settings
from .schemas import error_envelope

logger = logging.getLogger("accounts.errors")

_SENSITIVE_HEADERS = {"authorization", "cookie", "x-api-key"}


class AppError(Exception):
    kind = "internal"
    status_code = 500

    def __init__(self, message: str, *, retry_after: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after


class ValidationFailedError(AppError):
    kind = "validation"
    status_code = 400


class NotFoundError(AppError):
    kind = "not_found"
    status_code = 404


class ConflictError(AppError):
    kind = "conflict"
    status_code = 409


class RateLimitedError(AppError):
    kind = "rate_limited"
    status_code = 429


class UnauthorizedError(AppError):
    kind = "unauthorized"
    status_code = 401


class ForbiddenError(AppError):
    kind = "forbidden"
    status_code = 403


class PreconditionFailedError(AppError):
    kind = "precondition_failed"
    status_code = 400


class ExpiredCodeError(AppError):
    kind = "expired"
    status_code = 400


class AttemptsExhaustedError(AppError):
    kind = "attempts_exhausted"
    status_code = 400


class InvalidCodeError(AppError):
    kind = "invalid_code"
    status_code = 400


class UpstreamUnavailableError(AppError):
    kind = "upstream_unavailable"
    status_code = 503


def _request_context(request: Request) -> dict:
    headers = {
        k: ("***" if k.lower() in _SENSITIVE_HEADERS else v)
        for k, v in request.headers.items()
    }
    return {
        "method": request.method,
        "path": request.url.path,
        "request_id": getattr(request.state, "request_id", None),
        "headers": headers,
    }


def _respond(status_code: int, message: str, kind: str, retry_after: Optional[int] = None) -> JSONResponse:
    headers = {"Retry-After": str(retry_after)} if retry_after is not None else None
    body = error_envelope(message, kind)
    if retry_after is not None:
        body["data"] = {"retryAfter": retry_after}
    return JSONResponse(status_code=status_code, content=body, headers=headers)


async def app_error_handler(request: Request, exc: AppError):
    level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    logger.log(level, "%s: %s %s", exc.kind, exc.message, _request_context(request))
    return _respond(exc.status_code, exc.message, exc.kind, exc.retry_after)


async def duplicate_request_handler(request: Request, exc: DuplicateRequestError):
    metrics.DEDUP_REJECTED.labels(exc.key.split(":", 1)[0]).inc()
    return _respond(429, str(exc), RateLimitedError.kind, exc.retry_after)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        msg = str(first.get("msg", ""))
        # pydantic prefixes messages from custom validators
        message = msg.removeprefix("Value error, ") or message
        if first.get("type") == "missing":
            field = first.get("loc", ("", ""))[-1]
            message = f"{field} is required"
    return _respond(400, message, ValidationFailedError.kind)


async def http_exception_handler(request: Request, exc: HTTPException):
    kind = {
        401: UnauthorizedError.kind,
        403: ForbiddenError.kind,
        404: NotFoundError.kind,
        429: RateLimitedError.kind,
    }.get(exc.status_code, "http_error")
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return _respond(exc.status_code, message, kind)


async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning("integrity error: %s %s", exc.orig, _request_context(request))
    return _respond(409, "Account data conflicts with an existing record", ConflictError.kind)


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled error %s", _request_context(request))
    message = str(exc) if settings.DEV_MODE else "Internal server error"
    return _respond(500, message, "internal")


def install_error_handlers(app) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(DuplicateRequestError, duplicate_request_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
