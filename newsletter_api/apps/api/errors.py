from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from newsletter_api.apps.api.response import error_response, get_request_id
from newsletter_api.core.errors import (
    IdempotencyInProgressError,
    NewsletterError,
    NotFoundError,
    ValidationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Routing errors (unknown path, wrong method) share the same error shape.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    payload = error_response(
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


def _domain_status(exc: NewsletterError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, IdempotencyInProgressError):
        return 409
    return 500


async def newsletter_exception_handler(request: Request, exc: NewsletterError) -> JSONResponse:
    # Domain errors carry user-safe messages; anything unmapped is an internal failure.
    status_code = _domain_status(exc)
    if status_code >= 500:
        return await unhandled_exception_handler(request, exc)
    if status_code == 409:
        logger.warning("request conflict request_id=%s: %s", get_request_id(request), exc)
    payload = error_response(code=_default_code(status_code), message=str(exc))
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error payload.
    logger.error(
        "unhandled error request_id=%s path=%s",
        get_request_id(request),
        request.url.path,
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    payload = error_response(code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
