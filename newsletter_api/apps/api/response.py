from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


class ErrorDetail(BaseModel):
    # Standardize error codes/messages with optional structured details.
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorEnvelope(BaseModel):
    error: ErrorDetail


class MessageResponse(BaseModel):
    message: str


def get_request_id(request: Request) -> str:
    # Use existing request IDs when provided to preserve traceability.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def error_response(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True)}


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorEnvelope, "description": "Bad Request"},
    401: {"model": ErrorEnvelope, "description": "Unauthorized"},
    404: {"model": ErrorEnvelope, "description": "Not Found"},
    409: {"model": ErrorEnvelope, "description": "Conflict"},
    422: {"model": ErrorEnvelope, "description": "Validation Error"},
    500: {"model": ErrorEnvelope, "description": "Internal Server Error"},
}
