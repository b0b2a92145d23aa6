from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from newsletter_api.apps.api.errors import (
    http_exception_handler,
    newsletter_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from newsletter_api.apps.api.routes.admin_newsletters import router as admin_newsletters_router
from newsletter_api.apps.api.routes.health import router as health_router
from newsletter_api.apps.api.routes.subscriptions import router as subscriptions_router
from newsletter_api.core.config import get_settings
from newsletter_api.core.errors import NewsletterError
from newsletter_api.core.logging import configure_logging


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # Close the lazily created outbound email client with the app.
    client = getattr(app.state, "email_client", None)
    aclose = getattr(client, "aclose", None)
    if aclose is not None:
        await aclose()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=get_settings().app_name, lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(NewsletterError)
    async def _newsletter_exception_handler(request: Request, exc: NewsletterError):
        return await newsletter_exception_handler(request, exc)

    app.include_router(health_router)
    app.include_router(subscriptions_router)
    # Admin routes authenticate with bearer API keys.
    app.include_router(admin_newsletters_router)

    return app


app = create_app()
