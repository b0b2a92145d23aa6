from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from newsletter_api.core.config import get_settings
from newsletter_api.persistence.db import SessionLocal, get_session
from newsletter_api.persistence.repos import users as users_repo
from newsletter_api.services.auth.api_keys import hash_api_key
from newsletter_api.services.email_client import EmailClient, NotificationSender


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    # Idempotent handlers own their transaction, so they take the factory rather than a session.
    return SessionLocal


def get_email_client(request: Request) -> NotificationSender:
    client = getattr(request.app.state, "email_client", None)
    if client is None:
        client = EmailClient.from_settings()
        request.app.state.email_client = client
    return client


class AuthContext(BaseModel):
    # Authenticated author identity, passed by value into service calls.
    user_id: str
    username: str


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str:
    # Enforce Bearer token format for API key authentication.
    if not header_value:
        raise _auth_error("Missing API key")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def get_auth_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> AuthContext:
    raw_key = _parse_bearer_token(request.headers.get(get_settings().auth_api_key_header))
    owner = await users_repo.get_active_key_owner(db, hash_api_key(raw_key))
    if owner is None:
        raise _auth_error("Invalid API key")
    _api_key, user = owner
    return AuthContext(user_id=user.user_id, username=user.username)
