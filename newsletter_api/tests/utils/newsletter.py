from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select

from newsletter_api.apps.api.deps import get_email_client
from newsletter_api.apps.api.main import create_app
from newsletter_api.domain.models import (
    SUBSCRIPTION_CONFIRMED,
    SUBSCRIPTION_PENDING,
    Idempotency,
    NewsletterIssue,
    Subscription,
)
from newsletter_api.persistence.db import SessionLocal
from newsletter_api.services.email_client import NotificationSender
from newsletter_api.services.newsletters import create_draft


@asynccontextmanager
async def api_client(email_client: NotificationSender | None = None) -> AsyncIterator[AsyncClient]:
    app = create_app()
    if email_client is not None:
        app.dependency_overrides[get_email_client] = lambda: email_client
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def add_subscriber(*, user_id: str, email: str, confirmed: bool = True, name: str = "Reader") -> str:
    subscriber_id = str(uuid4())
    async with SessionLocal() as session:
        session.add(
            Subscription(
                id=subscriber_id,
                email=email,
                name=name,
                user_id=user_id,
                status=SUBSCRIPTION_CONFIRMED if confirmed else SUBSCRIPTION_PENDING,
            )
        )
        await session.commit()
    return subscriber_id


async def create_issue(
    *,
    user_id: str,
    title: str = "Ursula Le Guin",
    description: str = "On the Earthsea books",
    content: str = "## Newsletter content",
) -> str:
    async with SessionLocal() as session:
        issue = await create_draft(
            session,
            user_id=user_id,
            title=title,
            description=description,
            content=content,
        )
        return issue.newsletter_issue_id


async def load_issue(newsletter_issue_id: str) -> NewsletterIssue | None:
    async with SessionLocal() as session:
        return await session.get(NewsletterIssue, newsletter_issue_id)


async def count_idempotency_rows() -> int:
    async with SessionLocal() as session:
        return int(await session.scalar(select(func.count()).select_from(Idempotency)) or 0)
