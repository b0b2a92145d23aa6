from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from newsletter_api.core.errors import NotFoundError, ValidationError
from newsletter_api.domain.models import NewsletterIssue
from newsletter_api.domain.newsletter_issue import Content, Description, Title, render_html, slugify
from newsletter_api.persistence.repos import delivery_queue as delivery_queue_repo
from newsletter_api.persistence.repos import newsletter_issues as newsletter_issues_repo


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def issue_to_api(issue: NewsletterIssue) -> dict[str, Any]:
    # Serialize for the admin API; markdown is rendered on read.
    return {
        "newsletter_issue_id": issue.newsletter_issue_id,
        "user_id": issue.user_id,
        "title": issue.title,
        "slug": issue.slug,
        "description": issue.description,
        "content": issue.content,
        "html_content": render_html(issue.content),
        "created_at": _iso(issue.created_at),
        "published_at": _iso(issue.published_at),
    }


async def create_draft(
    session: AsyncSession,
    *,
    user_id: str,
    title: str,
    description: str,
    content: str,
) -> NewsletterIssue:
    parsed_title = Title.parse(title)
    parsed_description = Description.parse_draft(description)
    slug = slugify(parsed_title.value)
    if await newsletter_issues_repo.slug_taken(session, user_id=user_id, slug=slug):
        raise ValidationError("An issue with this title already exists.")
    issue = NewsletterIssue(
        newsletter_issue_id=str(uuid4()),
        user_id=user_id,
        title=parsed_title.value,
        slug=slug,
        description=parsed_description.value,
        content=content,
        created_at=_utc_now(),
        published_at=None,
    )
    session.add(issue)
    await session.commit()
    logger.info("newsletter draft created user_id=%s newsletter_issue_id=%s", user_id, issue.newsletter_issue_id)
    return issue


async def get_issue(session: AsyncSession, *, user_id: str, newsletter_issue_id: str) -> NewsletterIssue:
    issue = await newsletter_issues_repo.get_issue_for_user(
        session, user_id=user_id, newsletter_issue_id=newsletter_issue_id
    )
    if issue is None:
        raise NotFoundError("Newsletter issue not found")
    return issue


async def update_issue(
    session: AsyncSession,
    *,
    user_id: str,
    newsletter_issue_id: str,
    title: str,
    description: str,
    content: str,
) -> NewsletterIssue:
    """Edit an issue in place.

    Drafts accept an empty description and body; once published, every field
    must pass the publish-time validation. The slug is fixed at creation.
    """
    issue = await get_issue(session, user_id=user_id, newsletter_issue_id=newsletter_issue_id)
    parsed_title = Title.parse(title)
    if issue.published_at is None:
        parsed_description = Description.parse_draft(description)
        new_content = content
    else:
        parsed_description = Description.parse(description)
        new_content = Content.parse(content).value
    issue.title = parsed_title.value
    issue.description = parsed_description.value
    issue.content = new_content
    await session.commit()
    return issue


def validate_for_publish(issue: NewsletterIssue) -> None:
    if issue.published_at is not None:
        raise ValidationError("This newsletter issue has already been published.")
    Content.parse(issue.content)
    Description.parse(issue.description)
    Title.parse(issue.title)


async def publish_issue(
    session: AsyncSession,
    *,
    user_id: str,
    newsletter_issue_id: str,
    now: datetime | None = None,
) -> int:
    """Mark the issue published and enqueue one delivery task per confirmed subscriber.

    Runs inside the caller's transaction and does not commit; returns the
    number of queued deliveries.
    """
    issue = await get_issue(session, user_id=user_id, newsletter_issue_id=newsletter_issue_id)
    validate_for_publish(issue)
    published_at = now or _utc_now()
    issue.published_at = published_at
    await session.flush()
    queued = await delivery_queue_repo.enqueue_for_confirmed_subscribers(
        session,
        newsletter_issue_id=issue.newsletter_issue_id,
        user_id=user_id,
        now=published_at,
    )
    logger.info(
        "newsletter issue published user_id=%s newsletter_issue_id=%s queued=%s",
        user_id,
        newsletter_issue_id,
        queued,
    )
    return queued
