from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from newsletter_api.domain.models import NewsletterIssue


async def get_issue(session: AsyncSession, newsletter_issue_id: str) -> NewsletterIssue | None:
    return await session.get(NewsletterIssue, newsletter_issue_id)


async def get_issue_for_user(
    session: AsyncSession, *, user_id: str, newsletter_issue_id: str
) -> NewsletterIssue | None:
    # Scope by owner so one author can never read or publish another author's issue.
    result = await session.execute(
        select(NewsletterIssue).where(
            NewsletterIssue.user_id == user_id,
            NewsletterIssue.newsletter_issue_id == newsletter_issue_id,
        )
    )
    return result.scalar_one_or_none()


async def slug_taken(session: AsyncSession, *, user_id: str, slug: str) -> bool:
    stmt = select(NewsletterIssue.newsletter_issue_id).where(
        NewsletterIssue.user_id == user_id,
        NewsletterIssue.slug == slug,
    )
    return (await session.execute(stmt.limit(1))).first() is not None


async def list_published(session: AsyncSession, *, user_id: str, limit: int = 10) -> list[NewsletterIssue]:
    result = await session.execute(
        select(NewsletterIssue)
        .where(NewsletterIssue.user_id == user_id, NewsletterIssue.published_at.is_not(None))
        .order_by(NewsletterIssue.published_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_drafts(session: AsyncSession, *, user_id: str, limit: int = 10) -> list[NewsletterIssue]:
    result = await session.execute(
        select(NewsletterIssue)
        .where(NewsletterIssue.user_id == user_id, NewsletterIssue.published_at.is_(None))
        .order_by(NewsletterIssue.created_at.desc(), NewsletterIssue.newsletter_issue_id)
        .limit(limit)
    )
    return list(result.scalars().all())
