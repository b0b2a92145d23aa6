from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, delete, func, insert, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from newsletter_api.domain.models import IssueDeliveryQueue, SUBSCRIPTION_CONFIRMED, Subscription


async def enqueue_for_confirmed_subscribers(
    session: AsyncSession,
    *,
    newsletter_issue_id: str,
    user_id: str,
    now: datetime,
) -> int:
    # Fan out with a single INSERT ... SELECT so the outbox rows share the publish transaction.
    source = select(
        literal(newsletter_issue_id, String),
        Subscription.email,
        literal(0, Integer),
        literal(now, DateTime(timezone=True)),
    ).where(
        Subscription.status == SUBSCRIPTION_CONFIRMED,
        Subscription.user_id == user_id,
    )
    result = await session.execute(
        insert(IssueDeliveryQueue).from_select(
            ["newsletter_issue_id", "subscriber_email", "n_retries", "execute_after"],
            source,
        )
    )
    return result.rowcount or 0


async def dequeue(session: AsyncSession, *, now: datetime) -> IssueDeliveryQueue | None:
    # Lock one due row and skip rows another worker already holds.
    result = await session.execute(
        select(IssueDeliveryQueue)
        .where(IssueDeliveryQueue.execute_after <= now)
        .order_by(
            IssueDeliveryQueue.execute_after.asc(),
            IssueDeliveryQueue.newsletter_issue_id.asc(),
            IssueDeliveryQueue.subscriber_email.asc(),
        )
        .limit(1)
        .with_for_update(skip_locked=True)
    )
    return result.scalar_one_or_none()


async def delete_task(session: AsyncSession, *, newsletter_issue_id: str, subscriber_email: str) -> None:
    await session.execute(
        delete(IssueDeliveryQueue).where(
            IssueDeliveryQueue.newsletter_issue_id == newsletter_issue_id,
            IssueDeliveryQueue.subscriber_email == subscriber_email,
        )
    )


async def schedule_retry(
    session: AsyncSession,
    *,
    newsletter_issue_id: str,
    subscriber_email: str,
    n_retries: int,
    execute_after: datetime,
) -> None:
    await session.execute(
        update(IssueDeliveryQueue)
        .where(
            IssueDeliveryQueue.newsletter_issue_id == newsletter_issue_id,
            IssueDeliveryQueue.subscriber_email == subscriber_email,
        )
        .values(n_retries=n_retries, execute_after=execute_after)
    )


async def count_pending(session: AsyncSession, *, newsletter_issue_id: str | None = None) -> int:
    stmt = select(func.count()).select_from(IssueDeliveryQueue)
    if newsletter_issue_id is not None:
        stmt = stmt.where(IssueDeliveryQueue.newsletter_issue_id == newsletter_issue_id)
    return int(await session.scalar(stmt) or 0)
