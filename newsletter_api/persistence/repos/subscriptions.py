from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from newsletter_api.domain.models import SUBSCRIPTION_CONFIRMED, Subscription, SubscriptionToken


async def get_status(session: AsyncSession, *, user_id: str, email: str) -> str | None:
    result = await session.execute(
        select(Subscription.status).where(
            Subscription.user_id == user_id,
            Subscription.email == email,
        )
    )
    return result.scalar_one_or_none()


async def get_by_email_and_user(session: AsyncSession, *, email: str, user_id: str) -> Subscription | None:
    result = await session.execute(
        select(Subscription).where(Subscription.email == email, Subscription.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_subscriber_id_from_token(session: AsyncSession, subscription_token: str) -> str | None:
    result = await session.execute(
        select(SubscriptionToken.subscriber_id).where(
            SubscriptionToken.subscription_token == subscription_token
        )
    )
    return result.scalar_one_or_none()


async def confirm(session: AsyncSession, subscriber_id: str) -> None:
    await session.execute(
        update(Subscription)
        .where(Subscription.id == subscriber_id)
        .values(status=SUBSCRIPTION_CONFIRMED)
    )
