from __future__ import annotations

import logging
import secrets
import string
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from newsletter_api.domain.models import (
    SUBSCRIPTION_CONFIRMED,
    SUBSCRIPTION_PENDING,
    Subscription,
    SubscriptionToken,
)
from newsletter_api.domain.subscriber import NewSubscriber
from newsletter_api.persistence.repos import subscriptions as subscriptions_repo
from newsletter_api.services.email_client import NotificationSender


logger = logging.getLogger(__name__)

_TOKEN_ALPHABET = string.ascii_letters + string.digits
SUBSCRIPTION_TOKEN_LENGTH = 25


def generate_subscription_token() -> str:
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(SUBSCRIPTION_TOKEN_LENGTH))


def confirmation_link(base_url: str, subscription_token: str) -> str:
    return f"{base_url.rstrip('/')}/subscriptions/confirm?subscription_token={subscription_token}"


async def subscribe(
    session: AsyncSession,
    *,
    new_subscriber: NewSubscriber,
    email_client: NotificationSender,
    base_url: str,
) -> str:
    """Store a pending subscription and send the confirmation email.

    Re-subscribing with a pending address issues a fresh token and resends the
    email; an already confirmed address is left untouched. Returns the
    subscriber id.
    """
    existing = await subscriptions_repo.get_by_email_and_user(
        session, email=new_subscriber.email.value, user_id=new_subscriber.user_id
    )
    if existing is not None and existing.status == SUBSCRIPTION_CONFIRMED:
        return existing.id
    if existing is None:
        subscriber_id = str(uuid4())
        session.add(
            Subscription(
                id=subscriber_id,
                email=new_subscriber.email.value,
                name=new_subscriber.name.value,
                user_id=new_subscriber.user_id,
                status=SUBSCRIPTION_PENDING,
            )
        )
        # Flush the subscriber before its token to satisfy FK constraints.
        await session.flush()
    else:
        subscriber_id = existing.id
    subscription_token = generate_subscription_token()
    session.add(SubscriptionToken(subscription_token=subscription_token, subscriber_id=subscriber_id))
    await session.commit()

    await send_confirmation_email(
        email_client=email_client,
        new_subscriber=new_subscriber,
        base_url=base_url,
        subscription_token=subscription_token,
    )
    return subscriber_id


async def send_confirmation_email(
    *,
    email_client: NotificationSender,
    new_subscriber: NewSubscriber,
    base_url: str,
    subscription_token: str,
) -> None:
    link = confirmation_link(base_url, subscription_token)
    html_body = (
        "Welcome to our newsletter!<br />"
        f'Click <a href="{link}">here</a> to confirm your subscription.'
    )
    text_body = f"Welcome to our newsletter!\nVisit {link} to confirm your subscription."
    await email_client.send_email(new_subscriber.email, "Welcome!", html_body, text_body)


async def confirm_subscription(session: AsyncSession, subscription_token: str) -> bool:
    # Returns False for unknown tokens so the route can answer 401.
    subscriber_id = await subscriptions_repo.get_subscriber_id_from_token(session, subscription_token)
    if subscriber_id is None:
        return False
    await subscriptions_repo.confirm(session, subscriber_id)
    await session.commit()
    logger.info("subscription confirmed subscriber_id=%s", subscriber_id)
    return True
