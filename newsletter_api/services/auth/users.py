from __future__ import annotations

from dataclasses import dataclass
import re
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from newsletter_api.core.errors import ValidationError
from newsletter_api.domain.models import ApiKey, User
from newsletter_api.domain.subscriber import SubscriberEmail
from newsletter_api.services.auth.api_keys import generate_api_key


USERNAME_MAX_LENGTH = 70
_USERNAME_PATTERN = re.compile(r"^[\w.~-]+$")


def parse_username(value: str) -> str:
    if not value.strip() or len(value) > USERNAME_MAX_LENGTH or not _USERNAME_PATTERN.match(value):
        raise ValidationError(f"{value} is not a valid username.")
    return value


@dataclass(frozen=True)
class ProvisionedUser:
    user_id: str
    username: str
    api_key_id: str
    raw_api_key: str


async def issue_api_key(session: AsyncSession, *, user: User, key_name: str = "default") -> ProvisionedUser:
    # Only the hash is stored; the raw key is returned once to the caller.
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    session.add(
        ApiKey(
            id=key_id,
            user_id=user.user_id,
            key_prefix=key_prefix,
            key_hash=key_hash,
            name=key_name,
        )
    )
    await session.flush()
    return ProvisionedUser(
        user_id=user.user_id,
        username=user.username,
        api_key_id=key_id,
        raw_api_key=raw_key,
    )


async def provision_user_with_api_key(
    session: AsyncSession,
    *,
    username: str,
    email: str,
    key_name: str = "default",
) -> ProvisionedUser:
    # Create an author and the bearer key they use for admin routes; caller commits.
    user = User(
        user_id=str(uuid4()),
        username=parse_username(username),
        email=SubscriberEmail.parse(email).value,
    )
    session.add(user)
    # Flush the user insert before the API key to satisfy FK constraints.
    await session.flush()
    return await issue_api_key(session, user=user, key_name=key_name)
