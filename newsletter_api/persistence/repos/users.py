from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from newsletter_api.domain.models import ApiKey, User


async def get_user(session: AsyncSession, user_id: str) -> User | None:
    return await session.get(User, user_id)


async def get_user_by_username(session: AsyncSession, username: str) -> User | None:
    result = await session.execute(select(User).where(User.username == username))
    return result.scalar_one_or_none()


async def get_active_key_owner(session: AsyncSession, key_hash: str) -> tuple[ApiKey, User] | None:
    # Join keys to owners in one round trip; revoked keys never authenticate.
    result = await session.execute(
        select(ApiKey, User)
        .join(User, User.user_id == ApiKey.user_id)
        .where(ApiKey.key_hash == key_hash, ApiKey.revoked_at.is_(None))
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]
