from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from newsletter_api.domain.models import Idempotency
from newsletter_api.persistence.dialect import insert_for


async def reserve(session: AsyncSession, *, user_id: str, idempotency_key: str) -> bool:
    # Insert the empty reservation; the primary key turns a duplicate into a no-op.
    stmt = (
        insert_for(session, Idempotency)
        .values(user_id=user_id, idempotency_key=idempotency_key)
        .on_conflict_do_nothing(index_elements=["user_id", "idempotency_key"])
    )
    result = await session.execute(stmt)
    return (result.rowcount or 0) > 0


async def get_record(session: AsyncSession, *, user_id: str, idempotency_key: str) -> Idempotency | None:
    result = await session.execute(
        select(Idempotency).where(
            Idempotency.user_id == user_id,
            Idempotency.idempotency_key == idempotency_key,
        )
    )
    return result.scalar_one_or_none()


async def store_response(
    session: AsyncSession,
    *,
    user_id: str,
    idempotency_key: str,
    status_code: int,
    headers: list[Any],
    body: bytes,
) -> int:
    # Only fill a reservation once; finalized rows are immutable.
    result = await session.execute(
        update(Idempotency)
        .where(
            Idempotency.user_id == user_id,
            Idempotency.idempotency_key == idempotency_key,
            Idempotency.response_status_code.is_(None),
        )
        .values(
            response_status_code=status_code,
            response_headers=headers,
            response_body=body,
        )
    )
    return result.rowcount or 0


async def delete_finalized_before(session: AsyncSession, *, cutoff: datetime) -> int:
    result = await session.execute(
        delete(Idempotency).where(
            Idempotency.created_at < cutoff,
            Idempotency.response_status_code.is_not(None),
        )
    )
    return result.rowcount or 0
