from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.responses import Response

from newsletter_api.core.config import IDEMPOTENCY_KEY_MAX_LENGTH, get_settings
from newsletter_api.core.errors import DatabaseError, IdempotencyInProgressError, ValidationError
from newsletter_api.domain.models import Idempotency
from newsletter_api.persistence.repos import idempotency as idempotency_repo


logger = logging.getLogger(__name__)

# Header names and values are latin-1 on the wire, so this codec round-trips raw bytes exactly.
_HEADER_CODEC = "latin-1"
_POLL_INITIAL_DELAY_S = 0.05
_POLL_MAX_DELAY_S = 1.0


@dataclass(frozen=True)
class IdempotencyKey:
    value: str

    @classmethod
    def parse(cls, value: str) -> "IdempotencyKey":
        if not value:
            raise ValidationError("The idempotency key cannot be empty.")
        if len(value) > IDEMPOTENCY_KEY_MAX_LENGTH:
            raise ValidationError(
                f"The idempotency key must be at most {IDEMPOTENCY_KEY_MAX_LENGTH} characters long."
            )
        return cls(value)


@dataclass(frozen=True)
class SavedResponse:
    """Snapshot of an HTTP response that is replayed verbatim on duplicate requests."""

    status_code: int
    headers: tuple[tuple[bytes, bytes], ...]
    body: bytes

    @classmethod
    def from_response(cls, response: Response) -> "SavedResponse":
        body = getattr(response, "body", None)
        if not isinstance(body, (bytes, bytearray)):
            raise TypeError("Only fully buffered responses can be saved for idempotent replay")
        return cls(
            status_code=int(response.status_code),
            headers=tuple((bytes(name), bytes(value)) for name, value in response.raw_headers),
            body=bytes(body),
        )

    @classmethod
    def from_record(cls, record: Idempotency) -> "SavedResponse":
        if record.response_status_code is None:
            raise ValueError("Idempotency record has not been finalized")
        pairs = record.response_headers or []
        return cls(
            status_code=int(record.response_status_code),
            headers=tuple(
                (str(name).encode(_HEADER_CODEC), str(value).encode(_HEADER_CODEC)) for name, value in pairs
            ),
            body=bytes(record.response_body or b""),
        )

    def headers_json(self) -> list[list[str]]:
        return [[name.decode(_HEADER_CODEC), value.decode(_HEADER_CODEC)] for name, value in self.headers]

    def to_response(self) -> Response:
        response = Response(content=self.body, status_code=self.status_code)
        # Replace the computed headers wholesale so the replay matches the original byte for byte.
        response.raw_headers = [(name, value) for name, value in self.headers]
        return response


class IdempotencyTransaction:
    """Open transaction holding an idempotency reservation.

    Use as an async context manager around the mutation. Exiting without a
    successful ``save_response`` rolls back the mutation together with the
    reservation, so the key can be retried.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.committed = False

    async def __aenter__(self) -> AsyncSession:
        return self.session

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if not self.committed:
                await self.session.rollback()
        finally:
            await self.session.close()

    async def commit(self) -> None:
        await self.session.commit()
        self.committed = True


@dataclass(frozen=True)
class StartProcessing:
    transaction: IdempotencyTransaction


@dataclass(frozen=True)
class ReturnSavedResponse:
    response: Response


NextAction = StartProcessing | ReturnSavedResponse


async def try_processing(
    session_factory: async_sessionmaker[AsyncSession],
    idempotency_key: IdempotencyKey,
    user_id: str,
    *,
    wait_timeout_s: float | None = None,
) -> NextAction:
    # Reserve the key or replay the response stored by whoever reserved it first.
    timeout_s = get_settings().idempotency_wait_timeout_s if wait_timeout_s is None else wait_timeout_s
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(0.0, timeout_s)
    delay = _POLL_INITIAL_DELAY_S
    session = session_factory()
    handed_off = False
    try:
        while True:
            # A concurrent uncommitted reservation makes this insert wait until it commits or rolls back.
            if await idempotency_repo.reserve(session, user_id=user_id, idempotency_key=idempotency_key.value):
                handed_off = True
                return StartProcessing(IdempotencyTransaction(session))
            await session.rollback()
            record = await idempotency_repo.get_record(
                session, user_id=user_id, idempotency_key=idempotency_key.value
            )
            # Snapshot before rollback; rollback expires ORM attributes.
            saved = None
            if record is not None and record.response_status_code is not None:
                saved = SavedResponse.from_record(record)
            await session.rollback()
            if saved is not None:
                return ReturnSavedResponse(saved.to_response())
            # Either still in flight elsewhere or rolled back since the conflict; poll again.
            if loop.time() >= deadline:
                raise IdempotencyInProgressError(
                    f"Request with idempotency key {idempotency_key.value!r} is still being processed"
                )
            logger.info(
                "idempotency reservation pending user_id=%s key=%s; retrying in %.2fs",
                user_id,
                idempotency_key.value,
                delay,
            )
            await asyncio.sleep(delay)
            delay = min(_POLL_MAX_DELAY_S, delay * 2)
    finally:
        if not handed_off:
            await session.close()


async def save_response(
    transaction: IdempotencyTransaction,
    idempotency_key: IdempotencyKey,
    user_id: str,
    response: Response,
) -> Response:
    # Persist the snapshot in the mutation's transaction, then commit both together.
    saved = SavedResponse.from_response(response)
    updated = await idempotency_repo.store_response(
        transaction.session,
        user_id=user_id,
        idempotency_key=idempotency_key.value,
        status_code=saved.status_code,
        headers=saved.headers_json(),
        body=saved.body,
    )
    if updated != 1:
        raise DatabaseError("Idempotency reservation missing or already finalized")
    await transaction.commit()
    return response


async def prune_idempotency_records(
    session: AsyncSession,
    *,
    older_than: timedelta | None = None,
    now: datetime | None = None,
) -> int:
    # Remove finalized snapshots past retention; pending reservations are left alone.
    retention = older_than or timedelta(hours=get_settings().idempotency_retention_hours)
    cutoff = (now or datetime.now(timezone.utc)) - retention
    deleted = await idempotency_repo.delete_finalized_before(session, cutoff=cutoff)
    await session.commit()
    return deleted
