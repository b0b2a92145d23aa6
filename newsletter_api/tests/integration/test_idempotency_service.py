from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.responses import JSONResponse
from sqlalchemy import select

from newsletter_api.core.errors import DatabaseError, IdempotencyInProgressError
from newsletter_api.domain.models import Idempotency
from newsletter_api.persistence.db import SessionLocal
from newsletter_api.services.idempotency import (
    IdempotencyKey,
    IdempotencyTransaction,
    ReturnSavedResponse,
    StartProcessing,
    prune_idempotency_records,
    save_response,
    try_processing,
)
from newsletter_api.tests.utils.auth import create_test_author
from newsletter_api.tests.utils.newsletter import count_idempotency_rows


@pytest.mark.asyncio
async def test_first_request_starts_processing_and_duplicate_replays() -> None:
    author, _headers = await create_test_author()
    key = IdempotencyKey.parse("replay-key")

    action = await try_processing(SessionLocal, key, author.user_id)
    assert isinstance(action, StartProcessing)
    async with action.transaction:
        response = JSONResponse(content={"message": "done"}, status_code=202, headers={"x-trace": "abc"})
        returned = await save_response(action.transaction, key, author.user_id, response)
    assert returned is response

    replay = await try_processing(SessionLocal, key, author.user_id)
    assert isinstance(replay, ReturnSavedResponse)
    assert replay.response.status_code == 202
    assert replay.response.body == response.body
    assert replay.response.raw_headers == response.raw_headers


@pytest.mark.asyncio
async def test_abandoned_transaction_releases_the_key() -> None:
    author, _headers = await create_test_author()
    key = IdempotencyKey.parse("released-key")

    action = await try_processing(SessionLocal, key, author.user_id)
    assert isinstance(action, StartProcessing)
    with pytest.raises(RuntimeError):
        async with action.transaction:
            raise RuntimeError("mutation failed")
    assert await count_idempotency_rows() == 0

    retry = await try_processing(SessionLocal, key, author.user_id)
    assert isinstance(retry, StartProcessing)
    async with retry.transaction:
        pass


@pytest.mark.asyncio
async def test_keys_are_scoped_per_user() -> None:
    first, _ = await create_test_author()
    second, _ = await create_test_author()
    key = IdempotencyKey.parse("shared-key")

    for author in (first, second):
        action = await try_processing(SessionLocal, key, author.user_id)
        assert isinstance(action, StartProcessing)
        async with action.transaction:
            await save_response(action.transaction, key, author.user_id, JSONResponse({"user": author.user_id}))

    replay = await try_processing(SessionLocal, key, second.user_id)
    assert isinstance(replay, ReturnSavedResponse)
    assert second.user_id.encode() in replay.response.body


@pytest.mark.asyncio
async def test_duplicate_waits_for_in_flight_request() -> None:
    author, _headers = await create_test_author()
    key = IdempotencyKey.parse("in-flight-key")

    winner = await try_processing(SessionLocal, key, author.user_id)
    assert isinstance(winner, StartProcessing)
    duplicate = asyncio.create_task(try_processing(SessionLocal, key, author.user_id))
    await asyncio.sleep(0.2)
    assert not duplicate.done()

    async with winner.transaction:
        await save_response(winner.transaction, key, author.user_id, JSONResponse({"message": "first"}))

    outcome = await asyncio.wait_for(duplicate, timeout=10)
    assert isinstance(outcome, ReturnSavedResponse)
    assert outcome.response.body == b'{"message":"first"}'


@pytest.mark.asyncio
async def test_stale_reservation_times_out_with_conflict() -> None:
    author, _headers = await create_test_author()
    async with SessionLocal() as session:
        session.add(Idempotency(user_id=author.user_id, idempotency_key="stale-key"))
        await session.commit()

    with pytest.raises(IdempotencyInProgressError):
        await try_processing(
            SessionLocal,
            IdempotencyKey.parse("stale-key"),
            author.user_id,
            wait_timeout_s=0.2,
        )


@pytest.mark.asyncio
async def test_prune_removes_only_expired_finalized_records() -> None:
    author, _headers = await create_test_author()
    now = datetime.now(timezone.utc)
    old = now - timedelta(hours=72)
    async with SessionLocal() as session:
        session.add_all(
            [
                Idempotency(
                    user_id=author.user_id,
                    idempotency_key="old-final",
                    response_status_code=200,
                    response_headers=[],
                    response_body=b"{}",
                    created_at=old,
                ),
                Idempotency(user_id=author.user_id, idempotency_key="old-pending", created_at=old),
                Idempotency(
                    user_id=author.user_id,
                    idempotency_key="fresh-final",
                    response_status_code=200,
                    response_headers=[],
                    response_body=b"{}",
                    created_at=now,
                ),
            ]
        )
        await session.commit()

    async with SessionLocal() as session:
        deleted = await prune_idempotency_records(session, older_than=timedelta(hours=48), now=now)
    assert deleted == 1

    async with SessionLocal() as session:
        remaining = set((await session.execute(select(Idempotency.idempotency_key))).scalars().all())
    assert remaining == {"old-pending", "fresh-final"}


@pytest.mark.asyncio
async def test_finalized_record_is_never_overwritten() -> None:
    author, _headers = await create_test_author()
    key = IdempotencyKey.parse("final-key")
    action = await try_processing(SessionLocal, key, author.user_id)
    assert isinstance(action, StartProcessing)
    async with action.transaction:
        await save_response(action.transaction, key, author.user_id, JSONResponse({"message": "first"}))

    stray = IdempotencyTransaction(SessionLocal())
    with pytest.raises(DatabaseError):
        async with stray:
            await save_response(stray, key, author.user_id, JSONResponse({"message": "second"}))

    replay = await try_processing(SessionLocal, key, author.user_id)
    assert isinstance(replay, ReturnSavedResponse)
    assert replay.response.body == b'{"message":"first"}'
