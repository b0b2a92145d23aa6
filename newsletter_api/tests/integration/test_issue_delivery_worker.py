from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
import os

import pytest
from sqlalchemy import select

from newsletter_api.domain.models import IssueDeliveryQueue
from newsletter_api.persistence.db import SessionLocal
from newsletter_api.services.newsletters import publish_issue
from newsletter_api.tests.utils.auth import create_test_author
from newsletter_api.tests.utils.email import FakeEmailClient
from newsletter_api.tests.utils.newsletter import add_subscriber, create_issue
from newsletter_api.workers.issue_delivery_worker import (
    ExecutionOutcome,
    drain_queue,
    retry_backoff_ms,
    try_execute_task,
)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


async def _published_issue(*emails: str, unconfirmed: tuple[str, ...] = ()) -> tuple[str, str]:
    author, _headers = await create_test_author()
    for email in emails:
        await add_subscriber(user_id=author.user_id, email=email)
    for email in unconfirmed:
        await add_subscriber(user_id=author.user_id, email=email, confirmed=False)
    issue_id = await create_issue(user_id=author.user_id)
    async with SessionLocal() as session:
        await publish_issue(session, user_id=author.user_id, newsletter_issue_id=issue_id)
        await session.commit()
    return author.user_id, issue_id


async def _queue_rows() -> list[IssueDeliveryQueue]:
    async with SessionLocal() as session:
        return list((await session.execute(select(IssueDeliveryQueue))).scalars().all())


async def _enqueue(newsletter_issue_id: str, subscriber_email: str) -> None:
    async with SessionLocal() as session:
        session.add(
            IssueDeliveryQueue(
                newsletter_issue_id=newsletter_issue_id,
                subscriber_email=subscriber_email,
                n_retries=0,
                execute_after=datetime.now(timezone.utc) - timedelta(seconds=1),
            )
        )
        await session.commit()


class _RejectingEmailClient(FakeEmailClient):
    # Fails with a non-HTTP error for one recipient and delivers to everyone else.
    def __init__(self, rejected_email: str) -> None:
        super().__init__()
        self.rejected_email = rejected_email
        self.rejected = 0

    async def send_email(self, recipient, subject, html_content, text_content) -> None:
        if recipient.value == self.rejected_email:
            self.rejected += 1
            raise ValueError("template rendering failed")
        await super().send_email(recipient, subject, html_content, text_content)


@pytest.mark.asyncio
async def test_empty_queue_reports_empty() -> None:
    assert await try_execute_task(SessionLocal, FakeEmailClient()) == ExecutionOutcome.EMPTY_QUEUE


@pytest.mark.asyncio
async def test_worker_drains_every_row_once() -> None:
    emails = [f"reader{i}@example.com" for i in range(5)]
    await _published_issue(*emails)
    email_client = FakeEmailClient()

    assert await drain_queue(SessionLocal, email_client) == 5
    assert sorted(email_client.recipients) == sorted(emails)
    assert await _queue_rows() == []
    assert await try_execute_task(SessionLocal, email_client) == ExecutionOutcome.EMPTY_QUEUE


@pytest.mark.asyncio
async def test_worker_skips_subscribers_that_are_not_confirmed() -> None:
    user_id, issue_id = await _published_issue("confirmed@example.com")
    await add_subscriber(user_id=user_id, email="pending@example.com", confirmed=False)
    await _enqueue(issue_id, "pending@example.com")
    await _enqueue(issue_id, "gone@example.com")
    email_client = FakeEmailClient()

    assert await drain_queue(SessionLocal, email_client) == 3
    assert email_client.recipients == ["confirmed@example.com"]
    assert await _queue_rows() == []


@pytest.mark.asyncio
async def test_failed_delivery_is_rescheduled_with_backoff() -> None:
    _user_id, issue_id = await _published_issue("reader@example.com")
    now = datetime.now(timezone.utc) + timedelta(seconds=1)
    email_client = FakeEmailClient(always_fail=True)

    assert await try_execute_task(SessionLocal, email_client, now=now) == ExecutionOutcome.TASK_COMPLETED
    [row] = await _queue_rows()
    assert row.n_retries == 1
    expected = now + timedelta(milliseconds=retry_backoff_ms(issue_id, "reader@example.com", 1))
    assert abs((_as_utc(row.execute_after) - expected).total_seconds()) < 0.01
    # Not due again until the backoff elapses.
    assert await try_execute_task(SessionLocal, email_client, now=now) == ExecutionOutcome.EMPTY_QUEUE
    assert email_client.sent == []


@pytest.mark.asyncio
async def test_transient_failure_then_success_delivers_once() -> None:
    await _published_issue("reader@example.com")
    email_client = FakeEmailClient(fail_times=1)
    now = datetime.now(timezone.utc) + timedelta(seconds=1)

    await try_execute_task(SessionLocal, email_client, now=now)
    await try_execute_task(SessionLocal, email_client, now=now + timedelta(hours=1))

    assert email_client.attempts == 2
    assert email_client.recipients == ["reader@example.com"]
    assert await _queue_rows() == []


@pytest.mark.asyncio
async def test_delivery_is_abandoned_after_retry_budget(settings_env, caplog) -> None:
    settings_env(delivery_max_retries=2)
    await _published_issue("reader@example.com")
    email_client = FakeEmailClient(always_fail=True)
    caplog.set_level(logging.WARNING, logger="newsletter_api.workers.issue_delivery_worker")
    now = datetime.now(timezone.utc) + timedelta(seconds=1)

    for attempt in range(3):
        outcome = await try_execute_task(SessionLocal, email_client, now=now + timedelta(days=attempt))
        assert outcome == ExecutionOutcome.TASK_COMPLETED

    assert email_client.attempts == 3
    assert await _queue_rows() == []
    abandoned = [record for record in caplog.records if "abandoning issue delivery" in record.getMessage()]
    assert len(abandoned) == 1
    assert abandoned[0].levelno == logging.ERROR


@pytest.mark.asyncio
async def test_unexpected_sender_errors_do_not_block_the_queue(settings_env, caplog) -> None:
    settings_env(delivery_max_retries=1)
    await _published_issue("a-broken@example.com", "b-reader@example.com")
    email_client = _RejectingEmailClient("a-broken@example.com")
    caplog.set_level(logging.WARNING, logger="newsletter_api.workers.issue_delivery_worker")
    now = datetime.now(timezone.utc) + timedelta(seconds=1)

    for _ in range(2):
        assert await try_execute_task(SessionLocal, email_client, now=now) == ExecutionOutcome.TASK_COMPLETED
    assert await try_execute_task(SessionLocal, email_client, now=now) == ExecutionOutcome.EMPTY_QUEUE
    assert email_client.recipients == ["b-reader@example.com"]
    [row] = await _queue_rows()
    assert row.subscriber_email == "a-broken@example.com"
    assert row.n_retries == 1

    # Retry budget spent: the row is dead-lettered instead of being claimed forever.
    outcome = await try_execute_task(SessionLocal, email_client, now=now + timedelta(hours=1))
    assert outcome == ExecutionOutcome.TASK_COMPLETED
    assert await _queue_rows() == []
    assert email_client.rejected == 2
    unexpected = [record for record in caplog.records if "raised unexpectedly" in record.getMessage()]
    assert len(unexpected) == 2
    assert all(record.exc_info is not None for record in unexpected)
    assert any("abandoning issue delivery" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
@pytest.mark.skipif(
    not os.environ.get("DATABASE_URL", "").startswith("postgresql"),
    reason="row locking with SKIP LOCKED needs PostgreSQL",
)
async def test_concurrent_workers_never_send_the_same_row_twice() -> None:
    emails = [f"reader{i}@example.com" for i in range(6)]
    await _published_issue(*emails)
    email_client = FakeEmailClient(delay_s=0.05)

    handled = await asyncio.gather(*(drain_queue(SessionLocal, email_client) for _ in range(3)))

    assert sum(handled) == 6
    assert sorted(email_client.recipients) == sorted(emails)
