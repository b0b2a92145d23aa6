from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from enum import Enum
import hashlib
import logging

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from newsletter_api.core.config import get_settings
from newsletter_api.core.errors import ValidationError
from newsletter_api.domain.models import SUBSCRIPTION_CONFIRMED
from newsletter_api.domain.newsletter_issue import render_issue
from newsletter_api.domain.subscriber import SubscriberEmail
from newsletter_api.persistence.db import SessionLocal
from newsletter_api.persistence.repos import delivery_queue as delivery_queue_repo
from newsletter_api.persistence.repos import newsletter_issues as newsletter_issues_repo
from newsletter_api.persistence.repos import subscriptions as subscriptions_repo
from newsletter_api.services.email_client import EmailClient, NotificationSender


logger = logging.getLogger(__name__)

# Expected sender failures; logged without a traceback.
TRANSIENT_DELIVERY_ERRORS = (httpx.HTTPError, TimeoutError)
_ERROR_SLEEP_S = 1.0


class ExecutionOutcome(str, Enum):
    TASK_COMPLETED = "task_completed"
    EMPTY_QUEUE = "empty_queue"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def retry_backoff_ms(newsletter_issue_id: str, subscriber_email: str, attempt_no: int) -> int:
    # Exponential backoff with deterministic jitter so concurrent retries spread out reproducibly.
    settings = get_settings()
    base = max(1, int(settings.delivery_backoff_ms))
    cap = max(base, int(settings.delivery_backoff_max_ms))
    exponent = max(0, int(attempt_no) - 1)
    backoff = min(cap, base * (2**exponent))
    digest = hashlib.sha256(f"{newsletter_issue_id}:{subscriber_email}:{attempt_no}".encode("utf-8")).hexdigest()
    jitter = int(digest[:8], 16) % 251
    return min(cap, backoff + jitter)


async def _skip_task(session: AsyncSession, *, newsletter_issue_id: str, subscriber_email: str, reason: str) -> None:
    logger.warning(
        "skipping issue delivery newsletter_issue_id=%s subscriber_email=%s reason=%s",
        newsletter_issue_id,
        subscriber_email,
        reason,
    )
    await delivery_queue_repo.delete_task(
        session, newsletter_issue_id=newsletter_issue_id, subscriber_email=subscriber_email
    )


async def _record_failure(
    session: AsyncSession,
    *,
    newsletter_issue_id: str,
    subscriber_email: str,
    n_retries: int,
    now: datetime,
    error: Exception,
) -> None:
    max_retries = max(0, int(get_settings().delivery_max_retries))
    if n_retries >= max_retries:
        # Retry budget exhausted: drop the row so it cannot block the queue.
        logger.error(
            "abandoning issue delivery newsletter_issue_id=%s subscriber_email=%s n_retries=%s error=%s",
            newsletter_issue_id,
            subscriber_email,
            n_retries,
            error,
        )
        await delivery_queue_repo.delete_task(
            session, newsletter_issue_id=newsletter_issue_id, subscriber_email=subscriber_email
        )
        return
    attempt_no = n_retries + 1
    delay_ms = retry_backoff_ms(newsletter_issue_id, subscriber_email, attempt_no)
    logger.warning(
        "issue delivery failed newsletter_issue_id=%s subscriber_email=%s attempt=%s retry_in_ms=%s error=%s",
        newsletter_issue_id,
        subscriber_email,
        attempt_no,
        delay_ms,
        error,
    )
    await delivery_queue_repo.schedule_retry(
        session,
        newsletter_issue_id=newsletter_issue_id,
        subscriber_email=subscriber_email,
        n_retries=attempt_no,
        execute_after=now + timedelta(milliseconds=delay_ms),
    )


async def try_execute_task(
    session_factory: async_sessionmaker[AsyncSession],
    email_client: NotificationSender,
    *,
    now: datetime | None = None,
) -> ExecutionOutcome:
    """Claim one due delivery task, send it and settle the row in one transaction.

    The row stays locked (FOR UPDATE SKIP LOCKED) until commit, so concurrent
    workers never pick the same task. Success and skips delete the row;
    any send failure either reschedules it or dead-letters it.
    Storage errors roll the claim back and propagate.
    """
    now = now or _utc_now()
    async with session_factory() as session:
        async with session.begin():
            task = await delivery_queue_repo.dequeue(session, now=now)
            if task is None:
                return ExecutionOutcome.EMPTY_QUEUE
            newsletter_issue_id = task.newsletter_issue_id
            subscriber_email = task.subscriber_email
            n_retries = int(task.n_retries or 0)

            issue = await newsletter_issues_repo.get_issue(session, newsletter_issue_id)
            if issue is None:
                await _skip_task(
                    session,
                    newsletter_issue_id=newsletter_issue_id,
                    subscriber_email=subscriber_email,
                    reason="issue_missing",
                )
                return ExecutionOutcome.TASK_COMPLETED
            status = await subscriptions_repo.get_status(session, user_id=issue.user_id, email=subscriber_email)
            if status != SUBSCRIPTION_CONFIRMED:
                await _skip_task(
                    session,
                    newsletter_issue_id=newsletter_issue_id,
                    subscriber_email=subscriber_email,
                    reason="subscriber_not_confirmed",
                )
                return ExecutionOutcome.TASK_COMPLETED
            try:
                recipient = SubscriberEmail.parse(subscriber_email)
            except ValidationError:
                await _skip_task(
                    session,
                    newsletter_issue_id=newsletter_issue_id,
                    subscriber_email=subscriber_email,
                    reason="invalid_email",
                )
                return ExecutionOutcome.TASK_COMPLETED

            rendered = render_issue(title=issue.title, content=issue.content)
            try:
                await email_client.send_email(
                    recipient,
                    rendered.subject,
                    rendered.html_content,
                    rendered.text_content,
                )
            except Exception as exc:  # noqa: BLE001 - every send failure counts against the row.
                if not isinstance(exc, TRANSIENT_DELIVERY_ERRORS):
                    logger.exception(
                        "notification sender raised unexpectedly newsletter_issue_id=%s subscriber_email=%s",
                        newsletter_issue_id,
                        subscriber_email,
                    )
                await _record_failure(
                    session,
                    newsletter_issue_id=newsletter_issue_id,
                    subscriber_email=subscriber_email,
                    n_retries=n_retries,
                    now=now,
                    error=exc,
                )
                return ExecutionOutcome.TASK_COMPLETED
            await delivery_queue_repo.delete_task(
                session, newsletter_issue_id=newsletter_issue_id, subscriber_email=subscriber_email
            )
            logger.info(
                "issue delivered newsletter_issue_id=%s subscriber_email=%s",
                newsletter_issue_id,
                subscriber_email,
            )
    return ExecutionOutcome.TASK_COMPLETED


async def drain_queue(
    session_factory: async_sessionmaker[AsyncSession],
    email_client: NotificationSender,
    *,
    now: datetime | None = None,
) -> int:
    # Process due tasks until the queue reports empty; returns how many were handled.
    handled = 0
    while await try_execute_task(session_factory, email_client, now=now) == ExecutionOutcome.TASK_COMPLETED:
        handled += 1
    return handled


async def run_issue_delivery_loop(
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
    email_client: NotificationSender | None = None,
) -> None:
    # Poll forever; back off after an empty queue or an unexpected failure.
    interval = max(1, int(get_settings().delivery_poll_interval_s))
    owned_client = None
    if email_client is None:
        owned_client = EmailClient.from_settings()
        email_client = owned_client
    try:
        while True:
            try:
                outcome = await try_execute_task(session_factory, email_client)
            except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                logger.exception("issue delivery cycle failed")
                await asyncio.sleep(_ERROR_SLEEP_S)
                continue
            if outcome == ExecutionOutcome.EMPTY_QUEUE:
                await asyncio.sleep(interval)
    finally:
        if owned_client is not None:
            await owned_client.aclose()
