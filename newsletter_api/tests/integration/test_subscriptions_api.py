from __future__ import annotations

import re
from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import select

from newsletter_api.domain.models import SUBSCRIPTION_CONFIRMED, SUBSCRIPTION_PENDING, Subscription
from newsletter_api.persistence.db import SessionLocal
from newsletter_api.tests.utils.auth import create_test_author
from newsletter_api.tests.utils.email import FakeEmailClient
from newsletter_api.tests.utils.newsletter import api_client


def _confirmation_token(html_content: str) -> str:
    link = re.search(r'href="([^"]+)"', html_content).group(1)
    return parse_qs(urlparse(link).query)["subscription_token"][0]


async def _subscriptions() -> list[Subscription]:
    async with SessionLocal() as session:
        return list((await session.execute(select(Subscription))).scalars().all())


@pytest.mark.asyncio
async def test_subscribe_then_confirm() -> None:
    author, _headers = await create_test_author()
    email_client = FakeEmailClient()

    async with api_client(email_client) as client:
        subscribed = await client.post(
            "/subscriptions",
            json={"name": "Ursula Le Guin", "email": "ursula@example.com", "user_id": author.user_id},
        )
        assert subscribed.status_code == 200
        [row] = await _subscriptions()
        assert row.status == SUBSCRIPTION_PENDING
        assert email_client.recipients == ["ursula@example.com"]

        token = _confirmation_token(email_client.sent[0].html_content)
        assert token in email_client.sent[0].text_content
        confirmed = await client.put("/subscriptions/confirm", params={"subscription_token": token})
        assert confirmed.status_code == 200

    [row] = await _subscriptions()
    assert row.status == SUBSCRIPTION_CONFIRMED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"name": "", "email": "ursula@example.com"},
        {"name": "Ursula", "email": "not-an-email"},
        {"name": "Ursula {Le Guin}", "email": "ursula@example.com"},
    ],
)
async def test_invalid_subscriptions_are_rejected(payload: dict[str, str]) -> None:
    author, _headers = await create_test_author()
    email_client = FakeEmailClient()

    async with api_client(email_client) as client:
        response = await client.post("/subscriptions", json={**payload, "user_id": author.user_id})

    assert response.status_code == 400
    assert await _subscriptions() == []
    assert email_client.sent == []


@pytest.mark.asyncio
async def test_subscribing_to_unknown_author_is_rejected() -> None:
    async with api_client(FakeEmailClient()) as client:
        response = await client.post(
            "/subscriptions",
            json={"name": "Ursula", "email": "ursula@example.com", "user_id": "no-such-author"},
        )
    assert response.status_code == 400
    assert response.json()["error"]["message"] == "Unknown newsletter author."


@pytest.mark.asyncio
async def test_resubscribing_resends_until_confirmed() -> None:
    author, _headers = await create_test_author()
    email_client = FakeEmailClient()
    payload = {"name": "Ursula", "email": "ursula@example.com", "user_id": author.user_id}

    async with api_client(email_client) as client:
        await client.post("/subscriptions", json=payload)
        await client.post("/subscriptions", json=payload)
        assert len(email_client.sent) == 2
        first = _confirmation_token(email_client.sent[0].html_content)
        second = _confirmation_token(email_client.sent[1].html_content)
        assert first != second

        await client.put("/subscriptions/confirm", params={"subscription_token": second})
        again = await client.post("/subscriptions", json=payload)
        assert again.status_code == 200

    assert len(email_client.sent) == 2
    assert len(await _subscriptions()) == 1


@pytest.mark.asyncio
async def test_confirm_requires_a_known_token() -> None:
    async with api_client(FakeEmailClient()) as client:
        missing = await client.put("/subscriptions/confirm")
        assert missing.status_code == 400
        unknown = await client.put("/subscriptions/confirm", params={"subscription_token": "nope"})
        assert unknown.status_code == 401


@pytest.mark.asyncio
async def test_health() -> None:
    async with api_client() as client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-Id"]
