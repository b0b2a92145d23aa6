from __future__ import annotations

import json

import httpx
import pytest

from newsletter_api.domain.subscriber import SubscriberEmail
from newsletter_api.services.email_client import EmailClient


def _client(handler) -> EmailClient:
    return EmailClient(
        base_url="http://email-api.local/",
        sender=SubscriberEmail.parse("newsletter@example.com"),
        authorization_token="token-123",
        timeout_ms=2000,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.asyncio
async def test_send_email_posts_postmark_payload() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"ErrorCode": 0})

    client = _client(handler)
    await client.send_email(
        SubscriberEmail.parse("reader@example.com"),
        "Subject",
        "<p>Hi</p>",
        "Hi",
    )
    await client.aclose()

    assert len(captured) == 1
    request = captured[0]
    assert request.method == "POST"
    assert str(request.url) == "http://email-api.local/email"
    assert request.headers["X-Postmark-Server-Token"] == "token-123"
    assert json.loads(request.content) == {
        "From": "newsletter@example.com",
        "To": "reader@example.com",
        "Subject": "Subject",
        "HtmlBody": "<p>Hi</p>",
        "TextBody": "Hi",
    }


@pytest.mark.asyncio
async def test_send_email_raises_on_server_error() -> None:
    client = _client(lambda request: httpx.Response(500))
    with pytest.raises(httpx.HTTPStatusError):
        await client.send_email(SubscriberEmail.parse("reader@example.com"), "s", "h", "t")
    await client.aclose()
