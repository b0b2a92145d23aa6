from __future__ import annotations

import logging
from typing import Protocol

import httpx

from newsletter_api.core.config import Settings, get_settings
from newsletter_api.domain.subscriber import SubscriberEmail


logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    async def send_email(
        self,
        recipient: SubscriberEmail,
        subject: str,
        html_content: str,
        text_content: str,
    ) -> None: ...


class EmailClient:
    """Postmark-style email API client.

    Raises ``httpx.HTTPError`` (including timeouts and non-2xx statuses) on
    failure; callers decide whether that is retryable.
    """

    def __init__(
        self,
        *,
        base_url: str,
        sender: SubscriberEmail,
        authorization_token: str,
        timeout_ms: int,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.sender = sender
        self._authorization_token = authorization_token
        # Keep a shared client so connection pooling survives across sends.
        self._http_client = http_client or httpx.AsyncClient(timeout=max(0.2, timeout_ms / 1000.0))

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs) -> "EmailClient":
        settings = settings or get_settings()
        return cls(
            base_url=settings.email_base_url,
            sender=SubscriberEmail.parse(settings.email_sender),
            authorization_token=settings.email_authorization_token,
            timeout_ms=settings.email_timeout_ms,
            **kwargs,
        )

    async def send_email(
        self,
        recipient: SubscriberEmail,
        subject: str,
        html_content: str,
        text_content: str,
    ) -> None:
        payload = {
            "From": self.sender.value,
            "To": recipient.value,
            "Subject": subject,
            "HtmlBody": html_content,
            "TextBody": text_content,
        }
        response = await self._http_client.post(
            f"{self.base_url}/email",
            json=payload,
            headers={"X-Postmark-Server-Token": self._authorization_token},
        )
        response.raise_for_status()
        logger.debug("email accepted recipient=%s status=%s", recipient.value, response.status_code)

    async def aclose(self) -> None:
        await self._http_client.aclose()
