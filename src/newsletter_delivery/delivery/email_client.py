"""Email transport: protocol plus an HTTP API client implementation."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from newsletter_delivery.delivery.errors import EmailSendError
from newsletter_delivery.delivery.recipient import SubscriberEmail

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
AUTH_HEADER = "X-Postmark-Server-Token"


class EmailTransport(Protocol):
    """Sends one message; raises EmailSendError on failure, never retries."""

    def send_email(
        self,
        recipient: SubscriberEmail,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> None:
        """Deliver a single message to a single recipient."""


class EmailClient:
    """Postmark-compatible email API client over httpx."""

    def __init__(
        self,
        *,
        base_url: str,
        sender: SubscriberEmail,
        authorization_token: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.sender = sender
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds),
            headers={AUTH_HEADER: authorization_token},
            transport=transport,
        )

    def send_email(
        self,
        recipient: SubscriberEmail,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> None:
        payload = {
            "From": str(self.sender),
            "To": str(recipient),
            "Subject": subject,
            "HtmlBody": html_body,
            "TextBody": text_body,
        }
        try:
            response = self._client.post(f"{self.base_url}/email", json=payload)
        except httpx.TimeoutException as error:
            raise EmailSendError(f"Timeout sending email to {recipient}") from error
        except httpx.HTTPError as error:
            raise EmailSendError(f"HTTP error sending email to {recipient}: {error}") from error

        if not response.is_success:
            raise EmailSendError(
                f"Email API rejected message to {recipient}: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        logger.debug("Email accepted for %s (HTTP %s)", recipient, response.status_code)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> EmailClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
