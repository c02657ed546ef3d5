"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path

import pytest

from newsletter_delivery.delivery.errors import EmailSendError
from newsletter_delivery.delivery.models import NewsletterIssueCreate, NewsletterIssueView
from newsletter_delivery.delivery.recipient import SubscriberEmail
from newsletter_delivery.delivery.repository import DeliveryQueueRepository
from newsletter_delivery.storage.common import sqlite_url


@dataclass(slots=True, frozen=True)
class SentEmail:
    recipient: str
    subject: str
    html_body: str
    text_body: str


class RecordingTransport:
    """In-memory transport recording every send attempt, failed ones included."""

    def __init__(self, *, fail_for: tuple[str, ...] = ()) -> None:
        self.sent: list[SentEmail] = []
        self.fail_for = set(fail_for)
        self._lock = threading.Lock()

    def send_email(
        self,
        recipient: SubscriberEmail,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> None:
        with self._lock:
            self.sent.append(
                SentEmail(
                    recipient=str(recipient),
                    subject=subject,
                    html_body=html_body,
                    text_body=text_body,
                ),
            )
        if str(recipient) in self.fail_for:
            raise EmailSendError(f"Email API rejected message to {recipient}: HTTP 500")

    @property
    def recipients(self) -> list[str]:
        with self._lock:
            return [email.recipient for email in self.sent]


@pytest.fixture()
def db_url(tmp_path: Path) -> str:
    return sqlite_url(tmp_path / "delivery.db")


@pytest.fixture()
def repository(db_url: str) -> Iterator[DeliveryQueueRepository]:
    repository = DeliveryQueueRepository(db_url)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture()
def publish_issue(
    repository: DeliveryQueueRepository,
) -> Callable[..., NewsletterIssueView]:
    """Act as the external publisher: store an issue and enqueue its recipients."""

    def _publish(
        recipients: list[str],
        *,
        title: str = "Weekly digest",
        issue_id: str | None = None,
    ) -> NewsletterIssueView:
        return repository.enqueue_issue(
            NewsletterIssueCreate(
                title=title,
                text_content=f"{title} as plain text",
                html_content=f"<p>{title}</p>",
                issue_id=issue_id,
            ),
            recipients,
        )

    return _publish
