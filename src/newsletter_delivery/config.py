"""Runtime configuration for the delivery worker."""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass, field
from urllib.parse import urlparse

from newsletter_delivery.delivery.recipient import InvalidSubscriberEmailError, SubscriberEmail

DEFAULT_DB_URL = "sqlite:///.newsletter_delivery.db"


def _default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}"


@dataclass(slots=True)
class DatabaseSettings:
    """Connection policy."""

    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class WorkerSettings:
    """Delivery loop and claim settings."""

    worker_id: str = field(default_factory=_default_worker_id)
    workers: int = 1
    idle_interval_seconds: float = 10.0
    error_backoff_seconds: float = 1.0
    lease_seconds: int = 300


@dataclass(slots=True)
class EmailClientSettings:
    """Email API client settings."""

    base_url: str = "http://localhost:8025"
    sender_email: str = "newsletter@example.com"
    authorization_token: str = ""
    timeout_seconds: float = 10.0

    def sender(self) -> SubscriberEmail:
        return SubscriberEmail.parse(self.sender_email)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_url: str = DEFAULT_DB_URL
    log_level: str = "INFO"
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    email_client: EmailClientSettings = field(default_factory=EmailClientSettings)

    @classmethod
    def from_env(cls, db_url: str | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_url=db_url or os.getenv("NEWSLETTER_DELIVERY_DB_URL", DEFAULT_DB_URL),
            log_level=os.getenv("NEWSLETTER_DELIVERY_LOG_LEVEL", "INFO").strip().upper(),
            database=DatabaseSettings(
                busy_timeout_ms=int(os.getenv("NEWSLETTER_DELIVERY_DB_BUSY_TIMEOUT_MS", "5000")),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("NEWSLETTER_DELIVERY_WORKER_ID") or _default_worker_id(),
                workers=int(os.getenv("NEWSLETTER_DELIVERY_WORKERS", "1")),
                idle_interval_seconds=float(
                    os.getenv("NEWSLETTER_DELIVERY_IDLE_INTERVAL_SECONDS", "10.0"),
                ),
                error_backoff_seconds=float(
                    os.getenv("NEWSLETTER_DELIVERY_ERROR_BACKOFF_SECONDS", "1.0"),
                ),
                lease_seconds=int(os.getenv("NEWSLETTER_DELIVERY_LEASE_SECONDS", "300")),
            ),
            email_client=EmailClientSettings(
                base_url=os.getenv("NEWSLETTER_DELIVERY_EMAIL_BASE_URL", "http://localhost:8025"),
                sender_email=os.getenv(
                    "NEWSLETTER_DELIVERY_EMAIL_SENDER",
                    "newsletter@example.com",
                ),
                authorization_token=os.getenv("NEWSLETTER_DELIVERY_EMAIL_AUTH_TOKEN", ""),
                timeout_seconds=float(
                    os.getenv("NEWSLETTER_DELIVERY_EMAIL_TIMEOUT_SECONDS", "10.0"),
                ),
            ),
        )

    def validate_for_worker(self) -> None:
        """Raise configuration error if worker settings are unusable."""

        if self.worker.lease_seconds <= 0:
            raise ValueError("NEWSLETTER_DELIVERY_LEASE_SECONDS must be > 0.")
        if self.worker.workers <= 0:
            raise ValueError("NEWSLETTER_DELIVERY_WORKERS must be > 0.")
        if self.worker.idle_interval_seconds < 0:
            raise ValueError("NEWSLETTER_DELIVERY_IDLE_INTERVAL_SECONDS must be >= 0.")
        if self.worker.error_backoff_seconds < 0:
            raise ValueError("NEWSLETTER_DELIVERY_ERROR_BACKOFF_SECONDS must be >= 0.")
        if self.email_client.timeout_seconds <= 0:
            raise ValueError("NEWSLETTER_DELIVERY_EMAIL_TIMEOUT_SECONDS must be > 0.")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Invalid NEWSLETTER_DELIVERY_LOG_LEVEL: {self.log_level!r}")
        _validate_base_url(self.email_client.base_url)
        try:
            self.email_client.sender()
        except InvalidSubscriberEmailError as error:
            raise ValueError(f"Invalid sender email address: {error}") from error


def _validate_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid email API base URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
