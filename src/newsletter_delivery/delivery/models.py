"""Domain models for the issue delivery queue."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class ExecutionOutcome(str, Enum):
    """Result of one worker loop iteration."""

    TASK_COMPLETED = "task_completed"
    EMPTY_QUEUE = "empty_queue"
    ERROR = "error"


class DeliveryResolution(str, Enum):
    """Terminal outcome recorded when a task is removed from the queue."""

    DELIVERED = "delivered"
    SKIPPED_INVALID_RECIPIENT = "skipped_invalid_recipient"
    SKIPPED_TRANSPORT_FAILURE = "skipped_transport_failure"


@dataclass(slots=True)
class NewsletterIssueCreate:
    """Input payload for publishing a newsletter issue."""

    title: str
    text_content: str
    html_content: str
    issue_id: str | None = None


@dataclass(slots=True, frozen=True)
class NewsletterIssueView:
    """Immutable issue content."""

    issue_id: str
    title: str
    text_content: str
    html_content: str
    published_at: datetime


@dataclass(slots=True, frozen=True)
class DeliveryTaskView:
    """Pending delivery obligation as seen by operators."""

    issue_id: str
    recipient: str
    lease_owner: str | None
    lease_expires_at: datetime | None
    created_at: datetime


@dataclass(slots=True, frozen=True)
class ClaimedTask:
    """Exclusive right of one worker to process one queued task."""

    issue_id: str
    recipient: str
    worker_id: str
    lease_expires_at: datetime


@dataclass(slots=True, frozen=True)
class IssueBacklog:
    issue_id: str
    title: str | None
    pending: int


@dataclass(slots=True)
class QueueStats:
    """Queue health snapshot for CLI reporting."""

    pending: int
    leased: int
    expired_leases: int
    issues: list[IssueBacklog]
