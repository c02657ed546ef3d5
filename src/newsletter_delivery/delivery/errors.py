"""Errors raised by the delivery queue."""

from __future__ import annotations


class DeliveryError(RuntimeError):
    """Failed attempt: the task stays queued and the loop backs off."""


class StoreUnavailableError(DeliveryError):
    """The queue or issue store could not be reached or rejected the operation."""


class ClaimLostError(DeliveryError):
    """The claim expired and the task is no longer held by this worker."""

    def __init__(self, *, issue_id: str, recipient: str, worker_id: str) -> None:
        super().__init__(
            f"Claim lost for issue_id={issue_id} recipient={recipient} worker_id={worker_id}",
        )
        self.issue_id = issue_id
        self.recipient = recipient
        self.worker_id = worker_id


class MissingIssueContentError(DeliveryError):
    """A queued task references a newsletter issue that does not exist."""

    def __init__(self, issue_id: str) -> None:
        super().__init__(f"Newsletter issue not found: {issue_id}")
        self.issue_id = issue_id


class EmailSendError(RuntimeError):
    """Email transport failed to accept a message."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
