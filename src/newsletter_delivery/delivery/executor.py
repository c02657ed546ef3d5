"""Process one claimed delivery task to a terminal outcome."""

from __future__ import annotations

import logging

from newsletter_delivery.delivery.email_client import EmailTransport
from newsletter_delivery.delivery.errors import (
    EmailSendError,
    MissingIssueContentError,
    StoreUnavailableError,
)
from newsletter_delivery.delivery.models import ClaimedTask, DeliveryResolution
from newsletter_delivery.delivery.recipient import InvalidSubscriberEmailError, SubscriberEmail
from newsletter_delivery.delivery.repository import DeliveryQueueRepository

logger = logging.getLogger(__name__)


class DeliveryExecutor:
    """Validates, sends and resolves a single claimed task.

    Invalid recipients and transport failures are permanent skips: the task is
    deleted and never retried. A missing issue aborts the attempt and leaves
    the task queued.
    """

    def __init__(self, *, repository: DeliveryQueueRepository, transport: EmailTransport) -> None:
        self.repository = repository
        self.transport = transport

    def execute(self, claim: ClaimedTask) -> DeliveryResolution:
        context = {
            "newsletter_issue_id": claim.issue_id,
            "subscriber_email": claim.recipient,
            "worker_id": claim.worker_id,
        }
        try:
            recipient = SubscriberEmail.parse(claim.recipient)
        except InvalidSubscriberEmailError as error:
            logger.error(
                "Skipping a confirmed subscriber of issue %s. "
                "Their stored contact details are invalid: %s",
                claim.issue_id,
                error,
                extra=context,
            )
            try:
                self.repository.resolve(claim)
            except StoreUnavailableError:
                # Nothing was sent yet.
                self._abort(claim)
                raise
            return DeliveryResolution.SKIPPED_INVALID_RECIPIENT

        try:
            issue = self.repository.get_issue(claim.issue_id)
            if issue is None:
                raise MissingIssueContentError(claim.issue_id)
            self.transport.send_email(
                recipient,
                issue.title,
                issue.html_content,
                issue.text_content,
            )
        except EmailSendError as error:
            logger.error(
                "Failed to deliver issue %s to a confirmed subscriber %s. Skipping: %s",
                claim.issue_id,
                claim.recipient,
                error,
                extra=context,
            )
            self.repository.resolve(claim)
            return DeliveryResolution.SKIPPED_TRANSPORT_FAILURE
        except Exception:
            self._abort(claim)
            raise

        self.repository.resolve(claim)
        logger.info("Delivered issue %s to %s", claim.issue_id, claim.recipient, extra=context)
        return DeliveryResolution.DELIVERED

    def _abort(self, claim: ClaimedTask) -> None:
        try:
            released = self.repository.release(claim)
        except StoreUnavailableError:
            logger.warning(
                "Could not release claim for issue %s / %s; it will expire at %s",
                claim.issue_id,
                claim.recipient,
                claim.lease_expires_at.isoformat(),
            )
            return
        if not released:
            logger.warning(
                "Claim for issue %s / %s was already gone when releasing",
                claim.issue_id,
                claim.recipient,
            )
