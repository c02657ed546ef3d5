"""Persistent delivery queue and issue store backed by SQLModel."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from newsletter_delivery.delivery.errors import ClaimLostError, StoreUnavailableError
from newsletter_delivery.delivery.models import (
    ClaimedTask,
    DeliveryTaskView,
    IssueBacklog,
    NewsletterIssueCreate,
    NewsletterIssueView,
    QueueStats,
)
from newsletter_delivery.storage.alembic_runner import current_revision, upgrade_head
from newsletter_delivery.storage.common import (
    build_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from newsletter_delivery.storage.sqlmodel_models import IssueDeliveryQueue, NewsletterIssue

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 300


class DeliveryQueueRepository:
    """Queue and issue persistence facade.

    A claim is a lease written with a conditional update: a row is claimable
    when it has no lease or its lease has expired. Where the database supports
    it the candidate read uses ``FOR UPDATE SKIP LOCKED`` so that rows being
    claimed by a concurrent transaction are skipped instead of waited on.
    """

    def __init__(
        self,
        db_url: str,
        *,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        busy_timeout_ms: int = 5_000,
    ) -> None:
        if lease_seconds <= 0:
            raise ValueError(f"lease_seconds must be > 0, got {lease_seconds}")
        self.db_url = db_url
        self.lease_seconds = lease_seconds
        self.engine = build_engine(db_url=db_url, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        with self._store_errors("init_schema"):
            upgrade_head(self.db_url)

    def schema_revision(self) -> str | None:
        with self._store_errors("schema_revision"):
            return current_revision(self.engine)

    def enqueue_issue(
        self,
        payload: NewsletterIssueCreate,
        recipients: list[str] | tuple[str, ...],
    ) -> NewsletterIssueView:
        """Store an issue and one delivery task per recipient in one transaction.

        This is the publisher side of the queue; workers never call it.
        """

        now = utc_now()
        issue_id = payload.issue_id or str(uuid4())
        unique_recipients = list(dict.fromkeys(recipients))
        with self._store_errors("enqueue_issue"), Session(self.engine) as session:
            issue = NewsletterIssue(
                newsletter_issue_id=issue_id,
                title=payload.title,
                text_content=payload.text_content,
                html_content=payload.html_content,
                published_at=to_db_datetime(now),
            )
            try:
                session.add(issue)
                # No relationship links the models, so the parent row must be flushed first.
                session.flush()
                for recipient in unique_recipients:
                    session.add(
                        IssueDeliveryQueue(
                            newsletter_issue_id=issue_id,
                            subscriber_email=recipient,
                            created_at=to_db_datetime(now),
                        ),
                    )
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ValueError(
                    f"Issue {issue_id} or one of its delivery tasks already exists.",
                ) from error
            session.refresh(issue)
            return _to_issue_view(issue)

    def claim_one(self, *, worker_id: str) -> ClaimedTask | None:
        """Atomically claim one pending task, skipping tasks held by other workers."""

        with self._store_errors("claim"):
            while True:
                now = utc_now()
                lease_expires_at = now + timedelta(seconds=self.lease_seconds)
                with Session(self.engine) as session:
                    candidate = session.exec(
                        select(IssueDeliveryQueue)
                        .where(_claimable(now))
                        .limit(1)
                        .with_for_update(skip_locked=True),
                    ).one_or_none()
                    if candidate is None:
                        return None

                    result = session.exec(
                        sa_update(IssueDeliveryQueue)
                        .where(
                            col(IssueDeliveryQueue.newsletter_issue_id)
                            == candidate.newsletter_issue_id,
                            col(IssueDeliveryQueue.subscriber_email) == candidate.subscriber_email,
                            _claimable(now),
                        )
                        .values(
                            lease_owner=worker_id,
                            lease_expires_at=to_db_datetime(lease_expires_at),
                        ),
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        logger.debug(
                            "Lost claim race for issue_id=%s recipient=%s",
                            candidate.newsletter_issue_id,
                            candidate.subscriber_email,
                        )
                        continue
                    session.commit()
                    return ClaimedTask(
                        issue_id=candidate.newsletter_issue_id,
                        recipient=candidate.subscriber_email,
                        worker_id=worker_id,
                        lease_expires_at=lease_expires_at,
                    )

    def resolve(self, claim: ClaimedTask) -> None:
        """Delete a claimed task and so release its claim."""

        with self._store_errors("resolve"), Session(self.engine) as session:
            result = session.exec(
                sa_delete(IssueDeliveryQueue).where(
                    col(IssueDeliveryQueue.newsletter_issue_id) == claim.issue_id,
                    col(IssueDeliveryQueue.subscriber_email) == claim.recipient,
                    col(IssueDeliveryQueue.lease_owner) == claim.worker_id,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ClaimLostError(
                    issue_id=claim.issue_id,
                    recipient=claim.recipient,
                    worker_id=claim.worker_id,
                )
            session.commit()

    def release(self, claim: ClaimedTask) -> bool:
        """Drop a claim without resolving the task so any worker can pick it up again."""

        with self._store_errors("release"), Session(self.engine) as session:
            result = session.exec(
                sa_update(IssueDeliveryQueue)
                .where(
                    col(IssueDeliveryQueue.newsletter_issue_id) == claim.issue_id,
                    col(IssueDeliveryQueue.subscriber_email) == claim.recipient,
                    col(IssueDeliveryQueue.lease_owner) == claim.worker_id,
                )
                .values(lease_owner=None, lease_expires_at=None),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def get_issue(self, issue_id: str) -> NewsletterIssueView | None:
        """Load issue content, or None when the issue does not exist."""

        with self._store_errors("get_issue"), Session(self.engine) as session:
            row = session.exec(
                select(NewsletterIssue).where(NewsletterIssue.newsletter_issue_id == issue_id),
            ).one_or_none()
            if row is None:
                return None
            return _to_issue_view(row)

    def list_tasks(self, *, limit: int = 50) -> list[DeliveryTaskView]:
        """List pending tasks, oldest first."""

        with self._store_errors("list_tasks"), Session(self.engine) as session:
            rows = session.exec(
                select(IssueDeliveryQueue)
                .order_by(
                    col(IssueDeliveryQueue.created_at).asc(),
                    col(IssueDeliveryQueue.subscriber_email).asc(),
                )
                .limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def count_tasks(self) -> int:
        with self._store_errors("count_tasks"), Session(self.engine) as session:
            return int(session.exec(select(func.count()).select_from(IssueDeliveryQueue)).one())

    def queue_stats(self) -> QueueStats:
        """Return pending/leased counts and per-issue backlog."""

        now = to_db_datetime(utc_now())
        with self._store_errors("queue_stats"), Session(self.engine) as session:
            pending = session.exec(select(func.count()).select_from(IssueDeliveryQueue)).one()
            leased = session.exec(
                select(func.count())
                .select_from(IssueDeliveryQueue)
                .where(col(IssueDeliveryQueue.lease_expires_at) > now),
            ).one()
            expired = session.exec(
                select(func.count())
                .select_from(IssueDeliveryQueue)
                .where(col(IssueDeliveryQueue.lease_expires_at) <= now),
            ).one()
            backlog_rows = session.exec(
                select(
                    IssueDeliveryQueue.newsletter_issue_id,
                    NewsletterIssue.title,
                    func.count(),
                )
                .select_from(IssueDeliveryQueue)
                .outerjoin(
                    NewsletterIssue,
                    col(NewsletterIssue.newsletter_issue_id)
                    == col(IssueDeliveryQueue.newsletter_issue_id),
                )
                .group_by(IssueDeliveryQueue.newsletter_issue_id, NewsletterIssue.title)
                .order_by(func.count().desc()),
            ).all()

        return QueueStats(
            pending=int(pending),
            leased=int(leased),
            expired_leases=int(expired),
            issues=[
                IssueBacklog(issue_id=issue_id, title=title, pending=int(count))
                for issue_id, title, count in backlog_rows
            ],
        )

    @contextmanager
    def _store_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as error:
            raise StoreUnavailableError(f"Store operation {operation!r} failed: {error}") from error


def _claimable(now: datetime):
    expires = col(IssueDeliveryQueue.lease_expires_at)
    return or_(expires.is_(None), expires <= to_db_datetime(now))


def _to_issue_view(row: NewsletterIssue) -> NewsletterIssueView:
    return NewsletterIssueView(
        issue_id=row.newsletter_issue_id,
        title=row.title,
        text_content=row.text_content,
        html_content=row.html_content,
        published_at=to_utc_aware_datetime(row.published_at),
    )


def _to_task_view(row: IssueDeliveryQueue) -> DeliveryTaskView:
    return DeliveryTaskView(
        issue_id=row.newsletter_issue_id,
        recipient=row.subscriber_email,
        lease_owner=row.lease_owner,
        lease_expires_at=(
            to_utc_aware_datetime(row.lease_expires_at)
            if row.lease_expires_at is not None
            else None
        ),
        created_at=to_utc_aware_datetime(row.created_at),
    )
