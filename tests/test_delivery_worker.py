from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from newsletter_delivery.delivery import repository as repository_module
from newsletter_delivery.delivery.errors import (
    ClaimLostError,
    MissingIssueContentError,
    StoreUnavailableError,
)
from newsletter_delivery.delivery.models import DeliveryResolution, ExecutionOutcome
from newsletter_delivery.delivery.repository import DeliveryQueueRepository
from newsletter_delivery.delivery.worker import DeliveryWorker
from newsletter_delivery.storage.common import build_engine, sqlite_url, utc_now

pytestmark = [
    allure.epic("Issue Delivery"),
    allure.feature("Delivery Executor & Worker Loop"),
]


def _worker(
    repository: DeliveryQueueRepository,
    transport,
    *,
    worker_id: str = "worker-a",
) -> DeliveryWorker:
    return DeliveryWorker(
        repository=repository,
        transport=transport,
        worker_id=worker_id,
        install_signal_handlers=False,
    )


def _insert_orphan_task(db_path: Path, *, issue_id: str, recipient: str) -> None:
    connection = sqlite3.connect(db_path)
    try:
        connection.execute("PRAGMA foreign_keys = OFF")
        connection.execute(
            """
            INSERT INTO issue_delivery_queue (newsletter_issue_id, subscriber_email, created_at)
            VALUES (?, ?, ?)
            """,
            (issue_id, recipient, "2026-10-19 08:00:00.000000"),
        )
        connection.commit()
    finally:
        connection.close()


def test_valid_recipient_is_delivered_and_task_removed(
    repository,
    transport,
    publish_issue,
) -> None:
    publish_issue(["bob@example.com"], issue_id="issue-1", title="October issue")
    worker = _worker(repository, transport)

    outcome, resolution = worker.try_execute_task()

    assert outcome == ExecutionOutcome.TASK_COMPLETED
    assert resolution == DeliveryResolution.DELIVERED
    [sent] = transport.sent
    assert sent.recipient == "bob@example.com"
    assert sent.subject == "October issue"
    assert sent.html_body == "<p>October issue</p>"
    assert sent.text_body == "October issue as plain text"
    assert repository.count_tasks() == 0


def test_invalid_recipient_is_skipped_without_sending(
    repository,
    transport,
    publish_issue,
) -> None:
    publish_issue(["not-an-email"], issue_id="issue-1")
    worker = _worker(repository, transport)

    result = worker.run_once()

    assert result.outcome == ExecutionOutcome.TASK_COMPLETED
    assert result.resolution == DeliveryResolution.SKIPPED_INVALID_RECIPIENT
    assert result.delay_seconds == 0.0
    assert transport.sent == []
    assert repository.count_tasks() == 0


def test_transport_failure_is_skipped_and_not_retried(
    repository,
    transport,
    publish_issue,
) -> None:
    transport.fail_for = {"bob@example.com"}
    publish_issue(["bob@example.com"], issue_id="issue-1")
    worker = _worker(repository, transport)

    first = worker.run_once()
    second = worker.run_once()

    assert first.outcome == ExecutionOutcome.TASK_COMPLETED
    assert first.resolution == DeliveryResolution.SKIPPED_TRANSPORT_FAILURE
    assert second.outcome == ExecutionOutcome.EMPTY_QUEUE
    assert transport.recipients == ["bob@example.com"]
    assert repository.count_tasks() == 0


def test_mixed_queue_is_drained_with_one_send_per_valid_recipient(
    repository,
    transport,
    publish_issue,
) -> None:
    publish_issue(["alice@example.com", "not-an-email"], issue_id="issue-1")
    worker = _worker(repository, transport)

    resolutions = [worker.run_once().resolution for _ in range(2)]
    final = worker.run_once()

    assert sorted(resolutions) == sorted(
        [DeliveryResolution.DELIVERED, DeliveryResolution.SKIPPED_INVALID_RECIPIENT],
    )
    assert final.outcome == ExecutionOutcome.EMPTY_QUEUE
    assert transport.recipients == ["alice@example.com"]
    assert repository.count_tasks() == 0


def test_missing_issue_aborts_and_keeps_task_queued(
    repository,
    transport,
    tmp_path: Path,
) -> None:
    _insert_orphan_task(tmp_path / "delivery.db", issue_id="ghost", recipient="bob@example.com")
    worker = _worker(repository, transport)

    result = worker.run_once()

    assert result.outcome == ExecutionOutcome.ERROR
    assert isinstance(result.error, MissingIssueContentError)
    assert result.delay_seconds == worker.error_backoff_seconds == 1.0
    assert transport.sent == []
    [task] = repository.list_tasks()
    assert task.issue_id == "ghost"
    assert task.lease_owner is None

    retry = worker.run_once()
    assert retry.outcome == ExecutionOutcome.ERROR
    assert repository.count_tasks() == 1


def test_empty_queue_backs_off_for_idle_interval(
    repository,
    transport,
) -> None:
    worker = _worker(repository, transport)

    result = worker.run_once()

    assert result.outcome == ExecutionOutcome.EMPTY_QUEUE
    assert result.delay_seconds == worker.idle_interval_seconds == 10.0
    assert result.error is None


def test_store_failure_backs_off_and_leaves_queue_unchanged(
    repository,
    transport,
    publish_issue,
    tmp_path: Path,
) -> None:
    publish_issue(["bob@example.com"], issue_id="issue-1")
    worker = _worker(repository, transport)
    healthy_engine = repository.engine
    repository.engine = build_engine(
        db_url=sqlite_url(tmp_path / "missing" / "queue.db"),
        busy_timeout_ms=100,
    )
    try:
        result = worker.run_once()
    finally:
        repository.engine.dispose()
        repository.engine = healthy_engine

    assert result.outcome == ExecutionOutcome.ERROR
    assert isinstance(result.error, StoreUnavailableError)
    assert result.delay_seconds == 1.0
    assert transport.sent == []
    [task] = repository.list_tasks()
    assert task.lease_owner is None


def test_expired_claim_is_reported_as_error(
    repository,
    publish_issue,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    publish_issue(["bob@example.com"], issue_id="issue-1")
    sent: list[str] = []

    class SlowTransport:
        def send_email(self, recipient, subject, html_body, text_body) -> None:
            sent.append(str(recipient))
            later = utc_now() + timedelta(seconds=repository.lease_seconds + 1)
            monkeypatch.setattr(repository_module, "utc_now", lambda: later)
            assert repository.claim_one(worker_id="worker-b") is not None

    worker = _worker(repository, SlowTransport())

    result = worker.run_once()

    assert result.outcome == ExecutionOutcome.ERROR
    assert isinstance(result.error, ClaimLostError)
    assert sent == ["bob@example.com"]
    [task] = repository.list_tasks()
    assert task.lease_owner == "worker-b"


def test_concurrent_workers_deliver_each_task_exactly_once(
    db_url: str,
    repository,
    transport,
    publish_issue,
) -> None:
    recipients = [f"subscriber{index}@example.com" for index in range(20)]
    publish_issue(recipients, issue_id="issue-1")

    def _drain(worker_id: str) -> None:
        worker_repository = DeliveryQueueRepository(db_url)
        worker = _worker(worker_repository, transport, worker_id=worker_id)
        try:
            for _ in range(200):
                if worker.run_once().outcome == ExecutionOutcome.EMPTY_QUEUE:
                    break
        finally:
            worker_repository.close()

    threads = [
        threading.Thread(target=_drain, args=(f"worker-{index}",)) for index in range(2)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert sorted(transport.recipients) == sorted(recipients)
    assert repository.count_tasks() == 0


def test_run_loop_sleeps_only_after_empty_polls_and_errors(
    repository,
    transport,
    publish_issue,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    publish_issue(["alice@example.com", "bob@example.com"], issue_id="issue-1")
    worker = _worker(repository, transport)
    sleeps: list[float] = []
    monkeypatch.setattr(worker, "_sleep_with_stop", sleeps.append)

    summary = worker.run_loop(max_iterations=4)

    assert summary.iterations == 4
    assert summary.delivered == 2
    assert summary.empty_polls == 2
    assert summary.errors == 0
    assert sleeps == [10.0]


def test_run_loop_backs_off_after_errors(
    repository,
    transport,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    worker = _worker(repository, transport)
    sleeps: list[float] = []
    monkeypatch.setattr(worker, "_sleep_with_stop", sleeps.append)
    healthy_engine = repository.engine
    repository.engine = build_engine(
        db_url=sqlite_url(tmp_path / "missing" / "queue.db"),
        busy_timeout_ms=100,
    )
    try:
        summary = worker.run_loop(max_iterations=3)
    finally:
        repository.engine.dispose()
        repository.engine = healthy_engine

    assert summary.errors == 3
    assert sleeps == [1.0, 1.0]


def test_request_stop_ends_loop_after_current_iteration(
    repository,
    publish_issue,
) -> None:
    publish_issue(
        ["alice@example.com", "bob@example.com", "carol@example.com"],
        issue_id="issue-1",
    )
    workers: list[DeliveryWorker] = []
    sent: list[str] = []

    class StoppingTransport:
        def send_email(self, recipient, subject, html_body, text_body) -> None:
            sent.append(str(recipient))
            workers[0].request_stop(reason="test")

    workers.append(_worker(repository, StoppingTransport()))

    summary = workers[0].run_loop()

    assert workers[0].stop_requested
    assert summary.iterations == 1
    assert summary.delivered == 1
    assert len(sent) == 1
    assert repository.count_tasks() == 2


class _ResettingTransport:
    def __init__(self) -> None:
        self.calls = 0

    def send_email(self, recipient, subject, html_body, text_body) -> None:
        self.calls += 1
        raise ConnectionResetError("socket reset by peer")


def test_unexpected_transport_exception_backs_off_and_releases_claim(
    repository,
    publish_issue,
) -> None:
    publish_issue(["bob@example.com"], issue_id="issue-1")
    transport = _ResettingTransport()
    worker = _worker(repository, transport)

    result = worker.run_once()

    assert result.outcome == ExecutionOutcome.ERROR
    assert isinstance(result.error, ConnectionResetError)
    assert result.delay_seconds == 1.0
    [task] = repository.list_tasks()
    assert task.lease_owner is None


def test_run_loop_survives_unexpected_exceptions(
    repository,
    publish_issue,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    publish_issue(["bob@example.com"], issue_id="issue-1")
    transport = _ResettingTransport()
    worker = _worker(repository, transport)
    sleeps: list[float] = []
    monkeypatch.setattr(worker, "_sleep_with_stop", sleeps.append)

    summary = worker.run_loop(max_iterations=3)

    assert summary.iterations == 3
    assert summary.errors == 3
    assert transport.calls == 3
    assert sleeps == [1.0, 1.0]
    assert repository.count_tasks() == 1


def test_invalid_recipient_releases_claim_when_resolve_fails(
    repository,
    transport,
    publish_issue,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    publish_issue(["not-an-email"], issue_id="issue-1")
    worker = _worker(repository, transport)

    def _unavailable(claim) -> None:
        raise StoreUnavailableError("Store operation 'resolve' failed: disk I/O error")

    monkeypatch.setattr(repository, "resolve", _unavailable)

    result = worker.run_once()

    assert result.outcome == ExecutionOutcome.ERROR
    assert isinstance(result.error, StoreUnavailableError)
    [task] = repository.list_tasks()
    assert task.lease_owner is None
    assert repository.claim_one(worker_id="worker-b") is not None


def test_transport_failure_log_names_issue_and_recipient(
    repository,
    transport,
    publish_issue,
    caplog: pytest.LogCaptureFixture,
) -> None:
    transport.fail_for = {"bob@example.com"}
    publish_issue(["bob@example.com"], issue_id="issue-42")
    worker = _worker(repository, transport)

    with caplog.at_level(logging.ERROR, logger="newsletter_delivery.delivery.executor"):
        worker.run_once()

    [record] = [r for r in caplog.records if r.name == "newsletter_delivery.delivery.executor"]
    assert "issue-42" in record.getMessage()
    assert "bob@example.com" in record.getMessage()
    assert record.newsletter_issue_id == "issue-42"
