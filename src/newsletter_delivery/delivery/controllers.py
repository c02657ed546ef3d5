"""Controllers for delivery CLI commands."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from newsletter_delivery.config import Settings
from newsletter_delivery.delivery.email_client import EmailClient, EmailTransport
from newsletter_delivery.delivery.repository import DeliveryQueueRepository
from newsletter_delivery.delivery.worker import DeliveryWorker, WorkerRunSummary, stop_on_signals

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DeliveryWorkerCommand:
    """CLI input for worker execution."""

    db_url: str | None
    once: bool
    max_iterations: int | None
    workers: int | None = None


@dataclass(slots=True)
class QueueStatsCommand:
    """CLI input for queue health stats."""

    db_url: str | None


@dataclass(slots=True)
class QueueListCommand:
    """CLI input for pending task listing."""

    db_url: str | None
    limit: int


@dataclass(slots=True)
class DbUpgradeCommand:
    db_url: str | None


class DeliveryCliController:
    """Coordinates worker, queue inspection and schema CLI operations."""

    def run_worker(self, command: DeliveryWorkerCommand) -> list[str]:
        settings = Settings.from_env(db_url=command.db_url)
        settings.validate_for_worker()
        configure_logging(settings.log_level)
        worker_count = command.workers or settings.worker.workers
        max_iterations = 1 if command.once else command.max_iterations

        with EmailClient(
            base_url=settings.email_client.base_url,
            sender=settings.email_client.sender(),
            authorization_token=settings.email_client.authorization_token,
            timeout_seconds=settings.email_client.timeout_seconds,
        ) as email_client:
            summary = run_workers(
                settings=settings,
                transport=email_client,
                count=worker_count,
                max_iterations=max_iterations,
            )

        return [
            "Worker summary: "
            f"workers={worker_count} iterations={summary.iterations} "
            f"delivered={summary.delivered} skipped_invalid={summary.skipped_invalid} "
            f"skipped_transport={summary.skipped_transport} "
            f"empty_polls={summary.empty_polls} errors={summary.errors}",
        ]

    def stats(self, command: QueueStatsCommand) -> list[str]:
        """Show operator-facing queue health."""

        settings = Settings.from_env(db_url=command.db_url)
        with _repository(settings) as repository:
            stats = repository.queue_stats()

        lines = [
            f"Pending tasks: {stats.pending}",
            f"Leased tasks: {stats.leased}",
            f"Expired leases: {stats.expired_leases}",
            f"Issues with backlog: {len(stats.issues)}",
        ]
        for backlog in stats.issues:
            title = backlog.title if backlog.title is not None else "<missing issue>"
            lines.append(f"  {backlog.issue_id} pending={backlog.pending} title={title}")
        return lines

    def list_tasks(self, command: QueueListCommand) -> list[str]:
        settings = Settings.from_env(db_url=command.db_url)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lease = (
                f"leased_by={task.lease_owner} until={task.lease_expires_at.isoformat()}"
                if task.lease_expires_at is not None
                else "unclaimed"
            )
            lines.append(f"  {task.issue_id} {task.recipient} {lease}")
        return lines

    def upgrade(self, command: DbUpgradeCommand) -> list[str]:
        settings = Settings.from_env(db_url=command.db_url)
        with _repository(settings) as repository:
            revision = repository.schema_revision()
        return [f"Schema is up to date: {settings.db_url} (revision {revision})"]


def run_workers(
    *,
    settings: Settings,
    transport: EmailTransport,
    count: int,
    max_iterations: int | None,
) -> WorkerRunSummary:
    """Run `count` worker loops in this process, one thread and repository each.

    Workers share nothing but the store; SIGINT/SIGTERM stop all of them after
    their current iteration.
    """

    if count == 1:
        with _repository(settings) as repository:
            worker = _build_worker(
                settings=settings,
                repository=repository,
                transport=transport,
                worker_id=settings.worker.worker_id,
                install_signal_handlers=True,
            )
            return worker.run_loop(max_iterations=max_iterations)

    _migrate(settings)

    logger.info("Starting %d delivery workers", count)
    workers: list[DeliveryWorker] = []
    repositories: list[DeliveryQueueRepository] = []
    summaries: list[WorkerRunSummary] = []
    lock = threading.Lock()

    def _run(worker: DeliveryWorker) -> None:
        try:
            summary = worker.run_loop(max_iterations=max_iterations)
        except Exception:  # noqa: BLE001
            logger.exception("Delivery worker %s crashed", worker.worker_id)
            summary = WorkerRunSummary(errors=1)
        with lock:
            summaries.append(summary)

    for index in range(count):
        repository = DeliveryQueueRepository(
            settings.db_url,
            lease_seconds=settings.worker.lease_seconds,
            busy_timeout_ms=settings.database.busy_timeout_ms,
        )
        repositories.append(repository)
        workers.append(
            _build_worker(
                settings=settings,
                repository=repository,
                transport=transport,
                worker_id=f"{settings.worker.worker_id}-{index}",
                install_signal_handlers=False,
            ),
        )

    def _stop_all(reason: str) -> None:
        for worker in workers:
            worker.request_stop(reason=reason)

    threads = [
        threading.Thread(target=_run, args=(worker,), name=worker.worker_id, daemon=True)
        for worker in workers
    ]
    try:
        with stop_on_signals(_stop_all):
            for thread in threads:
                thread.start()
            while any(thread.is_alive() for thread in threads):
                for thread in threads:
                    thread.join(timeout=0.2)
    finally:
        for repository in repositories:
            repository.close()

    aggregate = WorkerRunSummary()
    for summary in summaries:
        aggregate.add(summary)
    return aggregate


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(threadName)s] [%(name)s] %(message)s",
    )


def _build_worker(
    *,
    settings: Settings,
    repository: DeliveryQueueRepository,
    transport: EmailTransport,
    worker_id: str,
    install_signal_handlers: bool,
) -> DeliveryWorker:
    return DeliveryWorker(
        repository=repository,
        transport=transport,
        worker_id=worker_id,
        idle_interval_seconds=settings.worker.idle_interval_seconds,
        error_backoff_seconds=settings.worker.error_backoff_seconds,
        install_signal_handlers=install_signal_handlers,
    )


def _migrate(settings: Settings) -> None:
    """Bring the schema to head once, before worker threads start."""

    repository = DeliveryQueueRepository(
        settings.db_url,
        busy_timeout_ms=settings.database.busy_timeout_ms,
    )
    try:
        repository.init_schema()
    finally:
        repository.close()


@contextmanager
def _repository(settings: Settings) -> Iterator[DeliveryQueueRepository]:
    repository = DeliveryQueueRepository(
        settings.db_url,
        lease_seconds=settings.worker.lease_seconds,
        busy_timeout_ms=settings.database.busy_timeout_ms,
    )
    try:
        repository.init_schema()
        yield repository
    finally:
        repository.close()
