"""Delivery worker loop: claim, execute, resolve, back off."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from newsletter_delivery.delivery.email_client import EmailTransport
from newsletter_delivery.delivery.errors import DeliveryError
from newsletter_delivery.delivery.executor import DeliveryExecutor
from newsletter_delivery.delivery.models import DeliveryResolution, ExecutionOutcome
from newsletter_delivery.delivery.repository import DeliveryQueueRepository

logger = logging.getLogger(__name__)

DEFAULT_IDLE_INTERVAL_SECONDS = 10.0
DEFAULT_ERROR_BACKOFF_SECONDS = 1.0


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    iterations: int = 0
    delivered: int = 0
    skipped_invalid: int = 0
    skipped_transport: int = 0
    empty_polls: int = 0
    errors: int = 0

    @property
    def completed(self) -> int:
        return self.delivered + self.skipped_invalid + self.skipped_transport

    def add(self, other: WorkerRunSummary) -> None:
        self.iterations += other.iterations
        self.delivered += other.delivered
        self.skipped_invalid += other.skipped_invalid
        self.skipped_transport += other.skipped_transport
        self.empty_polls += other.empty_polls
        self.errors += other.errors


@dataclass(slots=True)
class IterationResult:
    """One loop iteration: its outcome and the delay before the next one."""

    outcome: ExecutionOutcome
    delay_seconds: float
    resolution: DeliveryResolution | None = None
    error: Exception | None = None


class DeliveryWorker:
    """Drains the delivery queue; safe to run many instances against one store."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: DeliveryQueueRepository,
        transport: EmailTransport,
        worker_id: str,
        idle_interval_seconds: float = DEFAULT_IDLE_INTERVAL_SECONDS,
        error_backoff_seconds: float = DEFAULT_ERROR_BACKOFF_SECONDS,
        install_signal_handlers: bool = True,
    ) -> None:
        self.repository = repository
        self.worker_id = worker_id
        self.idle_interval_seconds = idle_interval_seconds
        self.error_backoff_seconds = error_backoff_seconds
        self.install_signal_handlers = install_signal_handlers
        self.executor = DeliveryExecutor(repository=repository, transport=transport)
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def try_execute_task(self) -> tuple[ExecutionOutcome, DeliveryResolution | None]:
        """Claim and process at most one task; store and missing-issue errors propagate."""

        claim = self.repository.claim_one(worker_id=self.worker_id)
        if claim is None:
            return ExecutionOutcome.EMPTY_QUEUE, None
        resolution = self.executor.execute(claim)
        return ExecutionOutcome.TASK_COMPLETED, resolution

    def run_once(self) -> IterationResult:
        """Run one iteration and classify it for the backoff policy."""

        try:
            outcome, resolution = self.try_execute_task()
        except DeliveryError as error:
            logger.error(
                "Delivery attempt by %s failed, backing off %.1fs: %s",
                self.worker_id,
                self.error_backoff_seconds,
                error,
                extra={"worker_id": self.worker_id},
            )
            return IterationResult(
                outcome=ExecutionOutcome.ERROR,
                delay_seconds=self.error_backoff_seconds,
                error=error,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception(
                "Unexpected failure in delivery attempt by %s, backing off %.1fs",
                self.worker_id,
                self.error_backoff_seconds,
                extra={"worker_id": self.worker_id},
            )
            return IterationResult(
                outcome=ExecutionOutcome.ERROR,
                delay_seconds=self.error_backoff_seconds,
                error=error,
            )

        if outcome == ExecutionOutcome.EMPTY_QUEUE:
            return IterationResult(outcome=outcome, delay_seconds=self.idle_interval_seconds)
        return IterationResult(outcome=outcome, delay_seconds=0.0, resolution=resolution)

    def run_loop(self, *, max_iterations: int | None = None) -> WorkerRunSummary:
        """Run until stopped by a signal or `max_iterations` is reached.

        Without `max_iterations` the loop never ends on its own, whatever the
        queue state or error rate.
        """

        aggregate = WorkerRunSummary()
        logger.info("Delivery worker %s started", self.worker_id)
        with self._signal_handlers():
            while not self._stop_requested:
                if max_iterations is not None and aggregate.iterations >= max_iterations:
                    break
                result = self.run_once()
                aggregate.add(_summarize(result))
                if result.delay_seconds <= 0:
                    continue
                if max_iterations is not None and aggregate.iterations >= max_iterations:
                    break
                self._sleep_with_stop(result.delay_seconds)
        logger.info(
            "Delivery worker %s stopped%s",
            self.worker_id,
            f" by {self._stop_signal_name}" if self._stop_signal_name else "",
        )
        return aggregate

    def request_stop(self, *, reason: str = "request") -> None:
        """Ask the loop to exit after the current iteration."""

        self._stop_requested = True
        self._stop_signal_name = reason

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not self.install_signal_handlers:
            yield
            return
        with stop_on_signals(lambda name: self.request_stop(reason=name)):
            yield


@contextmanager
def stop_on_signals(on_stop: Callable[[str], None]) -> Iterator[None]:
    """Route SIGINT/SIGTERM to `on_stop` for the duration of the block."""

    if not hasattr(signal, "SIGINT"):
        yield
        return

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        on_stop(name)

    try:
        original_sigint = signal.signal(signal.SIGINT, _handler)
        original_sigterm = signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


def _summarize(result: IterationResult) -> WorkerRunSummary:
    summary = WorkerRunSummary(iterations=1)
    if result.outcome == ExecutionOutcome.EMPTY_QUEUE:
        summary.empty_polls = 1
    elif result.outcome == ExecutionOutcome.ERROR:
        summary.errors = 1
    elif result.resolution == DeliveryResolution.DELIVERED:
        summary.delivered = 1
    elif result.resolution == DeliveryResolution.SKIPPED_INVALID_RECIPIENT:
        summary.skipped_invalid = 1
    elif result.resolution == DeliveryResolution.SKIPPED_TRANSPORT_FAILURE:
        summary.skipped_transport = 1
    return summary
