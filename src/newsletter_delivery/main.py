"""CLI entrypoint for newsletter-delivery."""

from __future__ import annotations

from collections.abc import Callable

import rich_click as click

from newsletter_delivery import __version__
from newsletter_delivery.delivery.controllers import (
    DbUpgradeCommand,
    DeliveryCliController,
    DeliveryWorkerCommand,
    QueueListCommand,
    QueueStatsCommand,
)
from newsletter_delivery.delivery.errors import StoreUnavailableError

click.rich_click.USE_MARKDOWN = True
DELIVERY_CONTROLLER = DeliveryCliController()

_DB_URL_OPTION = click.option(
    "--db-url",
    default=None,
    help="SQLAlchemy database URL. Defaults to NEWSLETTER_DELIVERY_DB_URL.",
)


@click.group()
@click.version_option(version=__version__, prog_name="newsletter-delivery")
def newsletter_delivery() -> None:
    """Newsletter issue delivery CLI."""


@newsletter_delivery.group()
def worker() -> None:
    """Delivery worker commands."""


@worker.command("run")
@_DB_URL_OPTION
@click.option(
    "--once",
    is_flag=True,
    default=False,
    help="Run a single claim-and-resolve iteration and exit.",
)
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many loop iterations (default: run until stopped).",
)
@click.option(
    "--workers",
    type=click.IntRange(min=1, max=64),
    default=None,
    help="Number of concurrent worker loops. Defaults to NEWSLETTER_DELIVERY_WORKERS.",
)
def worker_run(
    db_url: str | None,
    once: bool,
    max_iterations: int | None,
    workers: int | None,
) -> None:
    """Drain the issue delivery queue.

    Without **--once** or **--max-iterations** the loop runs until SIGINT/SIGTERM.
    """

    _emit_lines(
        _run_command(
            lambda: DELIVERY_CONTROLLER.run_worker(
                DeliveryWorkerCommand(
                    db_url=db_url,
                    once=once,
                    max_iterations=max_iterations,
                    workers=workers,
                ),
            ),
        ),
    )


@newsletter_delivery.group()
def queue() -> None:
    """Delivery queue inspection commands."""


@queue.command("stats")
@_DB_URL_OPTION
def queue_stats(db_url: str | None) -> None:
    """Show pending, leased and per-issue backlog counts."""

    _emit_lines(_run_command(lambda: DELIVERY_CONTROLLER.stats(QueueStatsCommand(db_url=db_url))))


@queue.command("list")
@_DB_URL_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of tasks to print.",
)
def queue_list(db_url: str | None, limit: int) -> None:
    """List pending delivery tasks, oldest first."""

    _emit_lines(
        _run_command(
            lambda: DELIVERY_CONTROLLER.list_tasks(QueueListCommand(db_url=db_url, limit=limit)),
        ),
    )


@newsletter_delivery.group()
def db() -> None:
    """Schema commands."""


@db.command("upgrade")
@_DB_URL_OPTION
def db_upgrade(db_url: str | None) -> None:
    """Apply schema migrations up to head."""

    _emit_lines(_run_command(lambda: DELIVERY_CONTROLLER.upgrade(DbUpgradeCommand(db_url=db_url))))


def _run_command(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (StoreUnavailableError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    newsletter_delivery()
