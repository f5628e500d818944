"""CLI entrypoint for spark-relay."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from spark_relay import __version__
from spark_relay.config import EventBackend, ParticipantRole
from spark_relay.controllers import (
    AccessQueryCommand,
    EmitCommand,
    PauseCommand,
    RecentEventsCommand,
    SparkCliController,
    SparkTarget,
    WatchCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = SparkCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_root_dir_option = click.option(
    "--root-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Coordination directory (default: SPARK_ROOT_DIR or .spark).",
)
_backend_option = click.option(
    "--backend",
    type=click.Choice([backend.value for backend in EventBackend]),
    default=None,
    help="Event store backend (default: SPARK_EVENT_BACKEND or directory).",
)


def _target(root_dir: Path | None, backend: str | None) -> SparkTarget:
    return SparkTarget(
        root_dir=root_dir,
        backend=EventBackend(backend) if backend else None,
    )


@click.group()
@click.version_option(version=__version__, prog_name="spark-relay")
@click.option(
    "--log-level",
    envvar="SPARK_LOG_LEVEL",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level.",
)
def spark_relay(log_level: str) -> None:
    """Incident relay and pause/presence coordination for coding agents."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@spark_relay.command("emit")
@_root_dir_option
@_backend_option
@click.argument("event_type")
@click.option("--feature", default=None, help="Feature name the event belongs to.")
@click.option("--route", default=None, help="Route that produced the event.")
@click.option("--status", type=int, default=None, help="HTTP status code.")
@click.option("--data", default=None, help="Extra payload as a JSON object.")
def emit(  # noqa: PLR0913
    root_dir: Path | None,
    backend: str | None,
    event_type: str,
    feature: str | None,
    route: str | None,
    status: int | None,
    data: str | None,
) -> None:
    """Append one event to the queue."""

    _invoke(
        lambda: CONTROLLER.emit(
            EmitCommand(
                target=_target(root_dir, backend),
                event_type=event_type,
                feature=feature,
                route=route,
                status=status,
                data=data,
            ),
        ),
    )


@spark_relay.command("pause")
@_root_dir_option
@click.argument("reason")
@click.option("--by", "holder", default=None, help="Who holds the pause.")
def pause(root_dir: Path | None, reason: str, holder: str | None) -> None:
    """Pause event delivery."""

    _invoke(
        lambda: CONTROLLER.pause(
            PauseCommand(target=_target(root_dir, None), reason=reason, holder=holder),
        ),
    )


@spark_relay.command("resume")
@_root_dir_option
def resume(root_dir: Path | None) -> None:
    """Resume event delivery."""

    _invoke(lambda: CONTROLLER.resume(_target(root_dir, None)))


@spark_relay.command("status")
@_root_dir_option
@_backend_option
def status(root_dir: Path | None, backend: str | None) -> None:
    """Show pause state, pending events and agents."""

    _invoke(lambda: CONTROLLER.status(_target(root_dir, backend)))


@spark_relay.group()
def events() -> None:
    """Event queue inspection."""


@events.command("recent")
@_root_dir_option
@_backend_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Maximum events to list.",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
)
def events_recent(
    root_dir: Path | None,
    backend: str | None,
    limit: int,
    output_format: str,
) -> None:
    """List recent events, newest first."""

    _invoke(
        lambda: CONTROLLER.recent(
            RecentEventsCommand(
                target=_target(root_dir, backend),
                limit=limit,
                output_format=output_format,
            ),
        ),
    )


@spark_relay.group()
def access() -> None:
    """Access log inspection (sqlite backend)."""


@access.command("query")
@_root_dir_option
@_backend_option
@click.option("--feature", default=None, help="Filter by feature.")
@click.option("--status", type=int, default=None, help="Filter by HTTP status.")
@click.option("--since-hours", type=click.IntRange(min=1), default=None, help="Time window.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
)
def access_query(  # noqa: PLR0913
    root_dir: Path | None,
    backend: str | None,
    feature: str | None,
    status: int | None,
    since_hours: int | None,
    limit: int,
) -> None:
    """Query access logs, newest first."""

    _invoke(
        lambda: CONTROLLER.access_query(
            AccessQueryCommand(
                target=_target(root_dir, backend),
                feature=feature,
                status=status,
                since_hours=since_hours,
                limit=limit,
            ),
        ),
    )


@spark_relay.command("agents")
@_root_dir_option
def agents(root_dir: Path | None) -> None:
    """List live agents, pruning dead ones."""

    _invoke(lambda: CONTROLLER.agents(_target(root_dir, None)))


@spark_relay.command("watch")
@_root_dir_option
@_backend_option
@click.option("--once", is_flag=True, help="Deliver the current backlog and exit.")
@click.option(
    "--role",
    type=click.Choice([role.value for role in ParticipantRole]),
    default=None,
    help="Participant role (default: SPARK_ROLE or agent).",
)
def watch(root_dir: Path | None, backend: str | None, once: bool, role: str | None) -> None:
    """Watch the queue and print delivered batches."""

    _invoke(
        lambda: CONTROLLER.watch(
            WatchCommand(
                target=_target(root_dir, backend),
                once=once,
                role=ParticipantRole(role) if role else None,
            ),
            sink=click.echo,
        ),
    )


@spark_relay.command("maintenance")
@_root_dir_option
@_backend_option
def maintenance(root_dir: Path | None, backend: str | None) -> None:
    """Run retention and presence sweep once."""

    _invoke(lambda: CONTROLLER.maintenance(_target(root_dir, backend)))


def _invoke(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    spark_relay()
