"""CLI entrypoint for master-control."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from master_control import __version__
from master_control.config import Settings
from master_control.logging_setup import setup_logging
from master_control.orchestrator.controllers import (
    CleanupCommand,
    DeadLetterListCommand,
    DeadLetterMutateCommand,
    IntegrationCommand,
    MasterControlCliController,
    SchedulerRunCommand,
    SchedulerTickCommand,
    StateExportCommand,
    StateImportCommand,
    StatsCommand,
    SubagentMutateCommand,
    TaskEnqueueCommand,
    TaskInspectCommand,
    TaskListCommand,
)
from master_control.orchestrator.errors import MasterControlError
from master_control.orchestrator.models import (
    DEFAULT_MAX_RETRIES,
    INTEGRATION_NAMES,
    MAX_PRIORITY,
    MIN_PRIORITY,
    TaskStatus,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = MasterControlCliController()
CommandT = TypeVar("CommandT")

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="master-control")
@click.option(
    "--log-level",
    default=None,
    help="Console log level (defaults to MASTER_CONTROL_LOG_LEVEL or INFO).",
)
def master_control(log_level: str | None) -> None:
    """Autonomous task-orchestration core."""

    try:
        level = log_level or Settings.from_env().log_level
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    setup_logging(level)


@master_control.group()
def tasks() -> None:
    """Task queue commands."""


@tasks.command("enqueue")
@_DB_PATH_OPTION
@click.option("--type", "task_type", required=True, help="Task type, e.g. complex.")
@click.option("--description", default="", help="Free-form task description.")
@click.option(
    "--priority",
    type=click.IntRange(min=MIN_PRIORITY, max=MAX_PRIORITY),
    default=5,
    show_default=True,
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=DEFAULT_MAX_RETRIES,
    show_default=True,
)
@click.option(
    "--depends-on",
    "dependencies",
    multiple=True,
    help="Task id that must complete first. Can be repeated.",
)
@click.option("--payload", "payload_json", default=None, help="JSON object payload.")
@click.option("--task-id", default=None, help="Explicit task id (default: generated).")
def tasks_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    task_type: str,
    description: str,
    priority: int,
    max_retries: int,
    dependencies: tuple[str, ...],
    payload_json: str | None,
    task_id: str | None,
) -> None:
    """Add a pending task to the queue."""

    _emit(
        CONTROLLER.enqueue,
        TaskEnqueueCommand(
            db_path=db_path,
            task_type=task_type,
            description=description,
            priority=priority,
            max_retries=max_retries,
            dependencies=dependencies,
            payload_json=payload_json,
            task_id=task_id,
        ),
    )


@tasks.command("list")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
)
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=50, show_default=True)
def tasks_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent tasks."""

    _emit(CONTROLLER.list_tasks, TaskListCommand(db_path=db_path, status=status, limit=limit))


@tasks.command("inspect")
@_DB_PATH_OPTION
@click.argument("task_id")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Show one task in detail."""

    _emit(CONTROLLER.inspect_task, TaskInspectCommand(db_path=db_path, task_id=task_id))


@tasks.command("cleanup")
@_DB_PATH_OPTION
@click.option(
    "--retention-days",
    type=click.IntRange(min=0),
    default=None,
    help="Override MASTER_CONTROL_TASK_RETENTION_DAYS.",
)
def tasks_cleanup(db_path: Path | None, retention_days: int | None) -> None:
    """Delete finished tasks older than the retention window."""

    _emit(CONTROLLER.cleanup, CleanupCommand(db_path=db_path, retention_days=retention_days))


@tasks.command("stats")
@_DB_PATH_OPTION
def tasks_stats(db_path: Path | None) -> None:
    """Show queue counters and agent metrics."""

    _emit(CONTROLLER.stats, StatsCommand(db_path=db_path))


@master_control.group()
def dlq() -> None:
    """Dead-letter queue commands."""


@dlq.command("list")
@_DB_PATH_OPTION
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=100, show_default=True)
def dlq_list(db_path: Path | None, limit: int) -> None:
    """List archived tasks, newest first."""

    _emit(CONTROLLER.list_dead_letters, DeadLetterListCommand(db_path=db_path, limit=limit))


@dlq.command("replay")
@_DB_PATH_OPTION
@click.argument("task_id")
def dlq_replay(db_path: Path | None, task_id: str) -> None:
    """Enqueue a fresh copy of an archived task."""

    _emit(CONTROLLER.replay_dead_letter, DeadLetterMutateCommand(db_path=db_path, task_id=task_id))


@dlq.command("delete")
@_DB_PATH_OPTION
@click.argument("task_id")
def dlq_delete(db_path: Path | None, task_id: str) -> None:
    """Drop an archived task for good."""

    _emit(CONTROLLER.delete_dead_letter, DeadLetterMutateCommand(db_path=db_path, task_id=task_id))


@master_control.group()
def subagents() -> None:
    """Subagent pool commands."""


@subagents.command("list")
@_DB_PATH_OPTION
def subagents_list(db_path: Path | None) -> None:
    """List registered subagents."""

    _emit(CONTROLLER.list_subagents, StatsCommand(db_path=db_path))


@subagents.command("heartbeat")
@_DB_PATH_OPTION
@click.argument("subagent_id")
def subagents_heartbeat(db_path: Path | None, subagent_id: str) -> None:
    """Record a heartbeat for a subagent."""

    _emit(CONTROLLER.heartbeat, SubagentMutateCommand(db_path=db_path, subagent_id=subagent_id))


@subagents.command("release")
@_DB_PATH_OPTION
@click.argument("subagent_id")
def subagents_release(db_path: Path | None, subagent_id: str) -> None:
    """Force a subagent back to idle."""

    _emit(CONTROLLER.release, SubagentMutateCommand(db_path=db_path, subagent_id=subagent_id))


@subagents.command("remove")
@_DB_PATH_OPTION
@click.argument("subagent_id")
def subagents_remove(db_path: Path | None, subagent_id: str) -> None:
    """Delete a subagent from the registry."""

    _emit(CONTROLLER.remove, SubagentMutateCommand(db_path=db_path, subagent_id=subagent_id))


@subagents.command("health")
@_DB_PATH_OPTION
def subagents_health(db_path: Path | None) -> None:
    """Mark subagents with stale heartbeats as error."""

    _emit(CONTROLLER.health, StatsCommand(db_path=db_path))


@master_control.group()
def scheduler() -> None:
    """Autonomous scheduler commands."""


@scheduler.command("tick")
@_DB_PATH_OPTION
@click.option(
    "--wait-seconds",
    type=click.FloatRange(min=0),
    default=30.0,
    show_default=True,
    help="How long to wait for dispatched handlers before exiting.",
)
def scheduler_tick(db_path: Path | None, wait_seconds: float) -> None:
    """Run a single scheduling pass."""

    _emit(CONTROLLER.tick, SchedulerTickCommand(db_path=db_path, wait_seconds=wait_seconds))


@scheduler.command("run")
@_DB_PATH_OPTION
@click.option(
    "--interval",
    "interval_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds between ticks (defaults to MASTER_CONTROL_TICK_INTERVAL_SECONDS).",
)
@click.option("--max-ticks", type=click.IntRange(min=1), default=None)
def scheduler_run(db_path: Path | None, interval_seconds: float | None, max_ticks: int | None) -> None:
    """Tick until interrupted (SIGINT/SIGTERM) or --max-ticks is reached."""

    _emit(
        CONTROLLER.run,
        SchedulerRunCommand(
            db_path=db_path,
            interval_seconds=interval_seconds,
            max_ticks=max_ticks,
        ),
    )


@master_control.group()
def state() -> None:
    """Agent state commands."""


@state.command("show")
@_DB_PATH_OPTION
def state_show(db_path: Path | None) -> None:
    """Print the agent state as JSON."""

    _emit(CONTROLLER.show_state, StatsCommand(db_path=db_path))


@state.command("export")
@_DB_PATH_OPTION
@click.option("--output", "output_path", type=click.Path(path_type=Path), default=None)
def state_export(db_path: Path | None, output_path: Path | None) -> None:
    """Write a state backup to a file or stdout."""

    _emit(CONTROLLER.export_state, StateExportCommand(db_path=db_path, output_path=output_path))


@state.command("import")
@_DB_PATH_OPTION
@click.argument("input_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
def state_import(db_path: Path | None, input_path: Path) -> None:
    """Replace the agent state with a backup."""

    _emit(CONTROLLER.import_state, StateImportCommand(db_path=db_path, input_path=input_path))


@state.command("integration")
@_DB_PATH_OPTION
@click.argument("name", type=click.Choice(INTEGRATION_NAMES))
@click.option("--enable/--disable", "enabled", default=True, show_default=True)
def state_integration(db_path: Path | None, name: str, enabled: bool) -> None:
    """Toggle an integration flag."""

    _emit(
        CONTROLLER.set_integration,
        IntegrationCommand(db_path=db_path, name=name, enabled=enabled),
    )


def _emit(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (MasterControlError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    master_control()
