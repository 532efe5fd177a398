"""Controllers for master-control CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from master_control.config import Settings
from master_control.orchestrator.errors import ValidationError
from master_control.orchestrator.metrics import render_stats_lines, render_tick_lines
from master_control.orchestrator.models import TaskCreate, TaskStatus
from master_control.orchestrator.services import AgentInstance
from master_control.storage.common import dump_json


@dataclass(slots=True)
class TaskEnqueueCommand:
    """CLI input for task enqueue."""

    db_path: Path | None
    task_type: str
    description: str
    priority: int
    max_retries: int
    dependencies: tuple[str, ...]
    payload_json: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class CleanupCommand:
    db_path: Path | None
    retention_days: int | None


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class DeadLetterListCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class DeadLetterMutateCommand:
    """CLI input for replay/delete of an archived task."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class SubagentMutateCommand:
    """CLI input for heartbeat/release/remove operations."""

    db_path: Path | None
    subagent_id: str


@dataclass(slots=True)
class SchedulerTickCommand:
    """CLI input for a single scheduling pass."""

    db_path: Path | None
    wait_seconds: float


@dataclass(slots=True)
class SchedulerRunCommand:
    db_path: Path | None
    interval_seconds: float | None
    max_ticks: int | None


@dataclass(slots=True)
class StateExportCommand:
    db_path: Path | None
    output_path: Path | None


@dataclass(slots=True)
class StateImportCommand:
    db_path: Path | None
    input_path: Path


@dataclass(slots=True)
class IntegrationCommand:
    db_path: Path | None
    name: str
    enabled: bool


class MasterControlCliController:
    """Coordinates queue, scheduler, subagent and state CLI operations."""

    def enqueue(self, command: TaskEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        payload = _parse_payload(command.payload_json)
        with _instance(settings) as instance:
            task = instance.enqueue(
                TaskCreate(
                    task_type=command.task_type,
                    description=command.description,
                    priority=command.priority,
                    payload=payload,
                    max_retries=command.max_retries,
                    dependencies=command.dependencies,
                    task_id=command.task_id,
                ),
            )
        return [
            "Task enqueued: "
            f"task_id={task.task_id} type={task.task_type} "
            f"priority={task.priority} status={task.status.value}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _instance(settings) as instance:
            tasks = instance.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} type={task.task_type} status={task.status.value} "
                f"priority={task.priority} retries={task.retry_count}/{task.max_retries} "
                f"created_at={task.created_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _instance(settings) as instance:
            task = instance.task_store.get_by_id(command.task_id)
        if task is None:
            return [f"Task not found: {command.task_id}"]

        return [
            f"Task: {task.task_id}",
            f"Type: {task.task_type}",
            f"Description: {task.description or '-'}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Dependencies: {', '.join(task.dependencies) or '-'}",
            f"Created: {task.created_at.isoformat()}",
            f"Started: {task.started_at.isoformat() if task.started_at else '-'}",
            f"Completed: {task.completed_at.isoformat() if task.completed_at else '-'}",
            f"Error: {task.error or '-'}",
            f"Payload: {dump_json(task.payload)}",
            f"Result: {dump_json(task.result) if task.result is not None else '-'}",
        ]

    def cleanup(self, command: CleanupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _instance(settings) as instance:
            removed = instance.cleanup(command.retention_days)
        days = (
            settings.retention.task_retention_days
            if command.retention_days is None
            else command.retention_days
        )
        return [f"Tasks removed: {removed} (retention={days}d)"]

    def stats(self, command: StatsCommand) -> list[str]:
        """Show queue counters and agent metrics."""

        settings = Settings.from_env(db_path=command.db_path)
        with _instance(settings) as instance:
            stats = instance.stats()
            state = instance.state.get_state()
        return render_stats_lines(
            stats=stats,
            state=state,
            instance_id=settings.storage.instance_id,
        )

    def list_dead_letters(self, command: DeadLetterListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _instance(settings) as instance:
            entries = instance.list_dead_letters(command.limit)

        lines = [f"Dead letters: {len(entries)}"]
        for entry in entries:
            lines.append(
                f"  {entry.task_id} type={entry.task.task_type} "
                f"retries={entry.task.retry_count}/{entry.task.max_retries} "
                f"archived_at={entry.archived_at.isoformat()} reason={entry.reason}",
            )
        return lines

    def replay_dead_letter(self, command: DeadLetterMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _instance(settings) as instance:
            task = instance.replay_dead_letter(command.task_id)
        return [f"Dead letter replayed: {command.task_id} -> task_id={task.task_id}"]

    def delete_dead_letter(self, command: DeadLetterMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _instance(settings) as instance:
            instance.delete_dead_letter(command.task_id)
        return [f"Dead letter deleted: {command.task_id}"]

    def list_subagents(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _instance(settings) as instance:
            subagents = instance.list_subagents()

        lines = [f"Subagents: {len(subagents)}"]
        for subagent in subagents:
            lines.append(
                f"  {subagent.subagent_id} name={subagent.name} "
                f"type={subagent.subagent_type.value} status={subagent.status.value} "
                f"task={subagent.current_task or '-'} "
                f"last_heartbeat={subagent.last_heartbeat.isoformat()}",
            )
        return lines

    def heartbeat(self, command: SubagentMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _instance(settings) as instance:
            subagent = instance.heartbeat(command.subagent_id)
        return [f"Heartbeat recorded: {subagent.subagent_id} status={subagent.status.value}"]

    def release(self, command: SubagentMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _instance(settings) as instance:
            instance.force_release(command.subagent_id)
        return [f"Subagent released: {command.subagent_id}"]

    def remove(self, command: SubagentMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _instance(settings) as instance:
            instance.remove_subagent(command.subagent_id)
        return [f"Subagent removed: {command.subagent_id}"]

    def health(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _instance(settings) as instance:
            marked = instance.health_check()
        lines = [f"Subagents marked error: {len(marked)}"]
        lines.extend(f"  {subagent_id}" for subagent_id in marked)
        return lines

    def tick(self, command: SchedulerTickCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _instance(settings) as instance:
            summary = instance.scheduler.tick()
            idle = instance.scheduler.wait_idle(timeout=command.wait_seconds)
        lines = render_tick_lines(summary)
        if not idle:
            lines.append(f"Handlers still running after {command.wait_seconds:g}s")
        return lines

    def run(self, command: SchedulerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        interval = command.interval_seconds or settings.scheduler.tick_interval_seconds
        with _instance(settings) as instance:
            ticks = instance.scheduler.run_forever(interval, max_ticks=command.max_ticks)
        return [f"Scheduler stopped after {ticks} tick(s)"]

    def show_state(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _instance(settings) as instance:
            raw = instance.export_state()
        return json.dumps(raw, indent=2, sort_keys=True, ensure_ascii=False).splitlines()

    def export_state(self, command: StateExportCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _instance(settings) as instance:
            raw = instance.export_state()
        rendered = json.dumps(raw, indent=2, sort_keys=True, ensure_ascii=False)
        if command.output_path is None:
            return rendered.splitlines()
        command.output_path.parent.mkdir(parents=True, exist_ok=True)
        command.output_path.write_text(rendered + "\n", encoding="utf-8")
        return [f"State exported: {command.output_path}"]

    def import_state(self, command: StateImportCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        try:
            raw = json.loads(command.input_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as error:
            raise ValidationError(f"State file is not valid JSON: {error}") from error
        if not isinstance(raw, dict):
            raise ValidationError("State file must contain a JSON object")
        with _instance(settings) as instance:
            state = instance.import_state(raw)
        return [f"State imported: subagents={len(state.subagents)}"]

    def set_integration(self, command: IntegrationCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _instance(settings) as instance:
            instance.set_integration(command.name, command.enabled)
        return [f"Integration {command.name}: {'enabled' if command.enabled else 'disabled'}"]


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value.strip().lower())
    except ValueError as error:
        raise ValidationError(f"Unknown task status: {value!r}") from error


def _parse_payload(raw: str | None) -> dict[str, Any]:
    if raw is None or not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValidationError(f"--payload must be valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise ValidationError("--payload must be a JSON object")
    return payload


@contextmanager
def _instance(settings: Settings) -> Iterator[AgentInstance]:
    settings.validate()
    instance = AgentInstance.open(settings)
    try:
        yield instance
    finally:
        instance.close()
