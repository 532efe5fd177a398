"""Persistent priority task queue with dependency gating."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from master_control.orchestrator.errors import NotFound, PersistenceError, ValidationError
from master_control.orchestrator.models import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    Task,
    TaskCreate,
    TaskStats,
    TaskStatus,
)
from master_control.storage.common import (
    dump_json,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from master_control.storage.database import Database
from master_control.storage.sqlmodel_models import DeadLetterRow, TaskRow

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PENDING},
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


class TaskStore:
    """Durable registry of tasks for one agent instance."""

    def __init__(
        self,
        database: Database,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.database = database
        self.instance_id = database.instance_id
        self._clock = clock

    def enqueue(self, payload: TaskCreate) -> Task:
        """Create a pending task."""

        _validate_create(payload)
        task_id = payload.task_id or str(uuid4())
        dependencies = tuple(dict.fromkeys(dep.strip() for dep in payload.dependencies if dep))
        if task_id in dependencies:
            raise ValidationError(f"Task {task_id} cannot depend on itself")

        now = self._clock()
        with self.database.session() as session:
            if self._get_row(session, task_id) is not None:
                raise ValidationError(f"Task id already exists: {task_id}")
            last_seq = session.exec(
                select(func.max(TaskRow.enqueue_seq)).where(
                    TaskRow.instance_id == self.instance_id,
                ),
            ).one()
            row = TaskRow(
                task_id=task_id,
                instance_id=self.instance_id,
                task_type=payload.task_type.strip(),
                description=payload.description,
                priority=payload.priority,
                status=TaskStatus.PENDING.value,
                payload_json=dump_json(payload.payload or {}),
                retry_count=0,
                max_retries=payload.max_retries,
                dependencies_json=dump_json(list(dependencies)),
                enqueue_seq=(last_seq or 0) + 1,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            task = row_to_task(row)

        logger.info(
            "Task enqueued: task_id=%s type=%s priority=%d",
            task.task_id,
            task.task_type,
            task.priority,
        )
        return task

    def get_pending(self, limit: int) -> list[Task]:
        """Pending tasks, most urgent first; FIFO among equal priorities."""

        if limit <= 0:
            return []
        with self.database.session() as session:
            rows = session.exec(
                select(TaskRow)
                .where(
                    TaskRow.instance_id == self.instance_id,
                    TaskRow.status == TaskStatus.PENDING.value,
                )
                .order_by(
                    col(TaskRow.priority).desc(),
                    col(TaskRow.created_at).asc(),
                    col(TaskRow.enqueue_seq).asc(),
                )
                .limit(limit),
            ).all()
        return [row_to_task(row) for row in rows]

    def get_by_id(self, task_id: str) -> Task | None:
        with self.database.session() as session:
            row = self._get_row(session, task_id)
            return row_to_task(row) if row is not None else None

    def get_recent(self, limit: int = 50) -> list[Task]:
        """Tasks in reverse-chronological order of creation."""

        return self.list_tasks(limit=limit)

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[Task]:
        """List recent tasks, optionally filtered by status."""

        with self.database.session() as session:
            statement = (
                select(TaskRow)
                .where(TaskRow.instance_id == self.instance_id)
                .order_by(col(TaskRow.created_at).desc(), col(TaskRow.enqueue_seq).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(TaskRow.status == status.value)
            rows = session.exec(statement).all()
        return [row_to_task(row) for row in rows]

    def list_in_progress(self, *, started_before: datetime | None = None) -> list[Task]:
        with self.database.session() as session:
            statement = select(TaskRow).where(
                TaskRow.instance_id == self.instance_id,
                TaskRow.status == TaskStatus.IN_PROGRESS.value,
            )
            if started_before is not None:
                statement = statement.where(
                    col(TaskRow.started_at) < to_db_datetime(started_before),
                )
            rows = session.exec(statement.order_by(col(TaskRow.started_at).asc())).all()
        return [row_to_task(row) for row in rows]

    def count_in_progress(self) -> int:
        with self.database.session() as session:
            return session.exec(
                select(func.count())
                .select_from(TaskRow)
                .where(
                    TaskRow.instance_id == self.instance_id,
                    TaskRow.status == TaskStatus.IN_PROGRESS.value,
                ),
            ).one()

    def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        result: Any = None,
        error: str | None = None,
    ) -> Task:
        """Move a task to ``status`` and merge result/error into it.

        ``started_at`` is stamped on the first move to in_progress and cleared
        on a move back to pending; ``completed_at`` is stamped on the first
        move to completed/failed.
        """

        now = self._clock()
        with self.database.session() as session:
            row = self._get_row(session, task_id)
            if row is None:
                raise NotFound("Task", task_id)
            previous = TaskStatus(row.status)
            if status not in _ALLOWED_TRANSITIONS[previous]:
                raise ValidationError(
                    f"Task {task_id} cannot move from {previous.value} to {status.value}",
                )

            values: dict[str, Any] = {
                "status": status.value,
                "updated_at": to_db_datetime(now),
            }
            if status == TaskStatus.IN_PROGRESS and row.started_at is None:
                values["started_at"] = to_db_datetime(now)
            if status == TaskStatus.PENDING:
                values["started_at"] = None
            if status in {TaskStatus.COMPLETED, TaskStatus.FAILED} and row.completed_at is None:
                values["completed_at"] = to_db_datetime(now)
            if result is not None:
                values["result_json"] = dump_json(result)
            if error is not None:
                values["error"] = error

            outcome = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.task_id) == task_id,
                    col(TaskRow.instance_id) == self.instance_id,
                    col(TaskRow.status) == previous.value,
                )
                .values(**values),
            )
            if outcome.rowcount != 1:
                session.rollback()
                raise ValidationError(
                    "Task state changed concurrently; "
                    f"please retry (task_id={task_id}, expected={previous.value}).",
                )
            session.commit()
            updated = self._get_row(session, task_id)
            if updated is None:
                raise PersistenceError(f"Task {task_id} vanished after a status update")
            task = row_to_task(updated)

        logger.debug("Task %s: %s -> %s", task_id, previous.value, status.value)
        return task

    def start(self, task_id: str) -> Task:
        return self.update_status(task_id, TaskStatus.IN_PROGRESS)

    def complete(self, task_id: str, result: Any = None) -> Task:
        return self.update_status(task_id, TaskStatus.COMPLETED, result=result)

    def requeue(self, task_id: str) -> Task:
        """Undo a start that never reached a handler; the retry budget is untouched."""

        return self.update_status(task_id, TaskStatus.PENDING)

    def unsatisfied_dependencies(self, task: Task) -> tuple[str, ...]:
        """Dependency ids that are missing or not completed yet."""

        if not task.dependencies:
            return ()
        with self.database.session() as session:
            rows = session.exec(
                select(TaskRow.task_id, TaskRow.status).where(
                    TaskRow.instance_id == self.instance_id,
                    col(TaskRow.task_id).in_(task.dependencies),
                ),
            ).all()
        completed = {
            dep_id for dep_id, status in rows if status == TaskStatus.COMPLETED.value
        }
        return tuple(dep_id for dep_id in task.dependencies if dep_id not in completed)

    def are_dependencies_satisfied(self, task: Task) -> bool:
        """True iff every dependency is a completed task; unknown ids fail closed."""

        return not self.unsatisfied_dependencies(task)

    def cleanup(self, retention_days: int) -> int:
        """Delete finished tasks older than the retention window.

        Tasks archived in the dead-letter store are kept.
        """

        if retention_days < 0:
            raise ValidationError("retention_days must be >= 0")
        cutoff = to_db_datetime(self._clock() - timedelta(days=retention_days))
        finished_at = func.coalesce(TaskRow.completed_at, TaskRow.created_at)
        dead_lettered = select(DeadLetterRow.task_id).where(
            DeadLetterRow.instance_id == self.instance_id,
        )
        with self.database.session() as session:
            outcome = session.exec(
                sa_delete(TaskRow).where(
                    col(TaskRow.instance_id) == self.instance_id,
                    col(TaskRow.status).in_(
                        (TaskStatus.COMPLETED.value, TaskStatus.FAILED.value),
                    ),
                    finished_at < cutoff,
                    col(TaskRow.task_id).not_in(dead_lettered),
                ),
            )
            session.commit()
            removed = int(outcome.rowcount or 0)

        logger.info("Task cleanup removed %d task(s) older than %d day(s)", removed, retention_days)
        return removed

    def get_stats(self) -> TaskStats:
        """Counts by status and average completion duration."""

        stats = TaskStats()
        with self.database.session() as session:
            counts = session.exec(
                select(TaskRow.status, func.count())
                .where(TaskRow.instance_id == self.instance_id)
                .group_by(TaskRow.status),
            ).all()
            finished = session.exec(
                select(TaskRow.created_at, TaskRow.completed_at).where(
                    TaskRow.instance_id == self.instance_id,
                    col(TaskRow.completed_at).is_not(None),
                ),
            ).all()
            stats.dead_lettered = session.exec(
                select(func.count())
                .select_from(DeadLetterRow)
                .where(DeadLetterRow.instance_id == self.instance_id),
            ).one()

        for status, count in counts:
            setattr(stats, TaskStatus(status).value, int(count))
        durations = [
            (completed_at - created_at).total_seconds()
            for created_at, completed_at in finished
            if completed_at is not None
        ]
        if durations:
            stats.avg_duration_seconds = sum(durations) / len(durations)
        return stats

    def _get_row(self, session: Session, task_id: str) -> TaskRow | None:
        return session.exec(
            select(TaskRow).where(
                TaskRow.task_id == task_id,
                TaskRow.instance_id == self.instance_id,
            ),
        ).one_or_none()


def row_to_task(row: TaskRow) -> Task:
    return Task(
        task_id=row.task_id,
        task_type=row.task_type,
        description=row.description,
        priority=row.priority,
        payload=load_json(row.payload_json, default={}),
        status=TaskStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        result=load_json(row.result_json),
        error=row.error,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        dependencies=tuple(load_json(row.dependencies_json, default=[])),
    )


def _validate_create(payload: TaskCreate) -> None:
    if not payload.task_type or not payload.task_type.strip():
        raise ValidationError("task_type must be a non-empty string")
    if isinstance(payload.priority, bool) or not isinstance(payload.priority, int):
        raise ValidationError(f"priority must be an integer, got {payload.priority!r}")
    if not MIN_PRIORITY <= payload.priority <= MAX_PRIORITY:
        raise ValidationError(
            f"priority must be within [{MIN_PRIORITY}, {MAX_PRIORITY}], got {payload.priority}",
        )
    if payload.max_retries < 0:
        raise ValidationError(f"max_retries must be >= 0, got {payload.max_retries}")
    if not isinstance(payload.payload, dict):
        raise ValidationError("payload must be a JSON object")
