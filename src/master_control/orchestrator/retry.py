"""Retry policy and dead-letter archive for failed tasks."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import update as sa_update
from sqlmodel import col, select

from master_control.orchestrator.errors import NotFound, ValidationError
from master_control.orchestrator.models import (
    TERMINAL_TASK_STATUSES,
    DeadLetterEntry,
    Task,
    TaskCreate,
    TaskStatus,
)
from master_control.orchestrator.task_store import TaskStore, row_to_task
from master_control.storage.common import (
    dump_json,
    load_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from master_control.storage.database import Database
from master_control.storage.sqlmodel_models import DeadLetterRow, TaskRow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryOutcome:
    """Result of routing one task failure through the retry policy."""

    task: Task
    retried: bool
    dead_lettered: bool


class DeadLetterStore:
    """Append-only archive of tasks that exhausted their retry budget."""

    def __init__(
        self,
        database: Database,
        *,
        task_store: TaskStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.database = database
        self.instance_id = database.instance_id
        self.task_store = task_store
        self._clock = clock

    def list(self, limit: int = 100) -> list[DeadLetterEntry]:
        """Most recently archived entries first."""

        with self.database.session() as session:
            rows = session.exec(
                select(DeadLetterRow)
                .where(DeadLetterRow.instance_id == self.instance_id)
                .order_by(col(DeadLetterRow.archived_at).desc(), col(DeadLetterRow.id).desc())
                .limit(limit),
            ).all()
        return [_to_entry(row) for row in rows]

    def list_between(
        self,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[DeadLetterEntry]:
        """Entries archived in ``[since, until)``, oldest first."""

        statement = select(DeadLetterRow).where(DeadLetterRow.instance_id == self.instance_id)
        if since is not None:
            statement = statement.where(col(DeadLetterRow.archived_at) >= to_db_datetime(since))
        if until is not None:
            statement = statement.where(col(DeadLetterRow.archived_at) < to_db_datetime(until))
        with self.database.session() as session:
            rows = session.exec(
                statement.order_by(col(DeadLetterRow.archived_at).asc(), col(DeadLetterRow.id)),
            ).all()
        return [_to_entry(row) for row in rows]

    def get(self, task_id: str) -> DeadLetterEntry | None:
        with self.database.session() as session:
            row = session.exec(
                select(DeadLetterRow).where(
                    DeadLetterRow.instance_id == self.instance_id,
                    DeadLetterRow.task_id == task_id,
                ),
            ).one_or_none()
        return _to_entry(row) if row is not None else None

    def replay(self, task_id: str) -> Task:
        """Operator action: enqueue a fresh copy of an archived task.

        The archive entry itself is never touched.
        """

        entry = self.get(task_id)
        if entry is None:
            raise NotFound("Dead letter", task_id)
        archived = entry.task
        replayed = self.task_store.enqueue(
            TaskCreate(
                task_type=archived.task_type,
                description=archived.description,
                priority=archived.priority,
                payload=dict(archived.payload),
                max_retries=archived.max_retries,
                dependencies=archived.dependencies,
            ),
        )
        logger.info("Dead letter %s replayed as task %s", task_id, replayed.task_id)
        return replayed

    def delete(self, task_id: str) -> None:
        """Operator action: drop an archive entry for good."""

        with self.database.session() as session:
            row = session.exec(
                select(DeadLetterRow).where(
                    DeadLetterRow.instance_id == self.instance_id,
                    DeadLetterRow.task_id == task_id,
                ),
            ).one_or_none()
            if row is None:
                raise NotFound("Dead letter", task_id)
            session.delete(row)
            session.commit()
        logger.info("Dead letter %s deleted", task_id)


class RetryManager:
    """Requeues failed tasks until ``max_retries`` is spent, then dead-letters them."""

    def __init__(
        self,
        database: Database,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.database = database
        self.instance_id = database.instance_id
        self._clock = clock

    def fail(self, task_id: str, error: str) -> RetryOutcome:
        """Record one failure of ``task_id``.

        With budget left the task returns to pending with ``retry_count + 1``.
        Otherwise it is marked failed and archived in the same transaction.
        """

        now = to_db_datetime(self._clock())
        with self.database.session() as session:
            row = session.exec(
                select(TaskRow).where(
                    TaskRow.task_id == task_id,
                    TaskRow.instance_id == self.instance_id,
                ),
            ).one_or_none()
            if row is None:
                raise NotFound("Task", task_id)
            previous = TaskStatus(row.status)
            if previous in TERMINAL_TASK_STATUSES:
                raise ValidationError(
                    f"Task {task_id} is already {previous.value}; failure not recorded",
                )

            retry = row.retry_count < row.max_retries
            values: dict[str, Any]
            if retry:
                values = {
                    "status": TaskStatus.PENDING.value,
                    "retry_count": row.retry_count + 1,
                    "error": error,
                    "started_at": None,
                    "completed_at": None,
                    "updated_at": now,
                }
            else:
                values = {
                    "status": TaskStatus.FAILED.value,
                    "error": error,
                    "completed_at": row.completed_at or now,
                    "updated_at": now,
                }

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
                    "Task state changed concurrently while recording failure; "
                    f"please retry (task_id={task_id}).",
                )

            updated = session.exec(
                select(TaskRow).where(
                    TaskRow.task_id == task_id,
                    TaskRow.instance_id == self.instance_id,
                ),
            ).one()
            task = row_to_task(updated)
            if not retry:
                session.add(
                    DeadLetterRow(
                        instance_id=self.instance_id,
                        task_id=task_id,
                        task_snapshot_json=dump_json(task.to_dict()),
                        reason=error,
                        archived_at=now,
                    ),
                )
            session.commit()

        if retry:
            logger.warning(
                "Task %s failed (retry %d/%d): %s",
                task_id,
                task.retry_count,
                task.max_retries,
                error,
            )
        else:
            logger.error(
                "Task %s failed permanently after %d retries, moved to dead letters: %s",
                task_id,
                task.retry_count,
                error,
            )
        return RetryOutcome(task=task, retried=retry, dead_lettered=not retry)


def _to_entry(row: DeadLetterRow) -> DeadLetterEntry:
    return DeadLetterEntry(
        task_id=row.task_id,
        task=Task.from_dict(load_json(row.task_snapshot_json)),
        reason=row.reason,
        archived_at=to_utc_aware_datetime(row.archived_at),
    )
