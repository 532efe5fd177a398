"""Composition root and operator use-cases for one agent instance."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from master_control.config import Settings
from master_control.orchestrator.audit import (
    CompositeAuditSink,
    LoggingAuditSink,
    RepositoryAuditSink,
)
from master_control.orchestrator.decisions import DecisionCategory
from master_control.orchestrator.dispatcher import (
    CapabilityRegistry,
    CategoryHandler,
    Dispatcher,
    SubagentCommandHandler,
    SystemCommandHandler,
)
from master_control.orchestrator.errors import NotFound, ValidationError
from master_control.orchestrator.models import (
    AgentState,
    DeadLetterEntry,
    SubagentInfo,
    Task,
    TaskCreate,
    TaskStats,
    TaskStatus,
)
from master_control.orchestrator.oracle import DecisionOracle, KeywordDecisionOracle
from master_control.orchestrator.retry import DeadLetterStore, RetryManager
from master_control.orchestrator.scheduler import AutonomousScheduler
from master_control.orchestrator.state import StateStore
from master_control.orchestrator.subagents import SubagentAllocator
from master_control.orchestrator.task_store import TaskStore
from master_control.storage.common import utc_now
from master_control.storage.database import Database

logger = logging.getLogger(__name__)


class AgentInstance:
    """Wires the stores, dispatcher and scheduler of one instance partition."""

    def __init__(
        self,
        *,
        database: Database,
        settings: Settings,
        oracle: DecisionOracle | None = None,
        handlers: Mapping[DecisionCategory, CategoryHandler] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.database = database
        self.settings = settings
        self._clock = clock
        self.task_store = TaskStore(database, clock=clock)
        self.dead_letters = DeadLetterStore(database, task_store=self.task_store, clock=clock)
        self.retry_manager = RetryManager(database, clock=clock)
        self.state = StateStore(database, defaults=settings.agent_defaults(), clock=clock)
        self.allocator = SubagentAllocator(
            database,
            state=self.state,
            heartbeat_timeout_seconds=settings.subagents.heartbeat_timeout_seconds,
            clock=clock,
        )
        self.audit_log = RepositoryAuditSink(database, clock=clock)
        self.audit = CompositeAuditSink([LoggingAuditSink(), self.audit_log])

        self.dispatcher = Dispatcher(
            {
                DecisionCategory.SUBAGENT: SubagentCommandHandler(self.allocator),
                DecisionCategory.SYSTEM: SystemCommandHandler(
                    state=self.state,
                    allocator=self.allocator,
                    task_store=self.task_store,
                    audit_reader=self.audit_log,
                    clock=clock,
                ),
            },
        )
        for category, handler in (handlers or {}).items():
            self.dispatcher.register(category, handler)
        self.capabilities = CapabilityRegistry(self.dispatcher, self.state)

        self.scheduler = AutonomousScheduler(
            task_store=self.task_store,
            retry_manager=self.retry_manager,
            allocator=self.allocator,
            state=self.state,
            oracle=oracle or KeywordDecisionOracle(),
            dispatcher=self.dispatcher,
            capabilities=self.capabilities,
            audit=self.audit,
            oracle_timeout_seconds=settings.scheduler.oracle_timeout_seconds,
            task_deadline_seconds=settings.scheduler.task_deadline_seconds,
            subagent_priority_threshold=settings.scheduler.subagent_priority_threshold,
            retention_days=settings.retention.task_retention_days,
            clock=clock,
        )

    @classmethod
    def open(
        cls,
        settings: Settings,
        *,
        oracle: DecisionOracle | None = None,
        handlers: Mapping[DecisionCategory, CategoryHandler] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> AgentInstance:
        """Open the database, migrate it and build the instance."""

        database = Database(
            settings.db_path,
            instance_id=settings.storage.instance_id,
            sqlite_busy_timeout_ms=settings.storage.sqlite_busy_timeout_ms,
        )
        database.init_schema()
        return cls(
            database=database,
            settings=settings,
            oracle=oracle,
            handlers=handlers,
            clock=clock,
        )

    def close(self) -> None:
        self.scheduler.shutdown(wait=True)
        self.database.close()

    def enqueue(self, command: TaskCreate) -> Task:
        task = self.task_store.enqueue(command)
        self.audit.record(
            "info",
            "Task enqueued",
            {"task_id": task.task_id, "task_type": task.task_type, "priority": task.priority},
        )
        return task

    def get_task(self, task_id: str) -> Task:
        task = self.task_store.get_by_id(task_id)
        if task is None:
            raise NotFound("Task", task_id)
        return task

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[Task]:
        return self.task_store.list_tasks(status=status, limit=limit)

    def list_dead_letters(self, limit: int = 100) -> list[DeadLetterEntry]:
        return self.dead_letters.list(limit)

    def replay_dead_letter(self, task_id: str) -> Task:
        task = self.dead_letters.replay(task_id)
        self.audit.record(
            "info",
            "Dead letter replayed",
            {"task_id": task_id, "replayed_task_id": task.task_id},
        )
        return task

    def delete_dead_letter(self, task_id: str) -> None:
        self.dead_letters.delete(task_id)
        self.audit.record("warn", "Dead letter deleted", {"task_id": task_id})

    def list_subagents(self) -> list[SubagentInfo]:
        return self.allocator.list()

    def heartbeat(self, subagent_id: str) -> SubagentInfo:
        return self.allocator.heartbeat(subagent_id)

    def force_release(self, subagent_id: str) -> None:
        """Operator release; unlike the scheduler path, unknown ids are reported."""

        if self.allocator.get(subagent_id) is None:
            raise NotFound("Subagent", subagent_id)
        self.allocator.release(subagent_id)
        self.audit.record("warn", "Subagent force-released", {"subagent_id": subagent_id})

    def remove_subagent(self, subagent_id: str) -> None:
        self.allocator.remove(subagent_id)
        self.audit.record("warn", "Subagent removed", {"subagent_id": subagent_id})

    def health_check(self) -> list[str]:
        marked = self.allocator.health_check()
        self.state.update_metrics(last_health_check=self._clock())
        return marked

    def cleanup(self, retention_days: int | None = None) -> int:
        days = self.settings.retention.task_retention_days if retention_days is None else retention_days
        return self.task_store.cleanup(days)

    def stats(self) -> TaskStats:
        return self.task_store.get_stats()

    def export_state(self) -> dict[str, Any]:
        return self.state.export().to_dict()

    def import_state(self, raw: dict[str, Any]) -> AgentState:
        """Restore a backup produced by ``export_state``."""

        try:
            state = AgentState.from_dict(raw)
        except (KeyError, TypeError, ValueError) as error:
            raise ValidationError(f"Invalid agent state snapshot: {error}") from error
        self.allocator.restore(state.subagents)
        self.state.import_state(state)
        self.audit.record("warn", "Agent state imported", {"subagents": len(state.subagents)})
        return self.state.get_state()

    def set_integration(self, name: str, enabled: bool) -> None:
        self.state.update_integration_status(name, enabled)
        self.audit.record("info", "Integration toggled", {"integration": name, "enabled": enabled})
