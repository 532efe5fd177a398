"""Category dispatch, capability discovery and built-in handlers."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Protocol

from master_control.orchestrator.audit import AuditReader
from master_control.orchestrator.decisions import (
    Decision,
    DecisionCategory,
    SubagentParams,
    SystemParams,
)
from master_control.orchestrator.errors import HandlerError, ValidationError
from master_control.orchestrator.models import (
    SubagentConfig,
    SubagentInfo,
    SubagentStatus,
    SubagentType,
    Task,
)
from master_control.orchestrator.state import StateStore
from master_control.orchestrator.subagents import SubagentAllocator
from master_control.orchestrator.task_store import TaskStore
from master_control.storage.common import utc_now

logger = logging.getLogger(__name__)

# Categories backed by an external integration; the rest are always available
# once a handler is registered.
INTEGRATION_FLAG_BY_CATEGORY: dict[DecisionCategory, str] = {
    DecisionCategory.CLOUDFLARE: "cloudflare",
    DecisionCategory.DOMAIN: "cloudflare",
    DecisionCategory.DOCKER: "docker",
    DecisionCategory.MCP: "mcp_hub",
}


@dataclass(slots=True)
class HandlerContext:
    """What a handler sees besides the decision."""

    task: Task
    subagent: SubagentInfo | None = None


class CategoryHandler(Protocol):
    def handle(self, decision: Decision, context: HandlerContext) -> Any: ...


class Dispatcher:
    """Routes a decision to the handler registered for its category."""

    def __init__(self, handlers: Mapping[DecisionCategory, CategoryHandler] | None = None) -> None:
        self._handlers: dict[DecisionCategory, CategoryHandler] = dict(handlers or {})

    def register(self, category: DecisionCategory, handler: CategoryHandler) -> None:
        self._handlers[category] = handler

    def categories(self) -> set[DecisionCategory]:
        return set(self._handlers)

    def dispatch(self, decision: Decision, context: HandlerContext) -> Any:
        """Run the handler; every failure surfaces as ``HandlerError``."""

        handler = self._handlers.get(decision.category)
        if handler is None:
            raise HandlerError(
                f"No handler registered for category {decision.category.value}",
                category=decision.category.value,
            )
        logger.debug(
            "Dispatching task %s to %s.%s",
            context.task.task_id,
            decision.category.value,
            decision.action,
        )
        try:
            return handler.handle(decision, context)
        except HandlerError:
            raise
        except Exception as error:  # noqa: BLE001
            raise HandlerError(
                f"{decision.category.value}.{decision.action} failed: {error}",
                category=decision.category.value,
            ) from error


class CapabilityRegistry:
    """Categories that can currently be dispatched."""

    def __init__(self, dispatcher: Dispatcher, state: StateStore) -> None:
        self.dispatcher = dispatcher
        self.state = state

    def list(self) -> set[str]:
        integrations = asdict(self.state.get_state().integration_status)
        available: set[str] = set()
        for category in self.dispatcher.categories():
            flag = INTEGRATION_FLAG_BY_CATEGORY.get(category)
            if flag is not None and not integrations.get(flag, False):
                continue
            available.add(category.value)
        return available


class SubagentCommandHandler:
    """Operator-style subagent management routed through the task queue."""

    def __init__(self, allocator: SubagentAllocator) -> None:
        self.allocator = allocator

    def handle(self, decision: Decision, context: HandlerContext) -> Any:
        params = decision.params
        if not isinstance(params, SubagentParams):
            raise HandlerError("subagent handler needs SubagentParams", category="subagent")

        if decision.action == "create":
            try:
                subagent_type = SubagentType(params.subagent_type)
            except ValueError as error:
                raise HandlerError(
                    f"Unknown subagent type: {params.subagent_type!r}",
                    category="subagent",
                ) from error
            created = self.allocator.create(
                SubagentConfig(
                    name=params.name or f"{subagent_type.value}-{context.task.task_id[:8]}",
                    subagent_type=subagent_type,
                    domain=params.domain,
                ),
            )
            return created.to_dict()
        if decision.action == "list":
            return [subagent.to_dict() for subagent in self.allocator.list()]
        if decision.action == "remove":
            if not params.subagent_id:
                raise HandlerError("remove needs subagent_id", category="subagent")
            self.allocator.remove(params.subagent_id)
            return {"removed": params.subagent_id}
        if decision.action == "health":
            return {"marked_error": self.allocator.health_check()}
        raise HandlerError(f"Unknown subagent action: {decision.action}", category="subagent")


class SystemCommandHandler:
    """Health, metrics, audit and configuration requests about the agent itself."""

    def __init__(
        self,
        *,
        state: StateStore,
        allocator: SubagentAllocator,
        task_store: TaskStore,
        audit_reader: AuditReader | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state = state
        self.allocator = allocator
        self.task_store = task_store
        self.audit_reader = audit_reader
        self._clock = clock

    def handle(self, decision: Decision, context: HandlerContext) -> Any:
        params = decision.params
        if not isinstance(params, SystemParams):
            raise HandlerError("system handler needs SystemParams", category="system")

        if decision.action == "health_check":
            marked = self.allocator.health_check()
            self.state.update_metrics(last_health_check=self._clock())
            subagents = self.allocator.list()
            errored = [s.subagent_id for s in subagents if s.status == SubagentStatus.ERROR]
            return {
                "status": "degraded" if errored else "healthy",
                "subagents_total": len(subagents),
                "subagents_error": errored,
                "newly_marked_error": marked,
            }
        if decision.action == "get_metrics":
            state = self.state.get_state()
            stats = self.task_store.get_stats()
            return {
                "metrics": state.to_dict()["metrics"],
                "queue": {
                    "pending": stats.pending,
                    "in_progress": stats.in_progress,
                    "completed": stats.completed,
                    "failed": stats.failed,
                    "dead_lettered": stats.dead_lettered,
                    "avg_duration_seconds": stats.avg_duration_seconds,
                },
            }
        if decision.action == "get_audit_log":
            if self.audit_reader is None:
                return []
            return [
                {
                    "level": entry.level,
                    "message": entry.message,
                    "data": entry.data,
                    "source": entry.source,
                    "created_at": entry.created_at.isoformat(),
                }
                for entry in self.audit_reader.recent(params.limit)
            ]
        if decision.action == "configure":
            try:
                config = self.state.update_config(**params.config)
            except ValidationError as error:
                raise HandlerError(str(error), category="system") from error
            logger.info("Agent configuration updated: %s", sorted(params.config))
            return asdict(config)
        raise HandlerError(f"Unknown system action: {decision.action}", category="system")
