"""Canonical agent state with synchronous write-through persistence."""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable
from dataclasses import asdict, fields
from datetime import datetime
from typing import Any

from sqlmodel import select

from master_control.orchestrator.errors import NotFound, PersistenceError, ValidationError
from master_control.orchestrator.models import (
    INTEGRATION_NAMES,
    AgentConfig,
    AgentState,
    SubagentInfo,
    SubagentStatus,
    parse_config_value,
)
from master_control.storage.common import dump_json, load_json, to_db_datetime, utc_now
from master_control.storage.database import Database
from master_control.storage.sqlmodel_models import AgentStateRow

logger = logging.getLogger(__name__)

_STATE_FIELDS = frozenset(item.name for item in fields(AgentState))
_CONFIG_FIELDS = frozenset(item.name for item in fields(AgentConfig))
_METRIC_FIELDS = frozenset(
    {"tasks_completed", "tasks_failed", "tasks_active", "subagents_active", "last_health_check"},
)
_KNOWLEDGE_FIELDS = frozenset({"entries", "last_backup", "last_sync"})
_SUBAGENT_MUTABLE_FIELDS = frozenset(
    {"status", "current_task", "last_heartbeat", "name", "domain", "resources"},
)


class StateStore:
    """Single source of truth for config, subagent mirror and metrics.

    Every mutation runs read-modify-write-persist under the instance lock and
    publishes the new aggregate only after the write committed, so readers
    never observe a state that was not persisted.
    """

    def __init__(
        self,
        database: Database,
        *,
        defaults: AgentConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.database = database
        self.instance_id = database.instance_id
        self._defaults = defaults or AgentConfig()
        self._clock = clock
        self._state: AgentState | None = None
        self._lock = threading.RLock()

    def load(self) -> AgentState:
        """Return the cached aggregate, reading storage on first access."""

        with self._lock:
            if self._state is None:
                self._state = self._read() or self._initialize()
            return copy.deepcopy(self._state)

    def get_state(self) -> AgentState:
        return self.load()

    def update(self, **changes: Any) -> AgentState:
        """Replace top-level aggregate fields."""

        unknown = set(changes) - _STATE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown state fields: {sorted(unknown)}")
        if "config" in changes:
            changes["config"] = _checked_config(changes["config"])

        def _apply(state: AgentState) -> None:
            for name, value in changes.items():
                setattr(state, name, copy.deepcopy(value))
            _refresh_subagent_count(state)

        return self._mutate(_apply)

    def update_config(self, **changes: Any) -> AgentConfig:
        unknown = set(changes) - _CONFIG_FIELDS
        if unknown:
            raise ValidationError(f"Unknown config fields: {sorted(unknown)}")
        try:
            coerced = {name: parse_config_value(name, value) for name, value in changes.items()}
        except ValueError as error:
            raise ValidationError(str(error)) from error

        def _apply(state: AgentState) -> None:
            for name, value in coerced.items():
                setattr(state.config, name, value)

        return self._mutate(_apply).config

    def add_subagent(self, subagent: SubagentInfo) -> None:
        def _apply(state: AgentState) -> None:
            state.subagents = [s for s in state.subagents if s.subagent_id != subagent.subagent_id]
            state.subagents.append(copy.deepcopy(subagent))
            _refresh_subagent_count(state)

        self._mutate(_apply)

    def update_subagent(self, subagent_id: str, **changes: Any) -> None:
        unknown = set(changes) - _SUBAGENT_MUTABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown subagent fields: {sorted(unknown)}")

        def _apply(state: AgentState) -> None:
            for subagent in state.subagents:
                if subagent.subagent_id == subagent_id:
                    for name, value in changes.items():
                        setattr(subagent, name, copy.deepcopy(value))
                    break
            else:
                raise NotFound("Subagent", subagent_id)
            _refresh_subagent_count(state)

        self._mutate(_apply)

    def remove_subagent(self, subagent_id: str) -> None:
        def _apply(state: AgentState) -> None:
            state.subagents = [s for s in state.subagents if s.subagent_id != subagent_id]
            _refresh_subagent_count(state)

        self._mutate(_apply)

    def update_integration_status(self, integration: str, enabled: bool) -> None:
        if integration not in INTEGRATION_NAMES:
            raise ValidationError(f"Unknown integration: {integration!r}")

        def _apply(state: AgentState) -> None:
            setattr(state.integration_status, integration, bool(enabled))

        self._mutate(_apply)

    def update_metrics(self, **changes: Any) -> None:
        unknown = set(changes) - _METRIC_FIELDS
        if unknown:
            raise ValidationError(f"Unknown metric fields: {sorted(unknown)}")

        def _apply(state: AgentState) -> None:
            for name, value in changes.items():
                setattr(state.metrics, name, value)

        self._mutate(_apply)

    def increment_completed(self) -> None:
        def _apply(state: AgentState) -> None:
            state.metrics.tasks_completed += 1

        self._mutate(_apply)

    def increment_failed(self) -> None:
        def _apply(state: AgentState) -> None:
            state.metrics.tasks_failed += 1

        self._mutate(_apply)

    def set_active_tasks(self, count: int) -> None:
        if count < 0:
            raise ValidationError(f"Active task count must be >= 0, got {count}")

        def _apply(state: AgentState) -> None:
            state.metrics.tasks_active = count

        self._mutate(_apply)

    def adjust_active_tasks(self, delta: int) -> int:
        """Atomically add ``delta`` to ``tasks_active``; returns the new value."""

        def _apply(state: AgentState) -> None:
            value = state.metrics.tasks_active + delta
            if value < 0:
                logger.warning(
                    "Active task counter would drop below zero (%d%+d); clamping",
                    state.metrics.tasks_active,
                    delta,
                )
                value = 0
            state.metrics.tasks_active = value

        return self._mutate(_apply).metrics.tasks_active

    def update_knowledge_stats(self, **changes: Any) -> None:
        unknown = set(changes) - _KNOWLEDGE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown knowledge-base fields: {sorted(unknown)}")

        def _apply(state: AgentState) -> None:
            for name, value in changes.items():
                setattr(state.knowledge_base, name, value)

        self._mutate(_apply)

    def export(self) -> AgentState:
        """Full snapshot for backup."""

        return self.load()

    def import_state(self, state: AgentState) -> None:
        """Replace the aggregate with a backup snapshot."""

        with self._lock:
            candidate = copy.deepcopy(state)
            _refresh_subagent_count(candidate)
            self._write(candidate)
            self._state = candidate
        logger.info("Agent state imported for instance %s", self.instance_id)

    def _mutate(self, apply: Callable[[AgentState], None]) -> AgentState:
        with self._lock:
            if self._state is None:
                self._state = self._read() or self._initialize()
            candidate = copy.deepcopy(self._state)
            apply(candidate)
            self._write(candidate)
            self._state = candidate
            return copy.deepcopy(candidate)

    def _initialize(self) -> AgentState:
        state = AgentState(config=copy.deepcopy(self._defaults))
        self._write(state)
        logger.info("Initialized default agent state for instance %s", self.instance_id)
        return state

    def _read(self) -> AgentState | None:
        with self.database.session() as session:
            row = session.exec(
                select(AgentStateRow).where(AgentStateRow.instance_id == self.instance_id),
            ).one_or_none()
            if row is None:
                return None
            raw = load_json(row.state_json)
        try:
            return AgentState.from_dict(raw)
        except (KeyError, TypeError, ValueError) as error:
            raise PersistenceError(f"Stored agent state is unreadable: {error}") from error

    def _write(self, state: AgentState) -> None:
        now = to_db_datetime(self._clock())
        with self.database.session() as session:
            row = session.get(AgentStateRow, self.instance_id)
            if row is None:
                row = AgentStateRow(
                    instance_id=self.instance_id,
                    state_json=dump_json(state.to_dict()),
                    updated_at=now,
                )
            else:
                row.state_json = dump_json(state.to_dict())
                row.updated_at = now
            session.add(row)
            session.commit()


def _checked_config(value: Any) -> AgentConfig:
    if isinstance(value, AgentConfig):
        value = asdict(value)
    if not isinstance(value, dict):
        raise ValidationError(f"config must be an object, got {value!r}")
    try:
        return AgentConfig.from_dict(value)
    except ValueError as error:
        raise ValidationError(str(error)) from error


def _refresh_subagent_count(state: AgentState) -> None:
    state.metrics.subagents_active = sum(
        1 for subagent in state.subagents if subagent.status == SubagentStatus.ACTIVE
    )
