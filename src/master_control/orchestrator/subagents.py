"""Subagent pool: capacity, allocation, heartbeats and health checks."""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable
from dataclasses import asdict
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlmodel import col, select

from master_control.orchestrator.errors import CapacityExceeded, NotFound
from master_control.orchestrator.models import (
    SubagentConfig,
    SubagentInfo,
    SubagentResources,
    SubagentStatus,
    SubagentType,
    Task,
)
from master_control.orchestrator.state import StateStore
from master_control.storage.common import (
    dump_json,
    load_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from master_control.storage.database import Database
from master_control.storage.sqlmodel_models import SubagentRow

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_TIMEOUT_SECONDS = 300


class SubagentAllocator:
    """Registry of ephemeral worker handles for one agent instance.

    Allocation and release run under a per-instance lock: handler threads
    release subagents while the scheduler allocates them.
    """

    def __init__(
        self,
        database: Database,
        *,
        state: StateStore,
        heartbeat_timeout_seconds: int = DEFAULT_HEARTBEAT_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.database = database
        self.instance_id = database.instance_id
        self.state = state
        self.heartbeat_timeout = timedelta(seconds=heartbeat_timeout_seconds)
        self._clock = clock
        self._subagents: dict[str, SubagentInfo] = {}
        self._lock = threading.RLock()
        self._loaded = False

    def load(self) -> list[SubagentInfo]:
        """Restore the registry from storage and resync the state mirror."""

        with self._lock:
            with self.database.session() as session:
                rows = session.exec(
                    select(SubagentRow)
                    .where(SubagentRow.instance_id == self.instance_id)
                    .order_by(col(SubagentRow.deployed_at).asc()),
                ).all()
                self._subagents = {row.subagent_id: _to_info(row) for row in rows}
            self._loaded = True
            self.state.update(subagents=list(self._subagents.values()))
            return self._snapshot()

    def create(self, config: SubagentConfig, *, current_task: str | None = None) -> SubagentInfo:
        """Deploy a new subagent in ``active`` status."""

        with self._lock:
            self._ensure_loaded()
            max_subagents = self.state.get_state().config.max_subagents
            if len(self._subagents) >= max_subagents:
                raise CapacityExceeded(
                    f"Subagent pool is at capacity ({len(self._subagents)}/{max_subagents})",
                )
            now = self._clock()
            resources = config.resources or copy.deepcopy(
                self.state.get_state().config.subagent_defaults,
            )
            subagent = SubagentInfo(
                subagent_id=str(uuid4()),
                subagent_type=config.subagent_type,
                name=config.name,
                status=SubagentStatus.ACTIVE,
                current_task=current_task,
                domain=config.domain,
                resources=resources,
                deployed_at=now,
                last_heartbeat=now,
            )
            self._write(subagent)
            self._subagents[subagent.subagent_id] = subagent
            self.state.add_subagent(subagent)

        logger.info(
            "Subagent deployed: id=%s type=%s name=%s",
            subagent.subagent_id,
            subagent.subagent_type.value,
            subagent.name,
        )
        return copy.deepcopy(subagent)

    def allocate(self, task: Task) -> SubagentInfo:
        """Claim an idle subagent for ``task`` or deploy a new one.

        Raises ``CapacityExceeded`` when none is idle and the pool is full.
        """

        with self._lock:
            self._ensure_loaded()
            for subagent in self._subagents.values():
                if subagent.status != SubagentStatus.IDLE:
                    continue
                claimed = copy.deepcopy(subagent)
                claimed.status = SubagentStatus.ACTIVE
                claimed.current_task = task.task_id
                claimed.last_heartbeat = self._clock()
                self._write(claimed)
                self._subagents[claimed.subagent_id] = claimed
                self.state.update_subagent(
                    claimed.subagent_id,
                    status=claimed.status,
                    current_task=claimed.current_task,
                    last_heartbeat=claimed.last_heartbeat,
                )
                logger.debug("Subagent %s claimed for task %s", claimed.subagent_id, task.task_id)
                return copy.deepcopy(claimed)

            return self.create(
                SubagentConfig(
                    name=f"worker-{len(self._subagents) + 1}-{uuid4().hex[:6]}",
                    subagent_type=SubagentType.WORKER,
                ),
                current_task=task.task_id,
            )

    def release(self, subagent_id: str) -> None:
        """Return a subagent to ``idle``. Unknown ids are ignored."""

        with self._lock:
            self._ensure_loaded()
            subagent = self._subagents.get(subagent_id)
            if subagent is None:
                return
            if subagent.status == SubagentStatus.IDLE and subagent.current_task is None:
                return
            released = copy.deepcopy(subagent)
            released.status = SubagentStatus.IDLE
            released.current_task = None
            self._write(released)
            self._subagents[subagent_id] = released
            self.state.update_subagent(subagent_id, status=released.status, current_task=None)
        logger.debug("Subagent %s released", subagent_id)

    def heartbeat(self, subagent_id: str) -> SubagentInfo:
        """Record liveness; a subagent in ``error`` comes back as ``active``."""

        with self._lock:
            self._ensure_loaded()
            subagent = self._subagents.get(subagent_id)
            if subagent is None:
                raise NotFound("Subagent", subagent_id)
            updated = copy.deepcopy(subagent)
            updated.last_heartbeat = self._clock()
            if updated.status == SubagentStatus.ERROR:
                updated.status = SubagentStatus.ACTIVE
                logger.info("Subagent %s recovered after heartbeat", subagent_id)
            self._write(updated)
            self._subagents[subagent_id] = updated
            self.state.update_subagent(
                subagent_id,
                status=updated.status,
                last_heartbeat=updated.last_heartbeat,
            )
            return copy.deepcopy(updated)

    def health_check(self) -> list[str]:
        """Mark stale non-idle subagents as ``error``; returns the ids newly marked."""

        marked: list[str] = []
        with self._lock:
            self._ensure_loaded()
            now = self._clock()
            for subagent_id, subagent in list(self._subagents.items()):
                if subagent.status in {SubagentStatus.IDLE, SubagentStatus.ERROR}:
                    continue
                if now - subagent.last_heartbeat <= self.heartbeat_timeout:
                    continue
                stale = copy.deepcopy(subagent)
                stale.status = SubagentStatus.ERROR
                self._write(stale)
                self._subagents[subagent_id] = stale
                self.state.update_subagent(subagent_id, status=SubagentStatus.ERROR)
                marked.append(subagent_id)

        for subagent_id in marked:
            logger.warning(
                "Subagent %s missed heartbeats for more than %ds; marked error",
                subagent_id,
                int(self.heartbeat_timeout.total_seconds()),
            )
        return marked

    def list(self) -> list[SubagentInfo]:
        with self._lock:
            self._ensure_loaded()
            return self._snapshot()

    def get(self, subagent_id: str) -> SubagentInfo | None:
        with self._lock:
            self._ensure_loaded()
            subagent = self._subagents.get(subagent_id)
            return copy.deepcopy(subagent) if subagent is not None else None

    def remove(self, subagent_id: str) -> None:
        """Explicit operator deletion."""

        with self._lock:
            self._ensure_loaded()
            if subagent_id not in self._subagents:
                raise NotFound("Subagent", subagent_id)
            with self.database.session() as session:
                row = session.get(SubagentRow, (self.instance_id, subagent_id))
                if row is not None:
                    session.delete(row)
                    session.commit()
            del self._subagents[subagent_id]
            self.state.remove_subagent(subagent_id)
        logger.info("Subagent %s removed", subagent_id)

    def restore(self, subagents: list[SubagentInfo]) -> None:
        """Replace the whole registry from a state backup.

        The state mirror is left to the caller, which imports it alongside.
        """

        with self._lock:
            with self.database.session() as session:
                session.exec(
                    sa_delete(SubagentRow).where(col(SubagentRow.instance_id) == self.instance_id),
                )
                session.commit()
            self._subagents = {}
            for subagent in subagents:
                self._write(subagent)
                self._subagents[subagent.subagent_id] = copy.deepcopy(subagent)
            self._loaded = True
        logger.info("Subagent registry restored with %d subagent(s)", len(subagents))

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def _snapshot(self) -> list[SubagentInfo]:
        return [copy.deepcopy(subagent) for subagent in self._subagents.values()]

    def _write(self, subagent: SubagentInfo) -> None:
        with self.database.session() as session:
            row = session.get(SubagentRow, (self.instance_id, subagent.subagent_id))
            if row is None:
                row = SubagentRow(
                    instance_id=self.instance_id,
                    subagent_id=subagent.subagent_id,
                    subagent_type=subagent.subagent_type.value,
                    name=subagent.name,
                    status=subagent.status.value,
                    deployed_at=to_db_datetime(subagent.deployed_at),
                    last_heartbeat=to_db_datetime(subagent.last_heartbeat),
                )
            row.name = subagent.name
            row.status = subagent.status.value
            row.current_task = subagent.current_task
            row.domain = subagent.domain
            row.resources_json = dump_json(asdict(subagent.resources))
            row.last_heartbeat = to_db_datetime(subagent.last_heartbeat)
            session.add(row)
            session.commit()


def _to_info(row: SubagentRow) -> SubagentInfo:
    return SubagentInfo(
        subagent_id=row.subagent_id,
        subagent_type=SubagentType(row.subagent_type),
        name=row.name,
        status=SubagentStatus(row.status),
        current_task=row.current_task,
        domain=row.domain,
        resources=SubagentResources(**load_json(row.resources_json, default={})),
        deployed_at=to_utc_aware_datetime(row.deployed_at),
        last_heartbeat=to_utc_aware_datetime(row.last_heartbeat),
    )
