from __future__ import annotations

import allure
import pytest
from fakes import FakeClock

from master_control.orchestrator.errors import CapacityExceeded, NotFound
from master_control.orchestrator.models import (
    SubagentConfig,
    SubagentStatus,
    SubagentType,
    TaskCreate,
)
from master_control.orchestrator.state import StateStore
from master_control.orchestrator.subagents import SubagentAllocator
from master_control.orchestrator.task_store import TaskStore
from master_control.storage.database import Database

pytestmark = [
    allure.epic("Subagent Pool"),
    allure.feature("Capacity & Liveness"),
]


def test_allocate_respects_pool_capacity_and_reuses_released_subagents(
    allocator: SubagentAllocator,
    task_store: TaskStore,
    state: StateStore,
) -> None:
    assert state.get_state().config.max_subagents == 50
    task = task_store.enqueue(TaskCreate(task_type="complex"))

    allocated = [allocator.allocate(task) for _ in range(50)]

    with pytest.raises(CapacityExceeded):
        allocator.allocate(task)

    allocator.release(allocated[0].subagent_id)
    reused = allocator.allocate(task)

    assert reused.subagent_id == allocated[0].subagent_id
    assert reused.status == SubagentStatus.ACTIVE
    assert len(allocator.list()) == 50


def test_create_uses_configured_resource_defaults(
    allocator: SubagentAllocator,
    state: StateStore,
) -> None:
    subagent = allocator.create(
        SubagentConfig(name="dns-specialist", subagent_type=SubagentType.SPECIALIST, domain="dns"),
    )

    assert subagent.status == SubagentStatus.ACTIVE
    assert subagent.resources.memory_mb == 128
    assert subagent.resources.timeout_ms == 30_000
    mirrored = state.get_state().subagents
    assert [item.subagent_id for item in mirrored] == [subagent.subagent_id]
    assert state.get_state().metrics.subagents_active == 1


def test_release_is_idempotent_and_ignores_unknown_ids(
    allocator: SubagentAllocator,
    task_store: TaskStore,
) -> None:
    task = task_store.enqueue(TaskCreate(task_type="complex"))
    subagent = allocator.allocate(task)

    allocator.release(subagent.subagent_id)
    allocator.release(subagent.subagent_id)
    allocator.release("unknown")

    released = allocator.get(subagent.subagent_id)
    assert released is not None
    assert released.status == SubagentStatus.IDLE
    assert released.current_task is None


def test_health_check_marks_stale_subagents_and_heartbeat_restores(
    allocator: SubagentAllocator,
    task_store: TaskStore,
    clock: FakeClock,
) -> None:
    task = task_store.enqueue(TaskCreate(task_type="complex"))
    busy = allocator.allocate(task)
    idle = allocator.allocate(task)
    allocator.release(idle.subagent_id)

    clock.advance(seconds=301)
    marked = allocator.health_check()

    assert marked == [busy.subagent_id]
    stale = allocator.get(busy.subagent_id)
    assert stale is not None
    assert stale.status == SubagentStatus.ERROR
    assert stale.current_task == task.task_id
    assert allocator.health_check() == []

    recovered = allocator.heartbeat(busy.subagent_id)

    assert recovered.status == SubagentStatus.ACTIVE
    assert recovered.current_task == task.task_id
    assert recovered.last_heartbeat == clock()


def test_health_check_keeps_fresh_subagents(
    allocator: SubagentAllocator,
    task_store: TaskStore,
    clock: FakeClock,
) -> None:
    task = task_store.enqueue(TaskCreate(task_type="complex"))
    subagent = allocator.allocate(task)

    clock.advance(seconds=300)

    assert allocator.health_check() == []
    assert allocator.get(subagent.subagent_id).status == SubagentStatus.ACTIVE


def test_heartbeat_and_remove_unknown_raise_not_found(allocator: SubagentAllocator) -> None:
    with pytest.raises(NotFound):
        allocator.heartbeat("ghost")
    with pytest.raises(NotFound):
        allocator.remove("ghost")


def test_registry_survives_reload(
    database: Database,
    allocator: SubagentAllocator,
    task_store: TaskStore,
    clock: FakeClock,
) -> None:
    task = task_store.enqueue(TaskCreate(task_type="complex"))
    subagent = allocator.allocate(task)

    reloaded_state = StateStore(database, clock=clock)
    reloaded = SubagentAllocator(database, state=reloaded_state, clock=clock)

    restored = reloaded.get(subagent.subagent_id)
    assert restored is not None
    assert restored.current_task == task.task_id
    assert restored.deployed_at == subagent.deployed_at


def test_remove_deletes_from_registry_and_state(
    allocator: SubagentAllocator,
    state: StateStore,
) -> None:
    subagent = allocator.create(SubagentConfig(name="temp"))

    allocator.remove(subagent.subagent_id)

    assert allocator.get(subagent.subagent_id) is None
    assert state.get_state().subagents == []
