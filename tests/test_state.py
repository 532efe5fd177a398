from __future__ import annotations

import allure
import pytest
from fakes import FakeClock

from master_control.orchestrator.errors import PersistenceError, ValidationError
from master_control.orchestrator.models import AgentConfig, SubagentResources
from master_control.orchestrator.state import StateStore
from master_control.storage.database import Database

pytestmark = [
    allure.epic("Agent State"),
    allure.feature("Write-through Persistence"),
]


def test_first_load_persists_defaults(database: Database, clock: FakeClock) -> None:
    store = StateStore(database, defaults=AgentConfig(max_concurrent_tasks=4), clock=clock)

    assert store.load().config.max_concurrent_tasks == 4

    reopened = StateStore(database, defaults=AgentConfig(max_concurrent_tasks=99), clock=clock)
    assert reopened.load().config.max_concurrent_tasks == 4


def test_mutations_are_durable(database: Database, state: StateStore, clock: FakeClock) -> None:
    state.update_config(max_subagents=3)
    state.update_integration_status("docker", True)
    state.increment_completed()
    state.update_knowledge_stats(entries=12, last_backup=clock())

    reopened = StateStore(database, clock=clock).load()

    assert reopened.config.max_subagents == 3
    assert reopened.integration_status.docker is True
    assert reopened.metrics.tasks_completed == 1
    assert reopened.knowledge_base.entries == 12
    assert reopened.knowledge_base.last_backup == clock()


def test_failed_and_active_counters_are_independent(state: StateStore) -> None:
    state.adjust_active_tasks(+2)
    state.increment_failed()
    state.adjust_active_tasks(-1)

    metrics = state.get_state().metrics
    assert metrics.tasks_active == 1
    assert metrics.tasks_failed == 1


def test_active_counter_clamps_at_zero(state: StateStore) -> None:
    assert state.adjust_active_tasks(-1) == 0

    with pytest.raises(ValidationError):
        state.set_active_tasks(-1)


def test_readers_get_copies(state: StateStore) -> None:
    snapshot = state.get_state()
    snapshot.metrics.tasks_completed = 100
    snapshot.config.max_subagents = 1

    fresh = state.get_state()
    assert fresh.metrics.tasks_completed == 0
    assert fresh.config.max_subagents == 50


def test_update_config_coerces_values_to_declared_types(
    database: Database,
    state: StateStore,
    clock: FakeClock,
) -> None:
    config = state.update_config(
        max_concurrent_tasks="5",
        subagent_defaults={"memory_mb": 256},
    )

    assert config.max_concurrent_tasks == 5
    assert isinstance(config.subagent_defaults, SubagentResources)
    assert config.subagent_defaults.memory_mb == 256
    assert config.subagent_defaults.cpu == 1

    reopened = StateStore(database, clock=clock).load().config
    assert reopened.max_concurrent_tasks == 5
    assert reopened.subagent_defaults == SubagentResources(memory_mb=256)


def test_rejected_config_change_keeps_previous_values(state: StateStore) -> None:
    state.update_config(max_subagents=3)

    with pytest.raises(ValidationError):
        state.update_config(max_subagents=4, max_concurrent_tasks="lots")

    config = state.get_state().config
    assert config.max_subagents == 3
    assert config.max_concurrent_tasks == 10


@pytest.mark.parametrize(
    ("call", "message"),
    [
        (lambda store: store.update(unknown=1), "Unknown state fields"),
        (lambda store: store.update_config(max_concurrent_tasks=0), "max_concurrent_tasks"),
        (lambda store: store.update_config(max_concurrent_tasks="many"), "must be an integer"),
        (lambda store: store.update_config(autonomous_mode="yes"), "must be a boolean"),
        (lambda store: store.update_config(subagent_defaults={"gpu": 1}), "gpu"),
        (lambda store: store.update(config={"max_subagents": -2}), "must be >= 1"),
        (lambda store: store.update_integration_status("slack", True), "Unknown integration"),
        (lambda store: store.update_metrics(tasks_lost=1), "Unknown metric fields"),
    ],
)
def test_invalid_mutations_are_rejected(state: StateStore, call, message: str) -> None:
    with pytest.raises(ValidationError, match=message):
        call(state)


def test_persistence_failure_leaves_cached_state_unchanged(
    state: StateStore,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    state.increment_completed()

    def _broken_write(_state) -> None:
        raise PersistenceError("disk full")

    monkeypatch.setattr(state, "_write", _broken_write)
    with pytest.raises(PersistenceError):
        state.increment_completed()

    assert state.get_state().metrics.tasks_completed == 1


def test_export_import_round_trip(database: Database, state: StateStore, clock: FakeClock) -> None:
    state.update_config(max_concurrent_tasks=2)
    state.update_integration_status("mcp_hub", True)
    backup = state.export()

    other = StateStore(Database(database.db_path, instance_id="restore"), clock=clock)
    other.import_state(backup)

    restored = other.get_state()
    assert restored.config.max_concurrent_tasks == 2
    assert restored.integration_status.mcp_hub is True
    other.database.close()
