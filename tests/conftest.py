"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest
from fakes import FakeClock

from master_control.orchestrator.retry import DeadLetterStore, RetryManager
from master_control.orchestrator.state import StateStore
from master_control.orchestrator.subagents import SubagentAllocator
from master_control.orchestrator.task_store import TaskStore
from master_control.storage.database import Database


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 5, 9, 0, tzinfo=UTC))


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "master_control.db"


@pytest.fixture()
def database(db_path: Path) -> Iterator[Database]:
    database = Database(db_path)
    database.init_schema()
    yield database
    database.close()


@pytest.fixture()
def task_store(database: Database, clock: FakeClock) -> TaskStore:
    return TaskStore(database, clock=clock)


@pytest.fixture()
def retry_manager(database: Database, clock: FakeClock) -> RetryManager:
    return RetryManager(database, clock=clock)


@pytest.fixture()
def dead_letters(database: Database, task_store: TaskStore, clock: FakeClock) -> DeadLetterStore:
    return DeadLetterStore(database, task_store=task_store, clock=clock)


@pytest.fixture()
def state(database: Database, clock: FakeClock) -> StateStore:
    return StateStore(database, clock=clock)


@pytest.fixture()
def allocator(database: Database, state: StateStore, clock: FakeClock) -> SubagentAllocator:
    return SubagentAllocator(database, state=state, heartbeat_timeout_seconds=300, clock=clock)
