from __future__ import annotations

import allure
import pytest
from fakes import FakeClock

from master_control.orchestrator.errors import NotFound, ValidationError
from master_control.orchestrator.models import TaskCreate, TaskStatus
from master_control.orchestrator.retry import DeadLetterStore, RetryManager
from master_control.orchestrator.task_store import TaskStore
from master_control.storage.database import Database

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Priority & Lifecycle"),
]


@pytest.mark.parametrize("high_first", [True, False])
def test_get_pending_returns_highest_priority_first(task_store: TaskStore, high_first: bool) -> None:
    specs = [("high", 9), ("low", 3)]
    if not high_first:
        specs.reverse()
    for task_id, priority in specs:
        task_store.enqueue(TaskCreate(task_type="simple", priority=priority, task_id=task_id))

    pending = task_store.get_pending(1)

    assert [task.task_id for task in pending] == ["high"]


def test_get_pending_is_fifo_for_equal_priority(task_store: TaskStore) -> None:
    task_store.enqueue(TaskCreate(task_type="simple", priority=5, task_id="x"))
    task_store.enqueue(TaskCreate(task_type="simple", priority=5, task_id="y"))

    assert [task.task_id for task in task_store.get_pending(2)] == ["x", "y"]


def test_get_pending_with_non_positive_limit_is_empty(task_store: TaskStore) -> None:
    task_store.enqueue(TaskCreate(task_type="simple"))

    assert task_store.get_pending(0) == []
    assert task_store.get_pending(-3) == []


def test_enqueue_defaults(task_store: TaskStore, clock: FakeClock) -> None:
    task = task_store.enqueue(TaskCreate(task_type="simple", description="say hi"))

    assert task.status == TaskStatus.PENDING
    assert task.retry_count == 0
    assert task.max_retries == 3
    assert task.priority == 5
    assert task.created_at == clock()
    assert task.started_at is None


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        (TaskCreate(task_type=""), "task_type"),
        (TaskCreate(task_type="simple", priority=0), "priority"),
        (TaskCreate(task_type="simple", priority=11), "priority"),
        (TaskCreate(task_type="simple", max_retries=-1), "max_retries"),
        (TaskCreate(task_type="simple", task_id="a", dependencies=("a",)), "itself"),
    ],
)
def test_enqueue_rejects_malformed_tasks(
    task_store: TaskStore,
    payload: TaskCreate,
    message: str,
) -> None:
    with pytest.raises(ValidationError, match=message):
        task_store.enqueue(payload)


def test_enqueue_rejects_duplicate_task_id(task_store: TaskStore) -> None:
    task_store.enqueue(TaskCreate(task_type="simple", task_id="dup"))

    with pytest.raises(ValidationError, match="already exists"):
        task_store.enqueue(TaskCreate(task_type="simple", task_id="dup"))


def test_update_status_stamps_timestamps_once(task_store: TaskStore, clock: FakeClock) -> None:
    task = task_store.enqueue(TaskCreate(task_type="simple"))
    clock.advance(seconds=10)
    started = task_store.start(task.task_id)
    clock.advance(seconds=20)
    completed = task_store.complete(task.task_id, {"answer": 42})

    assert started.started_at == task.created_at.replace(second=10)
    assert completed.started_at == started.started_at
    assert completed.completed_at == clock()
    assert completed.result == {"answer": 42}
    assert completed.status == TaskStatus.COMPLETED


def test_update_status_rejects_illegal_transitions(task_store: TaskStore) -> None:
    task = task_store.enqueue(TaskCreate(task_type="simple"))

    with pytest.raises(ValidationError, match="cannot move from pending to completed"):
        task_store.update_status(task.task_id, TaskStatus.COMPLETED)

    task_store.start(task.task_id)
    task_store.complete(task.task_id)
    with pytest.raises(ValidationError):
        task_store.update_status(task.task_id, TaskStatus.PENDING)


def test_pending_task_cannot_be_failed_directly(
    task_store: TaskStore,
    dead_letters: DeadLetterStore,
) -> None:
    task = task_store.enqueue(TaskCreate(task_type="simple"))

    with pytest.raises(ValidationError, match="cannot move from pending to failed"):
        task_store.update_status(task.task_id, TaskStatus.FAILED, error="boom")

    assert task_store.get_by_id(task.task_id).status == TaskStatus.PENDING
    assert dead_letters.list() == []


def test_requeue_returns_started_task_to_pending_untouched(
    task_store: TaskStore,
    clock: FakeClock,
) -> None:
    task = task_store.enqueue(TaskCreate(task_type="simple", max_retries=1))
    clock.advance(seconds=5)
    task_store.start(task.task_id)

    requeued = task_store.requeue(task.task_id)

    assert requeued.status == TaskStatus.PENDING
    assert requeued.started_at is None
    assert requeued.retry_count == 0
    assert [pending.task_id for pending in task_store.get_pending(10)] == [task.task_id]


def test_update_status_unknown_task_raises_not_found(task_store: TaskStore) -> None:
    with pytest.raises(NotFound, match="Task not found: missing"):
        task_store.update_status("missing", TaskStatus.IN_PROGRESS)


def test_dependencies_gate_until_completed(task_store: TaskStore) -> None:
    parent = task_store.enqueue(TaskCreate(task_type="simple", task_id="parent"))
    child = task_store.enqueue(
        TaskCreate(task_type="simple", task_id="child", dependencies=("parent", "ghost")),
    )

    assert task_store.unsatisfied_dependencies(child) == ("parent", "ghost")

    task_store.start(parent.task_id)
    task_store.complete(parent.task_id)

    assert task_store.unsatisfied_dependencies(child) == ("ghost",)
    assert not task_store.are_dependencies_satisfied(child)


def test_cleanup_removes_only_old_finished_tasks(
    task_store: TaskStore,
    retry_manager: RetryManager,
    clock: FakeClock,
) -> None:
    old_done = task_store.enqueue(TaskCreate(task_type="simple", task_id="old-done"))
    task_store.start(old_done.task_id)
    task_store.complete(old_done.task_id)
    old_dead = task_store.enqueue(TaskCreate(task_type="simple", task_id="old-dead", max_retries=0))
    retry_manager.fail(old_dead.task_id, "boom")
    task_store.enqueue(TaskCreate(task_type="simple", task_id="old-pending"))

    clock.advance(days=8)
    recent = task_store.enqueue(TaskCreate(task_type="simple", task_id="recent-done"))
    task_store.start(recent.task_id)
    task_store.complete(recent.task_id)

    removed = task_store.cleanup(7)

    assert removed == 1
    assert task_store.get_by_id("old-done") is None
    assert task_store.get_by_id("old-dead") is not None
    assert task_store.get_by_id("old-pending") is not None
    assert task_store.get_by_id("recent-done") is not None


def test_cleanup_rejects_negative_retention(task_store: TaskStore) -> None:
    with pytest.raises(ValidationError):
        task_store.cleanup(-1)


def test_get_stats_counts_statuses_and_average_duration(
    task_store: TaskStore,
    retry_manager: RetryManager,
    clock: FakeClock,
) -> None:
    done = task_store.enqueue(TaskCreate(task_type="simple"))
    task_store.start(done.task_id)
    clock.advance(seconds=30)
    task_store.complete(done.task_id)
    dead = task_store.enqueue(TaskCreate(task_type="simple", max_retries=0))
    retry_manager.fail(dead.task_id, "boom")
    task_store.enqueue(TaskCreate(task_type="simple"))

    stats = task_store.get_stats()

    assert stats.pending == 1
    assert stats.completed == 1
    assert stats.failed == 1
    assert stats.dead_lettered == 1
    assert stats.total == 3
    assert stats.avg_duration_seconds == pytest.approx(15.0)


def test_instances_do_not_see_each_other(database: Database, clock: FakeClock) -> None:
    other = Database(database.db_path, instance_id="other")
    try:
        mine = TaskStore(database, clock=clock)
        theirs = TaskStore(other, clock=clock)
        mine.enqueue(TaskCreate(task_type="simple", task_id="mine"))

        assert theirs.get_pending(10) == []
        assert theirs.get_by_id("mine") is None
    finally:
        other.close()


def test_instances_may_reuse_task_ids(database: Database, clock: FakeClock) -> None:
    other = Database(database.db_path, instance_id="other")
    try:
        mine = TaskStore(database, clock=clock)
        theirs = TaskStore(other, clock=clock)
        mine.enqueue(TaskCreate(task_type="simple", task_id="shared", description="mine"))
        theirs.enqueue(TaskCreate(task_type="simple", task_id="shared", description="theirs"))

        theirs.start("shared")
        RetryManager(other, clock=clock).fail("shared", "boom")

        assert mine.get_by_id("shared").description == "mine"
        assert mine.get_by_id("shared").status == TaskStatus.PENDING
        assert theirs.get_by_id("shared").description == "theirs"
        assert theirs.get_by_id("shared").retry_count == 1
    finally:
        other.close()
