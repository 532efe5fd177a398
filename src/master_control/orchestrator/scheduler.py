"""Autonomous control loop: pull, classify, gate, allocate, dispatch, record."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from master_control.orchestrator.audit import AuditSink, LoggingAuditSink
from master_control.orchestrator.decisions import (
    Decision,
    DecisionContext,
    validate_decision,
)
from master_control.orchestrator.dispatcher import (
    CapabilityRegistry,
    Dispatcher,
    HandlerContext,
)
from master_control.orchestrator.errors import (
    CapacityExceeded,
    DependencyNotSatisfied,
    HandlerError,
    MasterControlError,
    OracleUnavailable,
    ValidationError,
)
from master_control.orchestrator.models import SubagentInfo, SubagentStatus, Task
from master_control.orchestrator.oracle import DecisionOracle
from master_control.orchestrator.retry import RetryManager
from master_control.orchestrator.state import StateStore
from master_control.orchestrator.subagents import SubagentAllocator
from master_control.orchestrator.task_store import TaskStore
from master_control.storage.common import utc_now

logger = logging.getLogger(__name__)

DEADLINE_EXCEEDED_ERROR = "deadline exceeded"
COMPLEX_TASK_TYPE = "complex"
DEFAULT_CLEANUP_INTERVAL_SECONDS = 24 * 60 * 60


@dataclass(slots=True)
class TickSummary:
    """Per-tick counters for CLI reporting."""

    considered: int = 0
    dispatched: int = 0
    blocked_dependencies: int = 0
    deferred_capacity: int = 0
    oracle_failures: int = 0
    rejected: int = 0
    errors: int = 0
    deadline_expired: int = 0
    subagents_marked_error: int = 0


@dataclass(slots=True)
class _InFlight:
    task_id: str
    subagent_id: str | None
    future: Future[None] | None = None
    finishing: bool = False
    abandoned: bool = False


class AutonomousScheduler:
    """Drives one agent instance.

    The tick itself is single-threaded. Handlers run on a thread pool and
    report back through ``_finish``; the in-flight table decides whether the
    completion or the deadline sweep owns a task's outcome.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        task_store: TaskStore,
        retry_manager: RetryManager,
        allocator: SubagentAllocator,
        state: StateStore,
        oracle: DecisionOracle,
        dispatcher: Dispatcher,
        capabilities: CapabilityRegistry,
        audit: AuditSink | None = None,
        oracle_timeout_seconds: float = 30.0,
        task_deadline_seconds: int = 1800,
        subagent_priority_threshold: int = 7,
        retention_days: int | None = None,
        cleanup_interval_seconds: int = DEFAULT_CLEANUP_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.task_store = task_store
        self.retry_manager = retry_manager
        self.allocator = allocator
        self.state = state
        self.oracle = oracle
        self.dispatcher = dispatcher
        self.capabilities = capabilities
        self.audit = audit or LoggingAuditSink()
        self.oracle_timeout_seconds = oracle_timeout_seconds
        self.task_deadline_seconds = task_deadline_seconds
        self.subagent_priority_threshold = subagent_priority_threshold
        self.retention_days = retention_days
        self.cleanup_interval = timedelta(seconds=cleanup_interval_seconds)
        self._clock = clock
        self._handler_executor: ThreadPoolExecutor | None = None
        self._in_flight: dict[str, _InFlight] = {}
        self._in_flight_changed = threading.Condition()
        self._stop_event = threading.Event()
        self._stop_signal_name: str | None = None
        self._started = False
        self._last_cleanup: datetime | None = None

    def start(self) -> int:
        """Reconcile counters with storage; returns the in_progress task count."""

        self.allocator.load()
        in_progress = self.task_store.count_in_progress()
        self.state.set_active_tasks(in_progress)
        self._started = True
        logger.info(
            "Scheduler started for instance %s (%d task(s) in progress)",
            self.task_store.instance_id,
            in_progress,
        )
        return in_progress

    def tick(self) -> TickSummary:
        """Run one scheduling pass. Errors are counted and logged, never raised."""

        summary = TickSummary()
        if not self._started:
            try:
                self.start()
            except Exception:  # noqa: BLE001
                summary.errors += 1
                logger.exception("Scheduler start failed; retrying on the next tick")
                return summary
        try:
            summary.deadline_expired = self._sweep_deadlines()
        except Exception:  # noqa: BLE001
            summary.errors += 1
            logger.exception("Deadline sweep failed; retrying on the next tick")
        try:
            self._dispatch_pending(summary)
        except Exception:  # noqa: BLE001
            summary.errors += 1
            logger.exception("Dispatch phase failed; retrying on the next tick")
        try:
            self._run_health_check(summary)
        except Exception:  # noqa: BLE001
            summary.errors += 1
            logger.exception("Health check phase failed; retrying on the next tick")
        logger.info(
            "Tick done: considered=%d dispatched=%d blocked=%d deferred=%d "
            "oracle_failures=%d rejected=%d errors=%d expired=%d",
            summary.considered,
            summary.dispatched,
            summary.blocked_dependencies,
            summary.deferred_capacity,
            summary.oracle_failures,
            summary.rejected,
            summary.errors,
            summary.deadline_expired,
        )
        return summary

    def run_forever(self, interval_seconds: float, *, max_ticks: int | None = None) -> int:
        """Tick every ``interval_seconds`` until stopped; returns the tick count."""

        if not self.state.get_state().config.autonomous_mode:
            logger.warning("Autonomous mode is disabled; scheduler loop not started")
            return 0

        ticks = 0
        with self._signal_handlers():
            while not self._stop_event.is_set():
                self.tick()
                ticks += 1
                try:
                    self._maybe_cleanup()
                except Exception:  # noqa: BLE001
                    logger.exception("Task cleanup failed")
                if max_ticks is not None and ticks >= max_ticks:
                    break
                self._sleep_with_stop(interval_seconds)
        if self._stop_signal_name:
            logger.info("Scheduler stopped by %s after %d tick(s)", self._stop_signal_name, ticks)
        return ticks

    def stop(self) -> None:
        self._stop_event.set()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no handler is in flight; ``False`` on timeout."""

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._in_flight_changed:
            while self._in_flight:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._in_flight_changed.wait(remaining)
        return True

    def in_flight(self) -> list[str]:
        with self._in_flight_changed:
            return list(self._in_flight)

    def shutdown(self, *, wait: bool = True) -> None:
        self.stop()
        if self._handler_executor is not None:
            self._handler_executor.shutdown(wait=wait, cancel_futures=not wait)
            self._handler_executor = None

    def needs_subagent(self, task: Task) -> bool:
        return (
            task.task_type == COMPLEX_TASK_TYPE or task.priority > self.subagent_priority_threshold
        )

    def _dispatch_pending(self, summary: TickSummary) -> None:
        state = self.state.get_state()
        capacity = state.config.max_concurrent_tasks - state.metrics.tasks_active
        if capacity <= 0:
            logger.debug(
                "No dispatch capacity (%d/%d active)",
                state.metrics.tasks_active,
                state.config.max_concurrent_tasks,
            )
            return

        capabilities = self.capabilities.list()
        for task in self.task_store.get_pending(capacity):
            if self._stop_event.is_set():
                break
            summary.considered += 1
            try:
                self._process_task(task, capabilities=capabilities, summary=summary)
            except DependencyNotSatisfied as error:
                summary.blocked_dependencies += 1
                logger.debug("%s", error)
            except CapacityExceeded as error:
                summary.deferred_capacity += 1
                logger.info("Task %s deferred: %s", task.task_id, error)
            except OracleUnavailable as error:
                summary.oracle_failures += 1
                logger.warning("Task %s left pending: %s", task.task_id, error)
            except MasterControlError:
                summary.errors += 1
                logger.exception("Task %s left pending after an error", task.task_id)
            except Exception:  # noqa: BLE001
                summary.errors += 1
                logger.exception("Unexpected error while scheduling task %s", task.task_id)

    def _process_task(
        self,
        task: Task,
        *,
        capabilities: set[str],
        summary: TickSummary,
    ) -> None:
        missing = self.task_store.unsatisfied_dependencies(task)
        if missing:
            raise DependencyNotSatisfied(task.task_id, missing)

        decision = self._classify(task, self._decision_context(capabilities))
        verdict = validate_decision(decision, capabilities=capabilities)
        if not verdict.valid:
            summary.rejected += 1
            logger.warning(
                "Decision for task %s rejected: %s",
                task.task_id,
                "; ".join(verdict.reasons),
            )
            self.audit.record(
                "warn",
                "Decision rejected",
                {
                    "task_id": task.task_id,
                    "decision": decision.to_dict(),
                    "reasons": list(verdict.reasons),
                },
            )
            return

        subagent = self.allocator.allocate(task) if self.needs_subagent(task) else None
        try:
            started = self.task_store.start(task.task_id)
        except MasterControlError:
            if subagent is not None:
                self.allocator.release(subagent.subagent_id)
            raise
        counted = False
        try:
            self.state.adjust_active_tasks(+1)
            counted = True
            self._submit(started, decision, subagent)
        except Exception as error:  # noqa: BLE001
            self._undo_start(task.task_id, subagent, counted=counted)
            raise MasterControlError(
                f"Task {task.task_id} could not be handed to a handler: {error}",
            ) from error
        summary.dispatched += 1
        self.audit.record(
            "info",
            "Task dispatched",
            {
                "task_id": task.task_id,
                "category": decision.category.value,
                "action": decision.action,
                "subagent_id": subagent.subagent_id if subagent else None,
            },
        )

    def _decision_context(self, capabilities: set[str]) -> DecisionContext:
        state = self.state.get_state()
        recent = self.task_store.get_recent(limit=10)
        return DecisionContext(
            active_tasks=state.metrics.tasks_active,
            available_subagents=sum(
                1 for subagent in state.subagents if subagent.status == SubagentStatus.IDLE
            ),
            integration_status={
                name: bool(getattr(state.integration_status, name))
                for name in type(state.integration_status).__dataclass_fields__
            },
            capabilities=tuple(sorted(capabilities)),
            recent_activity=[
                {"task_id": item.task_id, "task_type": item.task_type, "status": item.status.value}
                for item in recent
            ],
        )

    def _classify(self, task: Task, context: DecisionContext) -> Decision:
        future = self._call_oracle(task, context)
        try:
            return future.result(timeout=self.oracle_timeout_seconds)
        except FutureTimeoutError as error:
            raise OracleUnavailable(
                f"Oracle did not answer within {self.oracle_timeout_seconds:g}s "
                f"for task {task.task_id}",
            ) from error
        except OracleUnavailable:
            raise
        except ValidationError as error:
            raise OracleUnavailable(f"Oracle returned an invalid decision: {error}") from error
        except Exception as error:  # noqa: BLE001
            raise OracleUnavailable(f"Oracle failed for task {task.task_id}: {error}") from error

    def _call_oracle(self, task: Task, context: DecisionContext) -> Future[Decision]:
        """Classify on a daemon thread of its own.

        A call that outlives the timeout keeps running on its own thread; later
        calls never queue behind it.
        """

        future: Future[Decision] = Future()
        future.set_running_or_notify_cancel()

        def _run() -> None:
            try:
                future.set_result(self.oracle.classify(task, context))
            except Exception as error:  # noqa: BLE001
                future.set_exception(error)

        threading.Thread(
            target=_run,
            name=f"master-control-oracle-{task.task_id[:8]}",
            daemon=True,
        ).start()
        return future

    def _submit(self, task: Task, decision: Decision, subagent: SubagentInfo | None) -> None:
        entry = _InFlight(
            task_id=task.task_id,
            subagent_id=subagent.subagent_id if subagent else None,
        )
        with self._in_flight_changed:
            self._in_flight[task.task_id] = entry
        try:
            entry.future = self._handler_pool().submit(
                self._run_handler,
                entry,
                task,
                decision,
                subagent,
            )
        except RuntimeError:
            with self._in_flight_changed:
                self._in_flight.pop(task.task_id, None)
                self._in_flight_changed.notify_all()
            raise

    def _undo_start(self, task_id: str, subagent: SubagentInfo | None, *, counted: bool) -> None:
        """Put a started task back to pending when no handler got it."""

        try:
            self.task_store.requeue(task_id)
        except MasterControlError:
            logger.exception("Task %s stays in progress until the deadline sweep", task_id)
        try:
            if subagent is not None:
                self.allocator.release(subagent.subagent_id)
            if counted:
                self.state.adjust_active_tasks(-1)
        except MasterControlError:
            logger.exception("Failed to roll back counters for task %s", task_id)

    def _run_handler(
        self,
        entry: _InFlight,
        task: Task,
        decision: Decision,
        subagent: SubagentInfo | None,
    ) -> None:
        try:
            result = self.dispatcher.dispatch(
                decision,
                HandlerContext(task=task, subagent=subagent),
            )
        except HandlerError as error:
            self._finish(entry, error=str(error))
        else:
            self._finish(entry, result=result)

    def _finish(self, entry: _InFlight, *, result: Any = None, error: str | None = None) -> None:
        with self._in_flight_changed:
            if entry.abandoned:
                logger.info("Ignoring late completion of task %s", entry.task_id)
                return
            entry.finishing = True

        completed = False
        dead_lettered = False
        try:
            if error is None:
                try:
                    self.task_store.complete(entry.task_id, result)
                    completed = True
                except (TypeError, ValueError) as serialization_error:
                    error = f"Handler result could not be stored: {serialization_error}"
            if error is not None:
                outcome = self.retry_manager.fail(entry.task_id, error)
                dead_lettered = outcome.dead_lettered
        except MasterControlError:
            logger.exception("Failed to record outcome of task %s", entry.task_id)
        finally:
            self._release_slot(entry.subagent_id, completed=completed, dead_lettered=dead_lettered)
            with self._in_flight_changed:
                self._in_flight.pop(entry.task_id, None)
                self._in_flight_changed.notify_all()

        if completed:
            self.audit.record("info", "Task completed", {"task_id": entry.task_id})
        elif dead_lettered:
            self.audit.record(
                "error",
                "Task moved to dead letters",
                {"task_id": entry.task_id, "error": error},
            )

    def _release_slot(
        self,
        subagent_id: str | None,
        *,
        completed: bool,
        dead_lettered: bool,
    ) -> None:
        try:
            if subagent_id is not None:
                self.allocator.release(subagent_id)
            self.state.adjust_active_tasks(-1)
            if completed:
                self.state.increment_completed()
            if dead_lettered:
                self.state.increment_failed()
        except MasterControlError:
            logger.exception("Failed to update counters after task settlement")

    def _sweep_deadlines(self) -> int:
        if self.task_deadline_seconds <= 0:
            return 0
        cutoff = self._clock() - timedelta(seconds=self.task_deadline_seconds)
        try:
            overdue = self.task_store.list_in_progress(started_before=cutoff)
        except MasterControlError:
            logger.exception("Deadline sweep could not list in-progress tasks")
            return 0

        expired = 0
        for task in overdue:
            with self._in_flight_changed:
                entry = self._in_flight.get(task.task_id)
                if entry is not None:
                    if entry.finishing:
                        continue
                    entry.abandoned = True
                    del self._in_flight[task.task_id]
                    self._in_flight_changed.notify_all()
            subagent_id = entry.subagent_id if entry is not None else self._subagent_for(task)
            try:
                outcome = self.retry_manager.fail(task.task_id, DEADLINE_EXCEEDED_ERROR)
            except ValidationError:
                logger.debug("Task %s settled before the deadline sweep reached it", task.task_id)
                continue
            except MasterControlError:
                logger.exception("Could not expire overdue task %s", task.task_id)
                continue
            expired += 1
            logger.warning(
                "Task %s exceeded its %ds deadline",
                task.task_id,
                self.task_deadline_seconds,
            )
            self._release_slot(subagent_id, completed=False, dead_lettered=outcome.dead_lettered)
            self.audit.record(
                "warn",
                "Task deadline exceeded",
                {"task_id": task.task_id, "dead_lettered": outcome.dead_lettered},
            )
        return expired

    def _subagent_for(self, task: Task) -> str | None:
        for subagent in self.allocator.list():
            if subagent.current_task == task.task_id:
                return subagent.subagent_id
        return None

    def _run_health_check(self, summary: TickSummary) -> None:
        try:
            marked = self.allocator.health_check()
            self.state.update_metrics(last_health_check=self._clock())
        except MasterControlError:
            summary.errors += 1
            logger.exception("Subagent health check failed")
            return
        summary.subagents_marked_error = len(marked)
        if marked:
            self.audit.record("warn", "Subagents marked error", {"subagent_ids": marked})

    def _maybe_cleanup(self) -> None:
        if self.retention_days is None:
            return
        now = self._clock()
        if self._last_cleanup is not None and now - self._last_cleanup < self.cleanup_interval:
            return
        self._last_cleanup = now
        try:
            removed = self.task_store.cleanup(self.retention_days)
        except MasterControlError:
            logger.exception("Task cleanup failed")
            return
        if removed:
            logger.info("Cleanup removed %d finished task(s)", removed)

    def _handler_pool(self) -> ThreadPoolExecutor:
        if self._handler_executor is None:
            workers = max(1, self.state.get_state().config.max_concurrent_tasks)
            self._handler_executor = ThreadPoolExecutor(
                max_workers=workers,
                thread_name_prefix="master-control-handler",
            )
        return self._handler_executor

    def _sleep_with_stop(self, seconds: float) -> None:
        self._stop_event.wait(max(0.0, seconds))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                self._stop_signal_name = signal.Signals(signum).name
            except ValueError:
                self._stop_signal_name = str(signum)
            self.stop()

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
