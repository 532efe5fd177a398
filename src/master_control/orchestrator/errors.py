"""Error taxonomy for the orchestration core.

Only ``HandlerError`` consumes a task's retry budget. ``ValidationError`` and
``NotFound`` surface to the caller of a mutating operation. The remaining
errors, when raised during a scheduler tick, leave the affected task pending.
"""

from __future__ import annotations


class MasterControlError(Exception):
    """Base class for all orchestration-core errors."""


class ValidationError(MasterControlError):
    """Malformed task, decision, or disallowed state transition."""


class NotFound(MasterControlError):
    """Unknown task or subagent id."""

    def __init__(self, kind: str, object_id: str) -> None:
        super().__init__(f"{kind} not found: {object_id}")
        self.kind = kind
        self.object_id = object_id


class DependencyNotSatisfied(MasterControlError):
    """A task dependency has not completed yet."""

    def __init__(self, task_id: str, missing: tuple[str, ...]) -> None:
        super().__init__(f"Task {task_id} waits for: {', '.join(missing)}")
        self.task_id = task_id
        self.missing = missing


class CapacityExceeded(MasterControlError):
    """Subagent pool is full and no subagent is idle."""


class OracleUnavailable(MasterControlError):
    """Decision oracle failed or did not answer in time."""


class HandlerError(MasterControlError):
    """Category handler failed to execute a decision."""

    def __init__(self, message: str, *, category: str | None = None) -> None:
        super().__init__(message)
        self.category = category


class PersistenceError(MasterControlError):
    """Durable storage rejected a read or write."""
