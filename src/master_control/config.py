"""Runtime configuration for the orchestration core."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from master_control.orchestrator.models import AgentConfig, SubagentResources


@dataclass(slots=True)
class StorageSettings:
    """SQLite location and instance partition."""

    instance_id: str = "default"
    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class SchedulerSettings:
    """Autonomous loop settings."""

    max_concurrent_tasks: int = 10
    tick_interval_seconds: float = 60.0
    oracle_timeout_seconds: float = 30.0
    task_deadline_seconds: int = 1_800
    subagent_priority_threshold: int = 7
    autonomous_mode: bool = True


@dataclass(slots=True)
class SubagentSettings:
    """Subagent pool limits and per-subagent resource defaults."""

    max_subagents: int = 50
    heartbeat_timeout_seconds: int = 300
    memory_mb: int = 128
    cpu: int = 1
    timeout_ms: int = 30_000


@dataclass(slots=True)
class RetentionSettings:
    task_retention_days: int = 7


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".master_control.db")
    storage: StorageSettings = field(default_factory=StorageSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    subagents: SubagentSettings = field(default_factory=SubagentSettings)
    retention: RetentionSettings = field(default_factory=RetentionSettings)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("MASTER_CONTROL_DB_PATH", ".master_control.db")),
            storage=StorageSettings(
                instance_id=os.getenv("MASTER_CONTROL_INSTANCE_ID", "default").strip(),
                sqlite_busy_timeout_ms=int(
                    os.getenv("MASTER_CONTROL_SQLITE_BUSY_TIMEOUT_MS", "5000"),
                ),
            ),
            scheduler=SchedulerSettings(
                max_concurrent_tasks=int(os.getenv("MASTER_CONTROL_MAX_CONCURRENT_TASKS", "10")),
                tick_interval_seconds=float(
                    os.getenv("MASTER_CONTROL_TICK_INTERVAL_SECONDS", "60"),
                ),
                oracle_timeout_seconds=float(
                    os.getenv("MASTER_CONTROL_ORACLE_TIMEOUT_SECONDS", "30"),
                ),
                task_deadline_seconds=int(
                    os.getenv("MASTER_CONTROL_TASK_DEADLINE_SECONDS", "1800"),
                ),
                subagent_priority_threshold=int(
                    os.getenv("MASTER_CONTROL_SUBAGENT_PRIORITY_THRESHOLD", "7"),
                ),
                autonomous_mode=_env_bool("MASTER_CONTROL_AUTONOMOUS_MODE", default=True),
            ),
            subagents=SubagentSettings(
                max_subagents=int(os.getenv("MASTER_CONTROL_MAX_SUBAGENTS", "50")),
                heartbeat_timeout_seconds=int(
                    os.getenv("MASTER_CONTROL_HEARTBEAT_TIMEOUT_SECONDS", "300"),
                ),
                memory_mb=int(os.getenv("MASTER_CONTROL_SUBAGENT_MEMORY_MB", "128")),
                cpu=int(os.getenv("MASTER_CONTROL_SUBAGENT_CPU", "1")),
                timeout_ms=int(os.getenv("MASTER_CONTROL_SUBAGENT_TIMEOUT_MS", "30000")),
            ),
            retention=RetentionSettings(
                task_retention_days=int(os.getenv("MASTER_CONTROL_TASK_RETENTION_DAYS", "7")),
            ),
            log_level=os.getenv("MASTER_CONTROL_LOG_LEVEL", "INFO").strip().upper(),
        )

    def validate(self) -> None:
        """Raise configuration error for values the core cannot run with."""

        if not self.storage.instance_id:
            raise ValueError("MASTER_CONTROL_INSTANCE_ID must not be empty.")
        if self.storage.sqlite_busy_timeout_ms < 0:
            raise ValueError("MASTER_CONTROL_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if self.scheduler.max_concurrent_tasks < 1:
            raise ValueError("MASTER_CONTROL_MAX_CONCURRENT_TASKS must be >= 1.")
        if self.scheduler.tick_interval_seconds <= 0:
            raise ValueError("MASTER_CONTROL_TICK_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.oracle_timeout_seconds <= 0:
            raise ValueError("MASTER_CONTROL_ORACLE_TIMEOUT_SECONDS must be > 0.")
        if self.scheduler.task_deadline_seconds < 0:
            raise ValueError("MASTER_CONTROL_TASK_DEADLINE_SECONDS must be >= 0 (0 disables).")
        if self.subagents.max_subagents < 1:
            raise ValueError("MASTER_CONTROL_MAX_SUBAGENTS must be >= 1.")
        if self.subagents.heartbeat_timeout_seconds <= 0:
            raise ValueError("MASTER_CONTROL_HEARTBEAT_TIMEOUT_SECONDS must be > 0.")
        if self.retention.task_retention_days < 0:
            raise ValueError("MASTER_CONTROL_TASK_RETENTION_DAYS must be >= 0.")

    def agent_defaults(self) -> AgentConfig:
        """Config used to seed the persisted agent state of a new instance."""

        return AgentConfig(
            autonomous_mode=self.scheduler.autonomous_mode,
            max_concurrent_tasks=self.scheduler.max_concurrent_tasks,
            max_subagents=self.subagents.max_subagents,
            subagent_defaults=SubagentResources(
                memory_mb=self.subagents.memory_mb,
                cpu=self.subagents.cpu,
                timeout_ms=self.subagents.timeout_ms,
            ),
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
