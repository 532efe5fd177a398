"""Domain models for task queue, subagent registry and agent state."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any

from master_control.storage.common import from_iso

MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_MAX_RETRIES = 3


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


class SubagentType(str, Enum):
    WORKER = "worker"
    SPECIALIST = "specialist"
    INTEGRATION = "integration"
    MONITOR = "monitor"


class SubagentStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    ERROR = "error"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a task."""

    task_type: str
    description: str = ""
    priority: int = 5
    payload: dict[str, Any] = field(default_factory=dict)
    max_retries: int = DEFAULT_MAX_RETRIES
    dependencies: tuple[str, ...] = ()
    task_id: str | None = None


@dataclass(slots=True)
class Task:
    """Readable task view for scheduler, handlers and CLI."""

    task_id: str
    task_type: str
    description: str
    priority: int
    payload: dict[str, Any]
    status: TaskStatus
    created_at: datetime
    retry_count: int
    max_retries: int
    dependencies: tuple[str, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: Any = None
    error: str | None = None

    @property
    def retries_left(self) -> int:
        return max(0, self.max_retries - self.retry_count)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for snapshots (dead letters, CLI JSON output)."""

        return {
            "task_id": self.task_id,
            "task_type": self.task_type,
            "description": self.description,
            "priority": self.priority,
            "payload": self.payload,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "result": self.result,
            "error": self.error,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "dependencies": list(self.dependencies),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Task:
        return cls(
            task_id=raw["task_id"],
            task_type=raw["task_type"],
            description=raw.get("description", ""),
            priority=int(raw["priority"]),
            payload=dict(raw.get("payload") or {}),
            status=TaskStatus(raw["status"]),
            created_at=from_iso(raw["created_at"]),
            started_at=from_iso(raw["started_at"]) if raw.get("started_at") else None,
            completed_at=from_iso(raw["completed_at"]) if raw.get("completed_at") else None,
            result=raw.get("result"),
            error=raw.get("error"),
            retry_count=int(raw.get("retry_count", 0)),
            max_retries=int(raw.get("max_retries", DEFAULT_MAX_RETRIES)),
            dependencies=tuple(raw.get("dependencies") or ()),
        )


@dataclass(slots=True)
class TaskStats:
    """Queue counters by status."""

    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    dead_lettered: int = 0
    avg_duration_seconds: float = 0.0

    @property
    def total(self) -> int:
        return self.pending + self.in_progress + self.completed + self.failed


@dataclass(slots=True)
class DeadLetterEntry:
    """Permanent archive record of a task that exhausted its retries."""

    task_id: str
    task: Task
    reason: str
    archived_at: datetime


@dataclass(slots=True)
class SubagentResources:
    memory_mb: int = 128
    cpu: int = 1
    timeout_ms: int = 30_000


@dataclass(slots=True)
class SubagentConfig:
    """Input for deploying a subagent."""

    name: str
    subagent_type: SubagentType = SubagentType.WORKER
    domain: str | None = None
    resources: SubagentResources | None = None


@dataclass(slots=True)
class SubagentInfo:
    """Ephemeral worker handle tracked for capacity and liveness."""

    subagent_id: str
    subagent_type: SubagentType
    name: str
    status: SubagentStatus
    deployed_at: datetime
    last_heartbeat: datetime
    current_task: str | None = None
    domain: str | None = None
    resources: SubagentResources = field(default_factory=SubagentResources)

    def to_dict(self) -> dict[str, Any]:
        return {
            "subagent_id": self.subagent_id,
            "subagent_type": self.subagent_type.value,
            "name": self.name,
            "status": self.status.value,
            "current_task": self.current_task,
            "domain": self.domain,
            "resources": asdict(self.resources),
            "deployed_at": self.deployed_at.isoformat(),
            "last_heartbeat": self.last_heartbeat.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SubagentInfo:
        return cls(
            subagent_id=raw["subagent_id"],
            subagent_type=SubagentType(raw["subagent_type"]),
            name=raw["name"],
            status=SubagentStatus(raw["status"]),
            current_task=raw.get("current_task"),
            domain=raw.get("domain"),
            resources=SubagentResources(**(raw.get("resources") or {})),
            deployed_at=from_iso(raw["deployed_at"]),
            last_heartbeat=from_iso(raw["last_heartbeat"]),
        )


@dataclass(slots=True)
class AgentConfig:
    """Runtime limits and defaults persisted with the agent state."""

    autonomous_mode: bool = True
    max_concurrent_tasks: int = 10
    max_subagents: int = 50
    knowledge_backup_schedule: str = "0 * * * *"
    zero_trust_enabled: bool = True
    byok_enabled: bool = False
    subagent_defaults: SubagentResources = field(default_factory=SubagentResources)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AgentConfig:
        unknown = set(raw) - _CONFIG_FIELD_NAMES
        if unknown:
            raise ValueError(f"Unknown config fields: {sorted(unknown)}")
        return cls(**{name: parse_config_value(name, value) for name, value in raw.items()})


_CONFIG_FLAG_FIELDS = frozenset({"autonomous_mode", "zero_trust_enabled", "byok_enabled"})
_CONFIG_LIMIT_FIELDS = frozenset({"max_concurrent_tasks", "max_subagents"})
_CONFIG_FIELD_NAMES = frozenset(item.name for item in fields(AgentConfig))
_RESOURCE_FIELD_NAMES = frozenset(item.name for item in fields(SubagentResources))


def parse_config_value(name: str, value: Any) -> Any:
    """Coerce one ``AgentConfig`` field to its declared type.

    Raises ``ValueError`` for unknown fields and values of the wrong shape.
    """

    if name in _CONFIG_FLAG_FIELDS:
        if not isinstance(value, bool):
            raise ValueError(f"{name} must be a boolean, got {value!r}")
        return value
    if name in _CONFIG_LIMIT_FIELDS:
        return _positive_int(name, value)
    if name == "knowledge_backup_schedule":
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"{name} must be a non-empty string, got {value!r}")
        return value.strip()
    if name == "subagent_defaults":
        if isinstance(value, SubagentResources):
            return SubagentResources(**asdict(value))
        if not isinstance(value, dict):
            raise ValueError(f"{name} must be an object, got {value!r}")
        unknown = set(value) - _RESOURCE_FIELD_NAMES
        if unknown:
            raise ValueError(f"Unknown {name} fields: {sorted(unknown)}")
        return SubagentResources(
            **{key: _positive_int(f"{name}.{key}", item) for key, item in value.items()},
        )
    raise ValueError(f"Unknown config fields: {[name]}")


def _positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    try:
        number = int(value)
    except ValueError as error:
        raise ValueError(f"{name} must be an integer, got {value!r}") from error
    if number < 1:
        raise ValueError(f"{name} must be >= 1")
    return number


@dataclass(slots=True)
class IntegrationStatus:
    cloudflare: bool = False
    docker: bool = False
    mcp_hub: bool = False
    lobechat: bool = False
    zapier: bool = False
    n8n: bool = False
    tailscale: bool = False


INTEGRATION_NAMES: tuple[str, ...] = (
    "cloudflare",
    "docker",
    "mcp_hub",
    "lobechat",
    "zapier",
    "n8n",
    "tailscale",
)


@dataclass(slots=True)
class AgentMetrics:
    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_active: int = 0
    subagents_active: int = 0
    last_health_check: datetime | None = None


@dataclass(slots=True)
class KnowledgeBaseStats:
    entries: int = 0
    last_backup: datetime | None = None
    last_sync: datetime | None = None


@dataclass(slots=True)
class AgentState:
    """Canonical aggregate snapshot owned by one agent instance."""

    config: AgentConfig = field(default_factory=AgentConfig)
    subagents: list[SubagentInfo] = field(default_factory=list)
    integration_status: IntegrationStatus = field(default_factory=IntegrationStatus)
    metrics: AgentMetrics = field(default_factory=AgentMetrics)
    knowledge_base: KnowledgeBaseStats = field(default_factory=KnowledgeBaseStats)

    def to_dict(self) -> dict[str, Any]:
        return {
            "config": asdict(self.config),
            "subagents": [subagent.to_dict() for subagent in self.subagents],
            "integration_status": asdict(self.integration_status),
            "metrics": {
                "tasks_completed": self.metrics.tasks_completed,
                "tasks_failed": self.metrics.tasks_failed,
                "tasks_active": self.metrics.tasks_active,
                "subagents_active": self.metrics.subagents_active,
                "last_health_check": _iso_or_none(self.metrics.last_health_check),
            },
            "knowledge_base": {
                "entries": self.knowledge_base.entries,
                "last_backup": _iso_or_none(self.knowledge_base.last_backup),
                "last_sync": _iso_or_none(self.knowledge_base.last_sync),
            },
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AgentState:
        metrics_raw = raw.get("metrics") or {}
        knowledge_raw = raw.get("knowledge_base") or {}
        return cls(
            config=AgentConfig.from_dict(dict(raw.get("config") or {})),
            subagents=[SubagentInfo.from_dict(item) for item in raw.get("subagents") or []],
            integration_status=IntegrationStatus(**(raw.get("integration_status") or {})),
            metrics=AgentMetrics(
                tasks_completed=int(metrics_raw.get("tasks_completed", 0)),
                tasks_failed=int(metrics_raw.get("tasks_failed", 0)),
                tasks_active=int(metrics_raw.get("tasks_active", 0)),
                subagents_active=int(metrics_raw.get("subagents_active", 0)),
                last_health_check=_datetime_or_none(metrics_raw.get("last_health_check")),
            ),
            knowledge_base=KnowledgeBaseStats(
                entries=int(knowledge_raw.get("entries", 0)),
                last_backup=_datetime_or_none(knowledge_raw.get("last_backup")),
                last_sync=_datetime_or_none(knowledge_raw.get("last_sync")),
            ),
        )


@dataclass(slots=True)
class AuditEntry:
    """Audit trail entry."""

    entry_id: int
    level: str
    message: str
    data: dict[str, Any]
    source: str
    created_at: datetime


def _iso_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _datetime_or_none(value: str | None) -> datetime | None:
    return from_iso(value) if value else None
