"""SQLModel ORM tables for orchestration-core storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

DEFAULT_INSTANCE_ID = "default"


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "idx_tasks_queue",
            "instance_id",
            "status",
            "priority",
            "created_at",
            "enqueue_seq",
        ),
    )

    instance_id: str = Field(default=DEFAULT_INSTANCE_ID, primary_key=True, index=True)
    task_id: str = Field(primary_key=True)
    task_type: str = Field(index=True)
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    priority: int = Field(index=True)
    status: str = Field(index=True)
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    dependencies_json: str | None = Field(default=None, sa_column=Column(Text))
    enqueue_seq: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DeadLetterRow(SQLModel, table=True):
    __tablename__ = "dead_letters"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("instance_id", "task_id", name="uq_dead_letters_scope_task"),
        Index("idx_dead_letters_scope_time", "instance_id", "archived_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    instance_id: str = Field(default=DEFAULT_INSTANCE_ID, index=True)
    task_id: str = Field(index=True)
    task_snapshot_json: str = Field(sa_column=Column(Text, nullable=False))
    reason: str = Field(sa_column=Column(Text, nullable=False))
    archived_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SubagentRow(SQLModel, table=True):
    __tablename__ = "subagents"  # type: ignore[bad-override]
    instance_id: str = Field(default=DEFAULT_INSTANCE_ID, primary_key=True)
    subagent_id: str = Field(primary_key=True)
    subagent_type: str = Field(index=True)
    name: str
    status: str = Field(index=True)
    current_task: str | None = None
    domain: str | None = None
    resources_json: str | None = Field(default=None, sa_column=Column(Text))
    deployed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_heartbeat: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentStateRow(SQLModel, table=True):
    __tablename__ = "agent_state"  # type: ignore[bad-override]

    instance_id: str = Field(primary_key=True)
    state_json: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AuditLogRow(SQLModel, table=True):
    __tablename__ = "audit_log"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_audit_log_scope_time", "instance_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    instance_id: str = Field(default=DEFAULT_INSTANCE_ID, index=True)
    level: str = Field(index=True)
    message: str = Field(sa_column=Column(Text, nullable=False))
    data_json: str | None = Field(default=None, sa_column=Column(Text))
    source: str = Field(default="master-control")
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
