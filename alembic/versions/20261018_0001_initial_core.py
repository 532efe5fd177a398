"""Initial orchestration-core schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("instance_id", sa.String(), server_default="default", nullable=False),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("dependencies_json", sa.Text(), nullable=True),
        sa.Column("enqueue_seq", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("instance_id", "task_id"),
    )
    op.create_index("ix_tasks_instance_id", "tasks", ["instance_id"], unique=False)
    op.create_index("ix_tasks_status", "tasks", ["status"], unique=False)
    op.create_index(
        "idx_tasks_queue",
        "tasks",
        ["instance_id", "status", "priority", "created_at", "enqueue_seq"],
        unique=False,
    )

    op.create_table(
        "dead_letters",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("instance_id", sa.String(), server_default="default", nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("task_snapshot_json", sa.Text(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("instance_id", "task_id", name="uq_dead_letters_scope_task"),
    )
    op.create_index(
        "idx_dead_letters_scope_time",
        "dead_letters",
        ["instance_id", "archived_at"],
        unique=False,
    )

    op.create_table(
        "subagents",
        sa.Column("instance_id", sa.String(), server_default="default", nullable=False),
        sa.Column("subagent_id", sa.String(), nullable=False),
        sa.Column("subagent_type", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("current_task", sa.String(), nullable=True),
        sa.Column("domain", sa.String(), nullable=True),
        sa.Column("resources_json", sa.Text(), nullable=True),
        sa.Column("deployed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("instance_id", "subagent_id"),
    )
    op.create_index("ix_subagents_status", "subagents", ["status"], unique=False)

    op.create_table(
        "agent_state",
        sa.Column("instance_id", sa.String(), nullable=False),
        sa.Column("state_json", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("instance_id"),
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("instance_id", sa.String(), server_default="default", nullable=False),
        sa.Column("level", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("data_json", sa.Text(), nullable=True),
        sa.Column("source", sa.String(), nullable=False, server_default="master-control"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_audit_log_scope_time",
        "audit_log",
        ["instance_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_audit_log_scope_time", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_table("agent_state")
    op.drop_index("ix_subagents_status", table_name="subagents")
    op.drop_table("subagents")
    op.drop_index("idx_dead_letters_scope_time", table_name="dead_letters")
    op.drop_table("dead_letters")
    op.drop_index("idx_tasks_queue", table_name="tasks")
    op.drop_index("ix_tasks_status", table_name="tasks")
    op.drop_index("ix_tasks_instance_id", table_name="tasks")
    op.drop_table("tasks")
