"""Operator-facing rendering of queue and agent metrics."""

from __future__ import annotations

from dataclasses import asdict

from master_control.orchestrator.models import AgentState, SubagentStatus, TaskStats
from master_control.orchestrator.scheduler import TickSummary


def render_stats_lines(*, stats: TaskStats, state: AgentState, instance_id: str) -> list[str]:
    """Render queue counters and agent metrics for CLI output."""

    metrics = state.metrics
    subagent_counts = {status.value: 0 for status in SubagentStatus}
    for subagent in state.subagents:
        subagent_counts[subagent.status.value] += 1
    integrations = asdict(state.integration_status)
    enabled = sorted(name for name, value in integrations.items() if value)

    return [
        f"Instance: {instance_id}",
        (
            "Queue status: "
            f"pending={stats.pending} in_progress={stats.in_progress} "
            f"completed={stats.completed} failed={stats.failed} total={stats.total}"
        ),
        f"Dead letters: {stats.dead_lettered}",
        f"Average duration: {_fmt_seconds(stats.avg_duration_seconds)}",
        (
            "Agent counters: "
            f"completed={metrics.tasks_completed} failed={metrics.tasks_failed} "
            f"active={metrics.tasks_active}/{state.config.max_concurrent_tasks}"
        ),
        (
            "Subagents: "
            + _fmt_key_value(subagent_counts)
            + f" capacity={len(state.subagents)}/{state.config.max_subagents}"
        ),
        f"Integrations enabled: {', '.join(enabled) or 'none'}",
        (
            "Last health check: "
            + (metrics.last_health_check.isoformat() if metrics.last_health_check else "never")
        ),
    ]


def render_tick_lines(summary: TickSummary) -> list[str]:
    return [
        "Tick summary: "
        f"considered={summary.considered} dispatched={summary.dispatched} "
        f"blocked={summary.blocked_dependencies} deferred={summary.deferred_capacity} "
        f"oracle_failures={summary.oracle_failures} rejected={summary.rejected} "
        f"errors={summary.errors} deadline_expired={summary.deadline_expired} "
        f"subagents_marked_error={summary.subagents_marked_error}",
    ]


def _fmt_seconds(value: float) -> str:
    if value <= 0:
        return "n/a"
    return f"{value:.2f}s"


def _fmt_key_value(values: dict[str, int]) -> str:
    return " ".join(f"{key}={values[key]}" for key in sorted(values))
