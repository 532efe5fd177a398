from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner, Result

from master_control.main import master_control

pytestmark = [
    allure.epic("Operator CLI"),
    allure.feature("Commands"),
]


@pytest.fixture()
def invoke(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("MASTER_CONTROL_INSTANCE_ID", raising=False)
    monkeypatch.delenv("MASTER_CONTROL_AUTONOMOUS_MODE", raising=False)
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    def _invoke(*args: str) -> Result:
        group, command, *rest = args
        return runner.invoke(
            master_control,
            ["--log-level", "WARNING", group, command, "--db-path", str(db_path), *rest],
        )

    return _invoke


def _task_id(result: Result) -> str:
    line = next(line for line in result.output.splitlines() if line.startswith("Task enqueued"))
    return line.split("task_id=", 1)[1].split()[0]


def test_enqueue_list_inspect_and_stats(invoke) -> None:
    enqueued = invoke(
        "tasks",
        "enqueue",
        "--type",
        "complex",
        "--description",
        "rebuild search index",
        "--priority",
        "8",
        "--payload",
        '{"index": "docs"}',
        "--task-id",
        "rebuild-1",
    )
    assert enqueued.exit_code == 0, enqueued.output
    assert (
        "Task enqueued: task_id=rebuild-1 type=complex priority=8 status=pending"
        in enqueued.output
    )

    listed = invoke("tasks", "list", "--status", "pending")
    assert listed.exit_code == 0, listed.output
    assert "Tasks: 1" in listed.output
    assert "rebuild-1 type=complex status=pending priority=8 retries=0/3" in listed.output

    inspected = invoke("tasks", "inspect", "rebuild-1")
    assert inspected.exit_code == 0, inspected.output
    assert "Description: rebuild search index" in inspected.output
    assert 'Payload: {"index": "docs"}' in inspected.output

    stats = invoke("tasks", "stats")
    assert stats.exit_code == 0, stats.output
    assert "Instance: default" in stats.output
    assert "pending=1 in_progress=0 completed=0 failed=0 total=1" in stats.output
    assert "Integrations enabled: none" in stats.output


def test_inspect_unknown_task(invoke) -> None:
    result = invoke("tasks", "inspect", "ghost")

    assert result.exit_code == 0
    assert "Task not found: ghost" in result.output


def test_invalid_payload_is_reported_as_cli_error(invoke) -> None:
    result = invoke("tasks", "enqueue", "--type", "chat", "--payload", "[1, 2]")

    assert result.exit_code == 1
    assert "--payload must be a JSON object" in result.output


def test_enqueue_rejects_out_of_range_priority(invoke) -> None:
    result = invoke("tasks", "enqueue", "--type", "chat", "--priority", "11")

    assert result.exit_code == 2


def test_scheduler_tick_runs_system_task(invoke) -> None:
    task_id = _task_id(invoke("tasks", "enqueue", "--type", "ops", "--description", "Check health"))

    ticked = invoke("scheduler", "tick", "--wait-seconds", "5")

    assert ticked.exit_code == 0, ticked.output
    assert "Tick summary: considered=1 dispatched=1" in ticked.output
    inspected = invoke("tasks", "inspect", task_id)
    assert "Status: completed" in inspected.output
    assert '"status": "healthy"' in inspected.output


def test_handler_failure_lands_in_dead_letters_and_can_be_replayed(invoke) -> None:
    task_id = _task_id(
        invoke(
            "tasks",
            "enqueue",
            "--type",
            "ops",
            "--description",
            "Remove the subagent",
            "--max-retries",
            "0",
        ),
    )
    invoke("scheduler", "tick", "--wait-seconds", "5")

    listed = invoke("dlq", "list")
    assert "Dead letters: 1" in listed.output
    assert "reason=remove needs subagent_id" in listed.output

    replayed = invoke("dlq", "replay", task_id)
    assert replayed.exit_code == 0, replayed.output
    assert f"Dead letter replayed: {task_id} -> task_id=" in replayed.output

    deleted = invoke("dlq", "delete", task_id)
    assert deleted.exit_code == 0, deleted.output
    assert f"Dead letter deleted: {task_id}" in deleted.output
    assert "Dead letters: 0" in invoke("dlq", "list").output

    missing = invoke("dlq", "delete", task_id)
    assert missing.exit_code == 1
    assert f"Dead letter not found: {task_id}" in missing.output


def test_subagent_commands(invoke) -> None:
    invoke(
        "tasks",
        "enqueue",
        "--type",
        "ops",
        "--description",
        "Deploy agent for dns zone",
    )
    invoke("scheduler", "tick", "--wait-seconds", "5")

    listed = invoke("subagents", "list")
    assert "Subagents: 1" in listed.output
    subagent_id = listed.output.split("Subagents: 1", 1)[1].split()[0]

    heartbeat = invoke("subagents", "heartbeat", subagent_id)
    assert f"Heartbeat recorded: {subagent_id} status=active" in heartbeat.output

    released = invoke("subagents", "release", subagent_id)
    assert f"Subagent released: {subagent_id}" in released.output

    health = invoke("subagents", "health")
    assert "Subagents marked error: 0" in health.output

    removed = invoke("subagents", "remove", subagent_id)
    assert f"Subagent removed: {subagent_id}" in removed.output
    assert "Subagents: 0" in invoke("subagents", "list").output

    unknown = invoke("subagents", "release", "ghost")
    assert unknown.exit_code == 1
    assert "Subagent not found: ghost" in unknown.output


def test_state_show_export_import_and_integrations(invoke, tmp_path: Path) -> None:
    toggled = invoke("state", "integration", "docker", "--enable")
    assert "Integration docker: enabled" in toggled.output

    backup = tmp_path / "backup" / "state.json"
    exported = invoke("state", "export", "--output", str(backup))
    assert exported.exit_code == 0, exported.output
    assert f"State exported: {backup}" in exported.output
    raw = json.loads(backup.read_text(encoding="utf-8"))
    assert raw["integration_status"]["docker"] is True

    invoke("state", "integration", "docker", "--disable")
    imported = invoke("state", "import", str(backup))
    assert imported.exit_code == 0, imported.output
    assert "State imported: subagents=0" in imported.output

    shown = invoke("state", "show")
    assert '"docker": true' in shown.output


def test_state_import_rejects_malformed_file(invoke, tmp_path: Path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")

    result = invoke("state", "import", str(broken))

    assert result.exit_code == 1
    assert "State file is not valid JSON" in result.output


def test_cleanup_reports_retention(invoke) -> None:
    result = invoke("tasks", "cleanup", "--retention-days", "3")

    assert result.exit_code == 0, result.output
    assert "Tasks removed: 0 (retention=3d)" in result.output


def test_scheduler_run_honours_max_ticks(invoke) -> None:
    result = invoke("scheduler", "run", "--interval", "0.01", "--max-ticks", "2")

    assert result.exit_code == 0, result.output
    assert "Scheduler stopped after 2 tick(s)" in result.output
