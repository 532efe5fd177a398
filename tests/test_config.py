from __future__ import annotations

from pathlib import Path

import allure
import pytest

from master_control.config import SchedulerSettings, Settings, StorageSettings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "MASTER_CONTROL_DB_PATH",
        "MASTER_CONTROL_MAX_CONCURRENT_TASKS",
        "MASTER_CONTROL_AUTONOMOUS_MODE",
        "MASTER_CONTROL_TASK_RETENTION_DAYS",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".master_control.db")
    assert settings.storage.instance_id == "default"
    assert settings.scheduler.max_concurrent_tasks == 10
    assert settings.scheduler.tick_interval_seconds == 60.0
    assert settings.scheduler.autonomous_mode is True
    assert settings.subagents.max_subagents == 50
    assert settings.subagents.heartbeat_timeout_seconds == 300
    assert settings.retention.task_retention_days == 7


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MASTER_CONTROL_INSTANCE_ID", " edge-1 ")
    monkeypatch.setenv("MASTER_CONTROL_MAX_CONCURRENT_TASKS", "3")
    monkeypatch.setenv("MASTER_CONTROL_AUTONOMOUS_MODE", "off")
    monkeypatch.setenv("MASTER_CONTROL_MAX_SUBAGENTS", "4")
    monkeypatch.setenv("MASTER_CONTROL_SUBAGENT_MEMORY_MB", "256")
    monkeypatch.setenv("MASTER_CONTROL_LOG_LEVEL", "debug")

    settings = Settings.from_env(db_path=Path("custom.db"))

    assert settings.db_path == Path("custom.db")
    assert settings.storage.instance_id == "edge-1"
    assert settings.scheduler.max_concurrent_tasks == 3
    assert settings.scheduler.autonomous_mode is False
    assert settings.log_level == "DEBUG"

    defaults = settings.agent_defaults()
    assert defaults.max_concurrent_tasks == 3
    assert defaults.max_subagents == 4
    assert defaults.autonomous_mode is False
    assert defaults.subagent_defaults.memory_mb == 256


def test_from_env_rejects_invalid_boolean(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MASTER_CONTROL_AUTONOMOUS_MODE", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value for MASTER_CONTROL_AUTONOMOUS_MODE"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(storage=StorageSettings(instance_id="")), "MASTER_CONTROL_INSTANCE_ID"),
        (
            Settings(scheduler=SchedulerSettings(max_concurrent_tasks=0)),
            "MASTER_CONTROL_MAX_CONCURRENT_TASKS",
        ),
        (
            Settings(scheduler=SchedulerSettings(oracle_timeout_seconds=0)),
            "MASTER_CONTROL_ORACLE_TIMEOUT_SECONDS",
        ),
        (
            Settings(scheduler=SchedulerSettings(task_deadline_seconds=-1)),
            "MASTER_CONTROL_TASK_DEADLINE_SECONDS",
        ),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_validate_accepts_defaults() -> None:
    Settings().validate()
