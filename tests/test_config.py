from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest

from backlog_runner.config import Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("BACKLOG_RUNNER_"):
            monkeypatch.delenv(name)


def test_defaults_without_environment() -> None:
    settings = Settings.from_env()

    assert settings.state_db_path == Path(".backlog-runner/state.db")
    assert settings.run.source_type == "markdown"
    assert settings.run.prd_file == Path("PRD.md")
    assert settings.run.max_retries == 3
    assert settings.run.max_parallel == 3
    assert settings.run.auto_commit is True
    assert settings.engine.name == "claude"
    assert settings.engine.retry_in_fallback is False
    assert settings.git.worktree_root is None
    settings.validate()


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BACKLOG_RUNNER_SOURCE", "json")
    monkeypatch.setenv("BACKLOG_RUNNER_PRD", "tasks.json")
    monkeypatch.setenv("BACKLOG_RUNNER_PARALLEL", "yes")
    monkeypatch.setenv("BACKLOG_RUNNER_MAX_PARALLEL", "5")
    monkeypatch.setenv("BACKLOG_RUNNER_RETRY_BACKOFF", "exponential")
    monkeypatch.setenv("BACKLOG_RUNNER_ENGINE", "gemini")
    monkeypatch.setenv("BACKLOG_RUNNER_PRIMARY_MODEL", "big")
    monkeypatch.setenv("BACKLOG_RUNNER_FALLBACK_MODEL", "small")
    monkeypatch.setenv("BACKLOG_RUNNER_WORKTREE_ROOT", "/tmp/worktrees")
    monkeypatch.setenv("BACKLOG_RUNNER_AUTO_COMMIT", "off")

    settings = Settings.from_env(state_db_path=Path("custom.db"))

    assert settings.state_db_path == Path("custom.db")
    assert settings.run.source_type == "json"
    assert settings.run.prd_file == Path("tasks.json")
    assert settings.run.parallel is True
    assert settings.run.max_parallel == 5
    assert settings.run.backoff == "exponential"
    assert settings.run.auto_commit is False
    assert (settings.engine.primary_model, settings.engine.fallback_model) == ("big", "small")
    assert settings.git.worktree_root == Path("/tmp/worktrees")
    settings.validate()


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BACKLOG_RUNNER_PARALLEL", "maybe")

    with pytest.raises(ValueError, match="BACKLOG_RUNNER_PARALLEL"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("BACKLOG_RUNNER_SOURCE", "yaml", "BACKLOG_RUNNER_SOURCE"),
        ("BACKLOG_RUNNER_MAX_RETRIES", "0", "MAX_RETRIES"),
        ("BACKLOG_RUNNER_RETRY_BACKOFF", "linear", "RETRY_BACKOFF"),
        ("BACKLOG_RUNNER_MAX_PARALLEL", "0", "MAX_PARALLEL"),
        ("BACKLOG_RUNNER_ENGINE", "mystery", "Unknown engine"),
        ("BACKLOG_RUNNER_PRIMARY_MODEL", "big", "must be set together"),
        ("BACKLOG_RUNNER_DRAFT_PR", "1", "draft PR"),
    ],
)
def test_validate_rejects_bad_settings(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env().validate()


def test_custom_command_allows_unknown_engine_name(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BACKLOG_RUNNER_ENGINE", "my-agent")
    monkeypatch.setenv("BACKLOG_RUNNER_ENGINE_COMMAND", "my-agent --print {prompt}")

    Settings.from_env().validate()
