"""Runtime configuration for the backlog runner."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from backlog_runner.orchestrator.backend.cli_backend import SUPPORTED_ENGINES
from backlog_runner.orchestrator.retry import BACKOFF_MODES
from backlog_runner.orchestrator.task_source import SUPPORTED_SOURCES


@dataclass(slots=True)
class RunSettings:
    """Loop and retry settings shared by both executors."""

    source_type: str = "markdown"
    prd_file: Path = Path("PRD.md")
    parallel: bool = False
    max_retries: int = 3
    retry_delay_seconds: float = 5.0
    backoff: str = "fixed"
    max_iterations: int = 0
    max_parallel: int = 3
    follow_up_timeout_seconds: float = 3.0
    feedback_queue_size: int = 32
    skip_tests: bool = False
    auto_commit: bool = True


@dataclass(slots=True)
class EngineSettings:
    """Agent CLI and model selection."""

    name: str = "claude"
    command_template: str | None = None
    primary_model: str | None = None
    fallback_model: str | None = None
    fallback_retry_interval_seconds: int = 300
    retry_in_fallback: bool = False
    timeout_seconds: int = 3_600


@dataclass(slots=True)
class GitSettings:
    base_branch: str | None = None
    worktree_root: Path | None = None
    branch_per_task: bool = False
    create_pr: bool = False
    draft_pr: bool = False
    skip_merge: bool = False


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    state_db_path: Path = Path(".backlog-runner/state.db")
    run: RunSettings = field(default_factory=RunSettings)
    engine: EngineSettings = field(default_factory=EngineSettings)
    git: GitSettings = field(default_factory=GitSettings)

    @classmethod
    def from_env(cls, state_db_path: Path | None = None) -> Settings:
        """Load settings from ``BACKLOG_RUNNER_*`` environment variables."""

        return cls(
            state_db_path=state_db_path
            or Path(os.getenv("BACKLOG_RUNNER_STATE_DB", ".backlog-runner/state.db")),
            run=RunSettings(
                source_type=os.getenv("BACKLOG_RUNNER_SOURCE", "markdown"),
                prd_file=Path(os.getenv("BACKLOG_RUNNER_PRD", "PRD.md")),
                parallel=_env_bool("BACKLOG_RUNNER_PARALLEL", default=False),
                max_retries=int(os.getenv("BACKLOG_RUNNER_MAX_RETRIES", "3")),
                retry_delay_seconds=float(os.getenv("BACKLOG_RUNNER_RETRY_DELAY_SECONDS", "5")),
                backoff=os.getenv("BACKLOG_RUNNER_RETRY_BACKOFF", "fixed"),
                max_iterations=int(os.getenv("BACKLOG_RUNNER_MAX_ITERATIONS", "0")),
                max_parallel=int(os.getenv("BACKLOG_RUNNER_MAX_PARALLEL", "3")),
                follow_up_timeout_seconds=float(
                    os.getenv("BACKLOG_RUNNER_FOLLOW_UP_TIMEOUT_SECONDS", "3"),
                ),
                feedback_queue_size=int(os.getenv("BACKLOG_RUNNER_FEEDBACK_QUEUE_SIZE", "32")),
                skip_tests=_env_bool("BACKLOG_RUNNER_SKIP_TESTS", default=False),
                auto_commit=_env_bool("BACKLOG_RUNNER_AUTO_COMMIT", default=True),
            ),
            engine=EngineSettings(
                name=os.getenv("BACKLOG_RUNNER_ENGINE", "claude"),
                command_template=_env_optional("BACKLOG_RUNNER_ENGINE_COMMAND"),
                primary_model=_env_optional("BACKLOG_RUNNER_PRIMARY_MODEL"),
                fallback_model=_env_optional("BACKLOG_RUNNER_FALLBACK_MODEL"),
                fallback_retry_interval_seconds=int(
                    os.getenv("BACKLOG_RUNNER_FALLBACK_RETRY_INTERVAL_SECONDS", "300"),
                ),
                retry_in_fallback=_env_bool("BACKLOG_RUNNER_RETRY_IN_FALLBACK", default=False),
                timeout_seconds=int(os.getenv("BACKLOG_RUNNER_ENGINE_TIMEOUT_SECONDS", "3600")),
            ),
            git=GitSettings(
                base_branch=_env_optional("BACKLOG_RUNNER_BASE_BRANCH"),
                worktree_root=_env_path("BACKLOG_RUNNER_WORKTREE_ROOT"),
                branch_per_task=_env_bool("BACKLOG_RUNNER_BRANCH_PER_TASK", default=False),
                create_pr=_env_bool("BACKLOG_RUNNER_CREATE_PR", default=False),
                draft_pr=_env_bool("BACKLOG_RUNNER_DRAFT_PR", default=False),
                skip_merge=_env_bool("BACKLOG_RUNNER_SKIP_MERGE", default=False),
            ),
        )

    def validate(self) -> None:
        """Raise ValueError when a setting is out of range."""

        run = self.run
        if run.source_type not in SUPPORTED_SOURCES:
            raise ValueError(
                f"BACKLOG_RUNNER_SOURCE must be one of {SUPPORTED_SOURCES}, got {run.source_type!r}.",
            )
        if run.max_retries < 1:
            raise ValueError("BACKLOG_RUNNER_MAX_RETRIES must be >= 1.")
        if run.retry_delay_seconds < 0:
            raise ValueError("BACKLOG_RUNNER_RETRY_DELAY_SECONDS must be >= 0.")
        if run.backoff not in BACKOFF_MODES:
            raise ValueError(f"BACKLOG_RUNNER_RETRY_BACKOFF must be one of {BACKOFF_MODES}.")
        if run.max_iterations < 0:
            raise ValueError("BACKLOG_RUNNER_MAX_ITERATIONS must be >= 0.")
        if run.max_parallel < 1:
            raise ValueError("BACKLOG_RUNNER_MAX_PARALLEL must be >= 1.")
        if run.follow_up_timeout_seconds < 0:
            raise ValueError("BACKLOG_RUNNER_FOLLOW_UP_TIMEOUT_SECONDS must be >= 0.")
        if run.feedback_queue_size < 1:
            raise ValueError("BACKLOG_RUNNER_FEEDBACK_QUEUE_SIZE must be >= 1.")

        engine = self.engine
        if engine.command_template is None and engine.name.lower() not in SUPPORTED_ENGINES:
            raise ValueError(
                f"Unknown engine {engine.name!r}: use one of {SUPPORTED_ENGINES} "
                "or set BACKLOG_RUNNER_ENGINE_COMMAND.",
            )
        if engine.fallback_retry_interval_seconds <= 0:
            raise ValueError("BACKLOG_RUNNER_FALLBACK_RETRY_INTERVAL_SECONDS must be > 0.")
        if engine.timeout_seconds <= 0:
            raise ValueError("BACKLOG_RUNNER_ENGINE_TIMEOUT_SECONDS must be > 0.")
        if bool(engine.primary_model) != bool(engine.fallback_model):
            raise ValueError(
                "BACKLOG_RUNNER_PRIMARY_MODEL and BACKLOG_RUNNER_FALLBACK_MODEL must be set together.",
            )

        if self.git.draft_pr and not self.git.create_pr:
            raise ValueError("A draft PR requires BACKLOG_RUNNER_CREATE_PR.")


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


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _env_path(name: str) -> Path | None:
    value = _env_optional(name)
    return Path(value) if value else None
