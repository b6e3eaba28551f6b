"""Controllers for backlog-runner CLI commands."""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path

from backlog_runner.config import Settings
from backlog_runner.orchestrator.backend import create_engine
from backlog_runner.orchestrator.deferred import DeferredTaskTracker
from backlog_runner.orchestrator.feedback import FeedbackChannel, start_stdin_reader
from backlog_runner.orchestrator.fallback import (
    DEFAULT_MODEL_CONFIG,
    ModelConfig,
    ModelFallbackManager,
)
from backlog_runner.orchestrator.git import GitRepository
from backlog_runner.orchestrator.invocation import TaskInvoker
from backlog_runner.orchestrator.isolation import WorktreeIsolation
from backlog_runner.orchestrator.models import EngineOptions, ExecutionResult
from backlog_runner.orchestrator.observer import (
    CompositeObserver,
    LoggingObserver,
    ProgressFileObserver,
)
from backlog_runner.orchestrator.parallel import ParallelExecutor, ParallelOptions
from backlog_runner.orchestrator.retry import RetryPolicy
from backlog_runner.orchestrator.sequential import SequentialExecutor, SequentialOptions
from backlog_runner.orchestrator.task_source import CachedTaskSource, TaskSource, create_task_source

logger = logging.getLogger(__name__)

PROGRESS_FILE = Path(".backlog-runner/progress.txt")


@dataclass(slots=True)
class RunCommand:
    """CLI input for a backlog run. ``None`` keeps the environment setting."""

    work_dir: Path
    state_db_path: Path | None = None
    prd: Path | None = None
    source: str | None = None
    engine: str | None = None
    command_template: str | None = None
    model: str | None = None
    parallel: bool | None = None
    max_parallel: int | None = None
    max_retries: int | None = None
    retry_delay_seconds: float | None = None
    max_iterations: int | None = None
    branch_per_task: bool = False
    base_branch: str | None = None
    create_pr: bool = False
    draft_pr: bool = False
    skip_merge: bool = False
    skip_tests: bool = False
    dry_run: bool = False
    engine_args: tuple[str, ...] = ()
    verbose: bool = False
    interactive: bool | None = None


@dataclass(slots=True)
class DeferredCommand:
    """CLI input for deferred-counter inspection."""

    work_dir: Path
    state_db_path: Path | None = None
    prd: Path | None = None
    source: str | None = None


@dataclass(slots=True)
class RunReport:
    """Run summary to render in CLI."""

    lines: list[str]
    result: ExecutionResult

    @property
    def exit_code(self) -> int:
        return self.result.exit_code


class RunnerCliController:
    """Wires settings, engine, task source and executor for CLI commands."""

    def run(self, command: RunCommand) -> RunReport:
        settings = _settings_for(command)
        prd_path = _resolve(command.work_dir, settings.run.prd_file)
        if not prd_path.exists():
            raise ValueError(f"Backlog file not found: {prd_path}")

        engine = create_engine(
            settings.engine.name,
            command_template=settings.engine.command_template,
            default_model=settings.engine.primary_model,
            timeout_seconds=settings.engine.timeout_seconds,
        )
        fallback = ModelFallbackManager(
            engine.name,
            _model_config(settings, default_model=engine.default_model),
            retry_in_fallback=settings.engine.retry_in_fallback,
        )
        observer = CompositeObserver(
            [
                LoggingObserver(verbose=command.verbose),
                ProgressFileObserver(command.work_dir / PROGRESS_FILE),
            ],
        )
        invoker = TaskInvoker(
            engine,
            fallback=fallback,
            retry_policy=RetryPolicy(
                max_retries=settings.run.max_retries,
                retry_delay_seconds=settings.run.retry_delay_seconds,
                backoff=settings.run.backoff,
            ),
            options=EngineOptions(model_override=command.model, engine_args=command.engine_args),
            observer=observer,
        )
        repo = GitRepository(command.work_dir)

        source = CachedTaskSource(create_task_source(settings.run.source_type, prd_path))
        with _deferred_tracker(settings, source_type=source.source_type, scope=prd_path) as deferred:
            try:
                if settings.run.parallel:
                    result = self._run_parallel(
                        settings,
                        command=command,
                        source=source,
                        invoker=invoker,
                        deferred=deferred,
                        repo=repo,
                        observer=observer,
                        prd_path=prd_path,
                    )
                else:
                    result = self._run_sequential(
                        settings,
                        command=command,
                        source=source,
                        invoker=invoker,
                        deferred=deferred,
                        repo=repo,
                        observer=observer,
                        prd_path=prd_path,
                    )
            finally:
                source.close()

        lines = [
            "Run summary: "
            f"completed={result.tasks_completed} failed={result.tasks_failed} "
            f"input_tokens={result.total_input_tokens} output_tokens={result.total_output_tokens}",
        ]
        status = fallback.status()
        if status.in_fallback:
            lines.append(
                f"Model fallback active: {status.current_model} "
                f"(primary retry in {status.minutes_until_retry or 0} min)",
            )
        return RunReport(lines=lines, result=result)

    def list_deferred(self, command: DeferredCommand) -> list[str]:
        settings = _deferred_settings(command)
        prd_path = _resolve(command.work_dir, settings.run.prd_file)
        with _deferred_tracker(settings, source_type=settings.run.source_type, scope=prd_path) as deferred:
            records = deferred.list_records()
        if not records:
            return ["No deferred tasks."]
        lines = [f"Deferred tasks ({len(records)}):"]
        for record in records:
            lines.append(
                f"- {record.task_id} deferrals={record.deferrals} "
                f"updated_at={record.updated_at.isoformat(timespec='seconds')} title={record.title!r}",
            )
            if record.last_error:
                lines.append(f"  last_error: {record.last_error}")
        return lines

    def clear_deferred(self, command: DeferredCommand) -> list[str]:
        settings = _deferred_settings(command)
        prd_path = _resolve(command.work_dir, settings.run.prd_file)
        with _deferred_tracker(settings, source_type=settings.run.source_type, scope=prd_path) as deferred:
            cleared = deferred.clear_all()
        return [f"Cleared {cleared} deferred task record(s)."]

    def _run_sequential(  # noqa: PLR0913
        self,
        settings: Settings,
        *,
        command: RunCommand,
        source: TaskSource,
        invoker: TaskInvoker,
        deferred: DeferredTaskTracker,
        repo: GitRepository,
        observer: CompositeObserver,
        prd_path: Path,
    ) -> ExecutionResult:
        base_branch = settings.git.base_branch
        if settings.git.branch_per_task:
            base_branch = _base_branch(settings, repo)

        interactive = command.interactive
        if interactive is None:
            interactive = sys.stdin.isatty() and not command.dry_run
        channel = FeedbackChannel(settings.run.feedback_queue_size)
        if interactive:
            start_stdin_reader(channel)
            logger.info("Interactive mode: type a message and press Enter to chat with the agent")

        executor = SequentialExecutor(
            source=source,
            invoker=invoker,
            deferred=deferred,
            options=SequentialOptions(
                work_dir=command.work_dir,
                max_retries=settings.run.max_retries,
                max_iterations=settings.run.max_iterations,
                dry_run=command.dry_run,
                interactive=interactive,
                follow_up_timeout_seconds=settings.run.follow_up_timeout_seconds,
                branch_per_task=settings.git.branch_per_task,
                base_branch=base_branch,
                create_pr=settings.git.create_pr,
                draft_pr=settings.git.draft_pr,
                skip_tests=settings.run.skip_tests,
                auto_commit=settings.run.auto_commit,
                prd_file=str(prd_path),
            ),
            observer=observer,
            channel=channel,
            repo=repo,
        )
        return executor.run()

    def _run_parallel(  # noqa: PLR0913
        self,
        settings: Settings,
        *,
        command: RunCommand,
        source: TaskSource,
        invoker: TaskInvoker,
        deferred: DeferredTaskTracker,
        repo: GitRepository,
        observer: CompositeObserver,
        prd_path: Path,
    ) -> ExecutionResult:
        base_branch = _base_branch(settings, repo)
        executor = ParallelExecutor(
            source=source,
            invoker=invoker,
            deferred=deferred,
            isolation=WorktreeIsolation(repo, settings.git.worktree_root),
            merge_target=repo,
            options=ParallelOptions(
                base_branch=base_branch,
                max_parallel=settings.run.max_parallel,
                max_retries=settings.run.max_retries,
                skip_merge=settings.git.skip_merge,
                dry_run=command.dry_run,
                skip_tests=settings.run.skip_tests,
                auto_commit=settings.run.auto_commit,
                prd_file=str(prd_path),
            ),
            observer=observer,
        )
        return executor.run()


def _settings_for(command: RunCommand) -> Settings:
    settings = Settings.from_env(state_db_path=command.state_db_path)
    run = settings.run
    if command.prd is not None:
        run.prd_file = command.prd
    if command.source is not None:
        run.source_type = command.source
    if command.parallel is not None:
        run.parallel = command.parallel
    if command.max_parallel is not None:
        run.max_parallel = command.max_parallel
    if command.max_retries is not None:
        run.max_retries = command.max_retries
    if command.retry_delay_seconds is not None:
        run.retry_delay_seconds = command.retry_delay_seconds
    if command.max_iterations is not None:
        run.max_iterations = command.max_iterations
    run.skip_tests = run.skip_tests or command.skip_tests

    if command.engine is not None:
        settings.engine.name = command.engine
    if command.command_template is not None:
        settings.engine.command_template = command.command_template

    git = settings.git
    if command.base_branch is not None:
        git.base_branch = command.base_branch
    git.branch_per_task = git.branch_per_task or command.branch_per_task
    git.create_pr = git.create_pr or command.create_pr
    git.draft_pr = git.draft_pr or command.draft_pr
    git.skip_merge = git.skip_merge or command.skip_merge
    settings.state_db_path = _resolve(command.work_dir, settings.state_db_path)
    settings.validate()
    return settings


def _deferred_settings(command: DeferredCommand) -> Settings:
    settings = Settings.from_env(state_db_path=command.state_db_path)
    if command.prd is not None:
        settings.run.prd_file = command.prd
    if command.source is not None:
        settings.run.source_type = command.source
    settings.state_db_path = _resolve(command.work_dir, settings.state_db_path)
    return settings


def _model_config(settings: Settings, *, default_model: str | None) -> ModelConfig:
    engine = settings.engine
    interval = engine.fallback_retry_interval_seconds
    if engine.primary_model and engine.fallback_model:
        return ModelConfig(
            primary=engine.primary_model,
            fallback=engine.fallback_model,
            retry_interval_seconds=interval,
        )
    preset = DEFAULT_MODEL_CONFIG.get(engine.name.lower())
    if preset is not None and engine.command_template is None:
        return replace(preset, retry_interval_seconds=interval)
    model = default_model or ""
    return ModelConfig(primary=model, fallback=model, retry_interval_seconds=interval)


def _base_branch(settings: Settings, repo: GitRepository) -> str:
    if not repo.is_repository():
        raise ValueError(f"Parallel and branch-per-task modes need a git repository; {repo.root} is not one.")
    if not repo.has_commits():
        raise ValueError(
            "Cannot run in parallel/branch mode: repository has no commits yet. "
            'Please make an initial commit first: git add . && git commit -m "Initial commit"',
        )
    return settings.git.base_branch or repo.current_branch()


def _resolve(work_dir: Path, path: Path) -> Path:
    return path if path.is_absolute() else work_dir / path


@contextmanager
def _deferred_tracker(
    settings: Settings,
    *,
    source_type: str,
    scope: Path,
) -> Iterator[DeferredTaskTracker]:
    tracker = DeferredTaskTracker(
        settings.state_db_path,
        source_type=source_type,
        scope=scope,
    )
    try:
        yield tracker
    finally:
        tracker.close()
