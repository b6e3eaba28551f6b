"""CLI entrypoint for backlog-runner."""

import logging
from pathlib import Path

import rich_click as click

from backlog_runner import __version__
from backlog_runner.controllers import DeferredCommand, RunCommand, RunnerCliController
from backlog_runner.orchestrator.backend import SUPPORTED_ENGINES
from backlog_runner.orchestrator.errors import OrchestratorError
from backlog_runner.orchestrator.task_source import SUPPORTED_SOURCES

click.rich_click.USE_MARKDOWN = True
RUNNER_CONTROLLER = RunnerCliController()
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="backlog-runner")
def backlog_runner() -> None:
    """Work through a task backlog with an autonomous coding agent."""


@backlog_runner.command("run")
@click.option(
    "--prd",
    type=click.Path(path_type=Path),
    default=None,
    help="Backlog file. Defaults to BACKLOG_RUNNER_PRD or `PRD.md`.",
)
@click.option(
    "--source",
    type=click.Choice(list(SUPPORTED_SOURCES), case_sensitive=False),
    default=None,
    help="Backlog format.",
)
@click.option(
    "--engine",
    default=None,
    help=f"Agent CLI preset: {', '.join(SUPPORTED_ENGINES)}.",
)
@click.option(
    "--command",
    "command_template",
    default=None,
    help="Custom engine command template. Supports {model}, {prompt}, {prompt_file} and {engine_args}.",
)
@click.option("--model", default=None, help="Fixed model id; disables model fallback.")
@click.option(
    "--parallel/--sequential",
    default=None,
    help="Run tasks concurrently in git worktrees, or one at a time.",
)
@click.option("--max-parallel", type=click.IntRange(min=1), default=None, help="Concurrent workers.")
@click.option(
    "--max-retries",
    type=click.IntRange(min=1),
    default=None,
    help="Attempts per task, and deferrals before a task is failed.",
)
@click.option(
    "--retry-delay",
    "retry_delay_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds between attempts.",
)
@click.option(
    "--max-iterations",
    type=click.IntRange(min=0),
    default=None,
    help="Stop after this many tasks (0 = unlimited).",
)
@click.option("--branch-per-task", is_flag=True, help="Create a git branch for every task.")
@click.option("--base-branch", default=None, help="Branch to fork from and merge back into.")
@click.option("--create-pr", is_flag=True, help="Open a pull request for each task branch.")
@click.option("--draft-pr", is_flag=True, help="Open pull requests as drafts.")
@click.option("--skip-merge", is_flag=True, help="Parallel mode: keep task branches unmerged.")
@click.option("--skip-tests", is_flag=True, help="Do not ask the agent to write and run tests.")
@click.option("--dry-run", is_flag=True, help="List the tasks that would run without calling the engine.")
@click.option(
    "--engine-arg",
    "engine_args",
    multiple=True,
    help="Extra argument passed to the engine CLI. Can be repeated.",
)
@click.option(
    "--work-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Repository the agent works in. Defaults to the current directory.",
)
@click.option(
    "--state-db",
    "state_db_path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite file for deferred-task counters.",
)
@click.option("--verbose", "-v", is_flag=True, help="Log engine output and debug details.")
def run(  # noqa: PLR0913
    prd: Path | None,
    source: str | None,
    engine: str | None,
    command_template: str | None,
    model: str | None,
    parallel: bool | None,
    max_parallel: int | None,
    max_retries: int | None,
    retry_delay_seconds: float | None,
    max_iterations: int | None,
    branch_per_task: bool,
    base_branch: str | None,
    create_pr: bool,
    draft_pr: bool,
    skip_merge: bool,
    skip_tests: bool,
    dry_run: bool,
    engine_args: tuple[str, ...],
    work_dir: Path | None,
    state_db_path: Path | None,
    verbose: bool,
) -> None:
    """Run backlog tasks until the backlog is empty or the run stops.

    Exits non-zero when any task failed.
    """

    _configure_logging(verbose=verbose)
    try:
        report = RUNNER_CONTROLLER.run(
            RunCommand(
                work_dir=work_dir or Path.cwd(),
                state_db_path=state_db_path,
                prd=prd,
                source=source.lower() if source else None,
                engine=engine,
                command_template=command_template,
                model=model,
                parallel=parallel,
                max_parallel=max_parallel,
                max_retries=max_retries,
                retry_delay_seconds=retry_delay_seconds,
                max_iterations=max_iterations,
                branch_per_task=branch_per_task,
                base_branch=base_branch,
                create_pr=create_pr or draft_pr,
                draft_pr=draft_pr,
                skip_merge=skip_merge,
                skip_tests=skip_tests,
                dry_run=dry_run,
                engine_args=engine_args,
                verbose=verbose,
            ),
        )
    except (ValueError, OrchestratorError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(report.lines)
    if report.exit_code != 0:
        raise click.ClickException(f"{report.result.tasks_failed} task(s) failed.")


@backlog_runner.group()
def deferred() -> None:
    """Inspect persistent retry counters."""


@deferred.command("list")
@click.option("--prd", type=click.Path(path_type=Path), default=None, help="Backlog file.")
@click.option(
    "--source",
    type=click.Choice(list(SUPPORTED_SOURCES), case_sensitive=False),
    default=None,
    help="Backlog format.",
)
@click.option("--work-dir", type=click.Path(path_type=Path, file_okay=False), default=None)
@click.option("--state-db", "state_db_path", type=click.Path(path_type=Path), default=None)
def deferred_list(
    prd: Path | None,
    source: str | None,
    work_dir: Path | None,
    state_db_path: Path | None,
) -> None:
    """List tasks deferred after retryable failures."""

    _emit_lines(
        RUNNER_CONTROLLER.list_deferred(
            DeferredCommand(
                work_dir=work_dir or Path.cwd(),
                state_db_path=state_db_path,
                prd=prd,
                source=source.lower() if source else None,
            ),
        ),
    )


@deferred.command("clear")
@click.option("--prd", type=click.Path(path_type=Path), default=None, help="Backlog file.")
@click.option(
    "--source",
    type=click.Choice(list(SUPPORTED_SOURCES), case_sensitive=False),
    default=None,
    help="Backlog format.",
)
@click.option("--work-dir", type=click.Path(path_type=Path, file_okay=False), default=None)
@click.option("--state-db", "state_db_path", type=click.Path(path_type=Path), default=None)
def deferred_clear(
    prd: Path | None,
    source: str | None,
    work_dir: Path | None,
    state_db_path: Path | None,
) -> None:
    """Reset deferral counters for a backlog."""

    _emit_lines(
        RUNNER_CONTROLLER.clear_deferred(
            DeferredCommand(
                work_dir=work_dir or Path.cwd(),
                state_db_path=state_db_path,
                prd=prd,
                source=source.lower() if source else None,
            ),
        ),
    )


def _configure_logging(*, verbose: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    backlog_runner()
