"""Run observers injected into the executors."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from backlog_runner.orchestrator.models import ExecutionResult, Task, TaskDisposition, TaskOutcome
from backlog_runner.orchestrator.storage import utc_now

logger = logging.getLogger(__name__)


class ExecutionObserver:
    """No-op base; subclasses override the hooks they care about."""

    def on_run_start(self, *, mode: str, remaining: int) -> None:
        return

    def on_task_start(self, task: Task, *, iteration: int, remaining: int) -> None:
        return

    def on_progress(self, task: Task, step: str, raw_line: str | None) -> None:
        return

    def on_task_end(self, outcome: TaskOutcome) -> None:
        return

    def on_chat_response(self, message: str, response: str) -> None:
        return

    def on_run_end(self, result: ExecutionResult) -> None:
        return


class LoggingObserver(ExecutionObserver):
    def __init__(self, *, verbose: bool = False) -> None:
        self.verbose = verbose

    def on_run_start(self, *, mode: str, remaining: int) -> None:
        logger.info("Starting %s run: %d task(s) remaining", mode, remaining)

    def on_task_start(self, task: Task, *, iteration: int, remaining: int) -> None:
        logger.info("Task %d: %s (%d remaining)", iteration, task.title, remaining)

    def on_progress(self, task: Task, step: str, raw_line: str | None) -> None:
        if self.verbose and raw_line:
            logger.debug("[%s] %s | %s", task.task_id, step, raw_line)

    def on_task_end(self, outcome: TaskOutcome) -> None:
        title = outcome.task.title
        if outcome.disposition == TaskDisposition.SUCCEEDED:
            tokens = ""
            if outcome.result is not None:
                tokens = f" (tokens in={outcome.result.input_tokens} out={outcome.result.output_tokens})"
            logger.info("Completed: %s%s", title, tokens)
        elif outcome.disposition == TaskDisposition.SKIPPED:
            logger.info("(dry run) Skipped: %s", title)
        elif outcome.disposition == TaskDisposition.DEFERRED:
            logger.warning(
                "Temporary failure, stopping early (%d deferral(s)) on %r: %s",
                outcome.deferrals,
                title,
                outcome.error,
            )
        elif outcome.disposition == TaskDisposition.FATAL:
            logger.error("Fatal error on %r: %s", title, outcome.error)
            logger.error(
                "Aborting remaining tasks: likely an authentication or configuration problem "
                "with the engine. Check credentials and that the engine CLI is installed.",
            )
        elif outcome.disposition == TaskDisposition.MERGE_CONFLICT:
            logger.error(
                "Merge conflict for %r; branch %s kept for manual resolution",
                title,
                outcome.branch,
            )
        else:
            logger.error("Task %r failed: %s", title, outcome.error)

    def on_chat_response(self, message: str, response: str) -> None:
        logger.info("Chat > %s", message)
        logger.info("Chat < %s", response)

    def on_run_end(self, result: ExecutionResult) -> None:
        logger.info(
            "Run finished: completed=%d failed=%d tokens in=%d out=%d",
            result.tasks_completed,
            result.tasks_failed,
            result.total_input_tokens,
            result.total_output_tokens,
        )


class ProgressFileObserver(ExecutionObserver):
    """Appends one line per finished task to a progress log in the work dir."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def on_task_end(self, outcome: TaskOutcome) -> None:
        if outcome.disposition == TaskDisposition.SKIPPED:
            return
        status = "completed" if outcome.succeeded else "failed"
        line = f"[{utc_now().isoformat(timespec='seconds')}] {status}: {outcome.task.title}\n"
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line)


class CompositeObserver(ExecutionObserver):
    def __init__(self, observers: list[ExecutionObserver]) -> None:
        self.observers = observers

    def on_run_start(self, *, mode: str, remaining: int) -> None:
        for observer in self.observers:
            observer.on_run_start(mode=mode, remaining=remaining)

    def on_task_start(self, task: Task, *, iteration: int, remaining: int) -> None:
        for observer in self.observers:
            observer.on_task_start(task, iteration=iteration, remaining=remaining)

    def on_progress(self, task: Task, step: str, raw_line: str | None) -> None:
        for observer in self.observers:
            observer.on_progress(task, step, raw_line)

    def on_task_end(self, outcome: TaskOutcome) -> None:
        for observer in self.observers:
            observer.on_task_end(outcome)

    def on_chat_response(self, message: str, response: str) -> None:
        for observer in self.observers:
            observer.on_chat_response(message, response)

    def on_run_end(self, result: ExecutionResult) -> None:
        for observer in self.observers:
            observer.on_run_end(result)
