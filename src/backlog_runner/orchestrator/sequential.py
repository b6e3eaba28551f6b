"""One-task-at-a-time backlog loop."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from backlog_runner.orchestrator.deferred import DeferredTaskTracker
from backlog_runner.orchestrator.errors import GitCommandError
from backlog_runner.orchestrator.feedback import FeedbackChannel, extract_feedback
from backlog_runner.orchestrator.git import GitRepository
from backlog_runner.orchestrator.invocation import Invocation, TaskInvoker, failure_outcome
from backlog_runner.orchestrator.models import (
    RUN_STOPPING_DISPOSITIONS,
    ExecutionResult,
    Task,
    TaskDisposition,
    TaskOutcome,
)
from backlog_runner.orchestrator.observer import ExecutionObserver
from backlog_runner.orchestrator.prompts import (
    build_chat_prompt,
    build_follow_up_prompt,
    build_task_prompt,
)
from backlog_runner.orchestrator.task_source import TaskSource

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SequentialOptions:
    work_dir: Path
    max_retries: int = 3
    max_iterations: int = 0
    dry_run: bool = False
    interactive: bool = False
    follow_up_timeout_seconds: float = 3.0
    branch_per_task: bool = False
    base_branch: str | None = None
    create_pr: bool = False
    draft_pr: bool = False
    skip_tests: bool = False
    auto_commit: bool = True
    prd_file: str | None = None


class SequentialExecutor:
    """Runs backlog tasks one by one until the source is empty or the run stops.

    Retryable failures bump a persistent deferral counter: once a task has been
    deferred ``max_retries`` times it is reported failed and the loop moves on,
    otherwise the run stops so a live rate limit does not burn through the
    rest of the backlog. Fatal and unknown failures stop the run as well.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        source: TaskSource,
        invoker: TaskInvoker,
        deferred: DeferredTaskTracker,
        options: SequentialOptions,
        observer: ExecutionObserver | None = None,
        channel: FeedbackChannel | None = None,
        repo: GitRepository | None = None,
    ) -> None:
        self.source = source
        self.invoker = invoker
        self.deferred = deferred
        self.options = options
        self.observer = observer or ExecutionObserver()
        self.channel = channel or FeedbackChannel()
        self.repo = repo
        self._pending_feedback: list[str] = []

    def run(self) -> ExecutionResult:
        result = ExecutionResult()
        attempted: set[str] = set()
        iteration = 0
        self.observer.on_run_start(mode="sequential", remaining=self.source.count_remaining())

        while True:
            self._process_chat(current_task=None)

            if self.options.max_iterations > 0 and iteration >= self.options.max_iterations:
                logger.info("Reached max iterations (%d)", self.options.max_iterations)
                break

            task = self.source.get_next_task(exclude=attempted)
            if task is None:
                logger.info("No more tasks to run")
                break
            attempted.add(task.task_id)
            iteration += 1
            self.observer.on_task_start(
                task,
                iteration=iteration,
                remaining=self.source.count_remaining(),
            )

            outcome = self._run_task(task, result)
            self.observer.on_task_end(outcome)
            if outcome.disposition in RUN_STOPPING_DISPOSITIONS:
                break

        self.source.flush()
        self.observer.on_run_end(result)
        return result

    def _run_task(self, task: Task, result: ExecutionResult) -> TaskOutcome:
        branch = self._create_branch(task)
        try:
            if self.options.dry_run:
                return TaskOutcome(task=task, disposition=TaskDisposition.SKIPPED, branch=branch)

            prompt = build_task_prompt(
                task,
                prd_file=self.options.prd_file,
                skip_tests=self.options.skip_tests,
                auto_commit=self.options.auto_commit,
                feedback=self._take_feedback(),
            )
            invocation = self.invoker.invoke(prompt, task, self.options.work_dir)
            if invocation.succeeded:
                return self._on_success(task, invocation, result, branch)
            return self._on_failure(task, invocation, result, branch)
        finally:
            if branch is not None and self.repo is not None and self.options.base_branch:
                try:
                    self.repo.return_to_base_branch(self.options.base_branch)
                except GitCommandError as error:
                    logger.error("Failed to return to %s: %s", self.options.base_branch, error)

    def _on_success(
        self,
        task: Task,
        invocation: Invocation,
        result: ExecutionResult,
        branch: str | None,
    ) -> TaskOutcome:
        ai_result = invocation.result
        assert ai_result is not None  # noqa: S101
        self.source.mark_complete(task.task_id)
        self.deferred.clear(task)
        result.tasks_completed += 1
        result.add_tokens(ai_result)

        if self.options.create_pr and branch and self.repo is not None and self.options.base_branch:
            try:
                url = self.repo.create_pull_request(
                    branch=branch,
                    base_branch=self.options.base_branch,
                    title=task.title,
                    body=f"Automated PR created by backlog-runner\n\n{ai_result.response}",
                    draft=self.options.draft_pr,
                )
            except GitCommandError as error:
                logger.error("Failed to create pull request for %s: %s", branch, error)
            else:
                if url:
                    logger.info("PR created: %s", url)

        if self.options.interactive:
            self._follow_up(task, result)

        return TaskOutcome(
            task=task,
            disposition=TaskDisposition.SUCCEEDED,
            result=ai_result,
            branch=branch,
            model=invocation.model,
        )

    def _on_failure(
        self,
        task: Task,
        invocation: Invocation,
        result: ExecutionResult,
        branch: str | None,
    ) -> TaskOutcome:
        result.tasks_failed += 1
        outcome = failure_outcome(
            task,
            invocation,
            deferred=self.deferred,
            max_retries=self.options.max_retries,
            branch=branch,
        )
        if outcome.disposition == TaskDisposition.FAILED:
            logger.error(
                "Task %r failed after %d deferral(s); leaving it unchecked",
                task.title,
                outcome.deferrals,
            )
        return outcome

    def _create_branch(self, task: Task) -> str | None:
        if not self.options.branch_per_task or self.repo is None or not self.options.base_branch:
            return None
        try:
            return self.repo.create_task_branch(task.title, self.options.base_branch)
        except GitCommandError as error:
            logger.error("Failed to create branch for %r: %s", task.title, error)
            return None

    def _follow_up(self, task: Task, result: ExecutionResult) -> None:
        message = self.channel.wait_for_message(self.options.follow_up_timeout_seconds)
        if message is None:
            return
        logger.info("Processing your message: %s", message)
        try:
            follow_up = self.invoker.call_engine(
                build_follow_up_prompt(message, task),
                self.options.work_dir,
                model=self.invoker.resolve_model(),
                task=task,
            )
        except Exception as error:  # noqa: BLE001
            logger.error("Follow-up message failed: %s", error)
            return
        if follow_up.success:
            result.add_tokens(follow_up)
        else:
            logger.error("Follow-up message failed: %s", follow_up.error)

    def _process_chat(self, *, current_task: Task | None) -> None:
        for message in self.channel.drain():
            if self.options.dry_run:
                logger.info("(dry run) Ignoring chat message: %s", message)
                continue
            logger.info("Processing chat message: %s", message)
            try:
                reply = self.invoker.call_engine(
                    build_chat_prompt(
                        message,
                        task=current_task,
                        recent_output=self.invoker.recent_output,
                    ),
                    self.options.work_dir,
                    model=self.invoker.resolve_model(),
                    task=None,
                )
            except Exception as error:  # noqa: BLE001
                logger.error("Chat error: %s", error)
                continue
            if not reply.success:
                logger.error("Chat failed: %s", reply.error)
                continue
            self.observer.on_chat_response(message, reply.response)
            feedback = extract_feedback(reply.response)
            if feedback:
                logger.warning("Feedback captured: %r. Will apply to the next task.", feedback)
                self._pending_feedback.append(feedback)

    def _take_feedback(self) -> list[str]:
        feedback, self._pending_feedback = self._pending_feedback, []
        return feedback
