"""Bounded worker pool running tasks in isolated working copies."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from backlog_runner.orchestrator.deferred import DeferredTaskTracker
from backlog_runner.orchestrator.errors import GitCommandError, IsolationError
from backlog_runner.orchestrator.invocation import Invocation, TaskInvoker, failure_outcome
from backlog_runner.orchestrator.isolation import IsolationProvider, MergeTarget
from backlog_runner.orchestrator.models import (
    RUN_STOPPING_DISPOSITIONS,
    ExecutionResult,
    FailureClass,
    Task,
    TaskDisposition,
    TaskOutcome,
    WorkerSlot,
)
from backlog_runner.orchestrator.observer import ExecutionObserver
from backlog_runner.orchestrator.prompts import build_task_prompt
from backlog_runner.orchestrator.task_source import TaskSource

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ParallelOptions:
    base_branch: str
    max_parallel: int = 3
    max_retries: int = 3
    skip_merge: bool = False
    dry_run: bool = False
    skip_tests: bool = False
    auto_commit: bool = True
    prd_file: str | None = None


def group_tasks(tasks: list[Task]) -> list[tuple[int | None, list[Task]]]:
    """Partition by ``parallel_group``; ungrouped tasks form the first group."""

    groups: dict[int | None, list[Task]] = {}
    for task in tasks:
        groups.setdefault(task.parallel_group, []).append(task)
    ordered = sorted(groups, key=lambda group: (group is not None, group or 0))
    return [(group, groups[group]) for group in ordered]


class ParallelExecutor:
    """Runs each group of tasks with up to ``max_parallel`` concurrent workers.

    The coordinator thread owns every shared mutation: it acquires and
    releases isolation, records deferrals, merges branches and marks tasks
    complete. Worker threads only run the engine and post their invocation to
    a queue, so outcomes are handled in completion order. A run-stopping
    outcome (fatal, deferred or unknown) stops new dispatch; workers already
    running are allowed to finish. Working copies are only released once
    their worker has reported; a successful task whose leftovers cannot be
    collected onto its branch keeps its working copy and is reported failed.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        source: TaskSource,
        invoker: TaskInvoker,
        deferred: DeferredTaskTracker,
        isolation: IsolationProvider,
        merge_target: MergeTarget,
        options: ParallelOptions,
        observer: ExecutionObserver | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if options.max_parallel < 1:
            raise ValueError("max_parallel must be >= 1.")
        self.source = source
        self.invoker = invoker
        self.deferred = deferred
        self.isolation = isolation
        self.merge_target = merge_target
        self.options = options
        self.observer = observer or ExecutionObserver()
        self._clock = clock
        self._dispatched = 0

    def run(self) -> ExecutionResult:
        result = ExecutionResult()
        tasks = self.source.get_all_tasks()
        self.observer.on_run_start(mode="parallel", remaining=len(tasks))

        for group, members in group_tasks(tasks):
            logger.info(
                "Running group %s: %d task(s), up to %d in parallel",
                "default" if group is None else group,
                len(members),
                self.options.max_parallel,
            )
            if self._run_group(members, result):
                logger.warning("Stopping run; remaining groups are left pending")
                break

        self.source.flush()
        self.observer.on_run_end(result)
        return result

    def _run_group(self, tasks: list[Task], result: ExecutionResult) -> bool:
        """Run one group to completion; returns True when the run must stop."""

        pending = deque(tasks)
        completed: queue.Queue[tuple[WorkerSlot, Invocation]] = queue.Queue()
        in_flight: dict[str, WorkerSlot] = {}
        acquired: list[WorkerSlot] = []
        kept: set[str] = set()
        succeeded: list[tuple[WorkerSlot, TaskOutcome]] = []
        stopping = False

        try:
            while True:
                while not stopping and pending and len(in_flight) < self.options.max_parallel:
                    task = pending.popleft()
                    slot = self._dispatch(task, completed, result, remaining=len(pending))
                    if slot is None:
                        continue
                    acquired.append(slot)
                    in_flight[task.task_id] = slot

                if not in_flight:
                    break

                slot, invocation = completed.get()
                del in_flight[slot.task.task_id]
                outcome = self._disposition(slot, invocation, result)
                if outcome.succeeded:
                    outcome = self._collect(slot, outcome, result)
                if outcome.succeeded:
                    succeeded.append((slot, outcome))
                    continue
                if outcome.disposition == TaskDisposition.FAILED and invocation.succeeded:
                    kept.add(slot.task.task_id)
                self.observer.on_task_end(outcome)
                if outcome.disposition in RUN_STOPPING_DISPOSITIONS:
                    stopping = True
        finally:
            self._await_workers(in_flight, completed)
            for slot in acquired:
                if slot.task.task_id not in kept:
                    self._release(slot)

        self._merge_back(succeeded, result)
        return stopping

    def _dispatch(
        self,
        task: Task,
        completed: queue.Queue[tuple[WorkerSlot, Invocation]],
        result: ExecutionResult,
        *,
        remaining: int,
    ) -> WorkerSlot | None:
        self._dispatched += 1
        self.observer.on_task_start(task, iteration=self._dispatched, remaining=remaining)
        if self.options.dry_run:
            self.observer.on_task_end(TaskOutcome(task=task, disposition=TaskDisposition.SKIPPED))
            return None

        try:
            handle = self.isolation.acquire(self.options.base_branch, task)
        except IsolationError as error:
            result.tasks_failed += 1
            self.observer.on_task_end(
                TaskOutcome(task=task, disposition=TaskDisposition.FAILED, error=str(error)),
            )
            return None

        slot = WorkerSlot(task=task, handle=handle, started_at=self._clock())
        try:
            prompt = build_task_prompt(
                task,
                prd_file=self.options.prd_file,
                skip_tests=self.options.skip_tests,
                auto_commit=self.options.auto_commit,
                parallel=True,
            )
            worker = threading.Thread(
                target=self._worker,
                args=(slot, prompt, completed),
                name=f"backlog-worker-{self._dispatched}",
                daemon=True,
            )
            worker.start()
        except BaseException:
            self._release(slot)
            raise
        return slot

    def _worker(
        self,
        slot: WorkerSlot,
        prompt: str,
        completed: queue.Queue[tuple[WorkerSlot, Invocation]],
    ) -> None:
        try:
            invocation = self.invoker.invoke(prompt, slot.task, slot.handle.path)
        except Exception as error:  # noqa: BLE001
            logger.exception("Worker for %r crashed", slot.task.title)
            invocation = Invocation(
                result=None,
                model=None,
                error=str(error) or type(error).__name__,
                failure_class=FailureClass.UNKNOWN,
            )
        completed.put((slot, invocation))

    def _disposition(
        self,
        slot: WorkerSlot,
        invocation: Invocation,
        result: ExecutionResult,
    ) -> TaskOutcome:
        task = slot.task
        elapsed = self._clock() - slot.started_at
        if invocation.succeeded:
            assert invocation.result is not None  # noqa: S101
            logger.debug("Task %r finished in %.1fs", task.title, elapsed)
            result.add_tokens(invocation.result)
            self.deferred.clear(task)
            return TaskOutcome(
                task=task,
                disposition=TaskDisposition.SUCCEEDED,
                result=invocation.result,
                branch=slot.handle.branch,
                model=invocation.model,
            )

        result.tasks_failed += 1
        return failure_outcome(
            task,
            invocation,
            deferred=self.deferred,
            max_retries=self.options.max_retries,
            branch=slot.handle.branch,
        )

    def _merge_back(
        self,
        succeeded: list[tuple[WorkerSlot, TaskOutcome]],
        result: ExecutionResult,
    ) -> None:
        for slot, outcome in succeeded:
            branch = slot.handle.branch
            if self.options.skip_merge:
                self._complete(outcome, result)
                logger.info("Merge skipped; branch %s kept", branch)
                continue

            try:
                merge = self.merge_target.merge_branch(branch, self.options.base_branch)
            except GitCommandError as error:
                result.tasks_failed += 1
                outcome.disposition = TaskDisposition.FAILED
                outcome.error = str(error)
                self.observer.on_task_end(outcome)
                continue

            if not merge.merged:
                result.tasks_failed += 1
                if merge.conflict:
                    outcome.disposition = TaskDisposition.MERGE_CONFLICT
                    outcome.error = merge.detail or "merge conflict"
                else:
                    outcome.disposition = TaskDisposition.FAILED
                    outcome.error = merge.detail or f"{branch} was not merged"
                self.observer.on_task_end(outcome)
                continue

            self._complete(outcome, result)
            try:
                self.merge_target.delete_branch(branch)
            except GitCommandError as error:
                logger.warning("Could not delete merged branch %s: %s", branch, error)

    def _complete(self, outcome: TaskOutcome, result: ExecutionResult) -> None:
        self.source.mark_complete(outcome.task.task_id)
        result.tasks_completed += 1
        self.observer.on_task_end(outcome)

    def _collect(self, slot: WorkerSlot, outcome: TaskOutcome, result: ExecutionResult) -> TaskOutcome:
        try:
            self.isolation.collect(slot.handle, slot.task)
        except IsolationError as error:
            logger.error("Keeping %s for manual recovery: %s", slot.handle.path, error)
            result.tasks_failed += 1
            outcome.disposition = TaskDisposition.FAILED
            outcome.error = str(error)
        return outcome

    def _await_workers(
        self,
        in_flight: dict[str, WorkerSlot],
        completed: queue.Queue[tuple[WorkerSlot, Invocation]],
    ) -> None:
        """Block until every running worker has reported, so no working copy is torn down under it."""

        while in_flight:
            slot, _invocation = completed.get()
            in_flight.pop(slot.task.task_id, None)
            logger.warning("Discarding result of %r: the run was interrupted", slot.task.title)

    def _release(self, slot: WorkerSlot) -> None:
        try:
            self.isolation.release(slot.handle)
        except (IsolationError, GitCommandError, OSError) as error:
            logger.warning("Failed to release %s: %s", slot.handle.path, error)
