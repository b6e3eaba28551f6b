"""In-memory collaborators for executor tests."""

from __future__ import annotations

import sys
import threading
from collections.abc import Callable, Collection
from pathlib import Path

from backlog_runner.orchestrator.errors import IsolationError
from backlog_runner.orchestrator.fallback import ModelConfig, ModelFallbackManager
from backlog_runner.orchestrator.git import MergeResult
from backlog_runner.orchestrator.invocation import TaskInvoker
from backlog_runner.orchestrator.models import AIResult, EngineOptions, IsolationHandle, Task
from backlog_runner.orchestrator.retry import RetryPolicy

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m backlog_runner.orchestrator.backend.echo_agent "
    "--prompt-file {prompt_file} --model {model}"
)

TEST_MODEL_CONFIG = ModelConfig(primary="primary-model", fallback="fallback-model", retry_interval_seconds=300)

Responder = Callable[[str, Path, EngineOptions], AIResult]


class FakeEngine:
    """Scripted engine: results are popped in order, the last one repeats."""

    name = "fake"
    default_model = "primary-model"

    def __init__(self, results: list[AIResult] | None = None, responder: Responder | None = None) -> None:
        self.results = list(results or [AIResult(success=True, response="done")])
        self.responder = responder
        self.calls: list[tuple[str, Path, EngineOptions]] = []
        self._lock = threading.Lock()

    def execute(self, prompt: str, work_dir: Path, options: EngineOptions) -> AIResult:
        with self._lock:
            self.calls.append((prompt, work_dir, options))
            if self.responder is None:
                return self.results.pop(0) if len(self.results) > 1 else self.results[0]
        return self.responder(prompt, work_dir, options)

    @property
    def models(self) -> list[str | None]:
        return [options.model_override for _prompt, _work_dir, options in self.calls]


class InMemoryTaskSource:
    source_type = "memory"

    def __init__(self, tasks: list[Task]) -> None:
        self.tasks = list(tasks)
        self.completed: list[str] = []
        self.flushes = 0
        self._lock = threading.Lock()

    def get_next_task(self, exclude: Collection[str] = ()) -> Task | None:
        for task in self.get_all_tasks():
            if task.task_id not in exclude:
                return task
        return None

    def get_all_tasks(self) -> list[Task]:
        return [task for task in self.tasks if task.task_id not in self.completed]

    def count_remaining(self) -> int:
        return len(self.get_all_tasks())

    def mark_complete(self, task_id: str) -> None:
        with self._lock:
            self.completed.append(task_id)

    def flush(self) -> None:
        self.flushes += 1

    def close(self) -> None:
        return


class FakeIsolation:
    def __init__(
        self,
        root: Path,
        *,
        fail_for: Collection[str] = (),
        uncollectable: Collection[str] = (),
    ) -> None:
        self.root = root
        self.fail_for = set(fail_for)
        self.uncollectable = set(uncollectable)
        self.acquired: list[IsolationHandle] = []
        self.collected: list[IsolationHandle] = []
        self.released: list[IsolationHandle] = []
        self._lock = threading.Lock()

    def acquire(self, base_branch: str, task: Task) -> IsolationHandle:
        if task.task_id in self.fail_for:
            raise IsolationError(f"cannot isolate {task.task_id}")
        handle = IsolationHandle(path=self.root / task.task_id, branch=f"backlog/{task.task_id}")
        with self._lock:
            self.acquired.append(handle)
        return handle

    def collect(self, handle: IsolationHandle, task: Task) -> None:
        if task.task_id in self.uncollectable:
            raise IsolationError(f"cannot commit leftovers of {task.task_id}")
        self.collected.append(handle)

    def release(self, handle: IsolationHandle) -> None:
        with self._lock:
            self.released.append(handle)


class FakeMergeTarget:
    def __init__(self, *, conflicts: Collection[str] = (), empty: Collection[str] = ()) -> None:
        self.conflicts = set(conflicts)
        self.empty = set(empty)
        self.merged: list[str] = []
        self.deleted: list[str] = []

    def merge_branch(self, branch: str, into: str) -> MergeResult:
        if branch in self.conflicts:
            return MergeResult(branch=branch, merged=False, conflict=True, detail="README.md")
        if branch in self.empty:
            return MergeResult(branch=branch, merged=False, detail=f"{branch} has no commits ahead of {into}")
        self.merged.append(branch)
        return MergeResult(branch=branch, merged=True)

    def delete_branch(self, branch: str) -> None:
        self.deleted.append(branch)


def make_tasks(count: int, *, group: int | None = None) -> list[Task]:
    return [
        Task(task_id=f"task-{index}", title=f"Task {index}", parallel_group=group)
        for index in range(1, count + 1)
    ]


def make_invoker(engine: FakeEngine, *, max_retries: int = 3, model_override: str | None = None) -> TaskInvoker:
    return TaskInvoker(
        engine,
        fallback=ModelFallbackManager("fake", TEST_MODEL_CONFIG),
        retry_policy=RetryPolicy(max_retries=max_retries, retry_delay_seconds=0),
        options=EngineOptions(model_override=model_override),
    )


