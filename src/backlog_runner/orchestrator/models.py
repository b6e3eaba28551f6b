"""Domain models for backlog task execution."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class FailureClass(str, Enum):
    """Normalized failure classes used by the retry policy."""

    RETRYABLE = "retryable"
    FATAL = "fatal"
    UNKNOWN = "unknown"
    MERGE_CONFLICT = "merge_conflict"


class TaskDisposition(str, Enum):
    """Terminal state of one task within a run."""

    SUCCEEDED = "succeeded"
    DEFERRED = "deferred"
    FAILED = "failed"
    FATAL = "fatal"
    UNKNOWN = "unknown"
    MERGE_CONFLICT = "merge_conflict"
    SKIPPED = "skipped"


RUN_STOPPING_DISPOSITIONS = frozenset(
    {TaskDisposition.DEFERRED, TaskDisposition.FATAL, TaskDisposition.UNKNOWN},
)


@dataclass(frozen=True, slots=True)
class Task:
    """One unit of backlog work issued by a task source."""

    task_id: str
    title: str
    body: str | None = None
    parallel_group: int | None = None

    @property
    def description(self) -> str:
        return self.body or self.title


@dataclass(frozen=True, slots=True)
class AIResult:
    """Outcome of a single engine invocation."""

    success: bool
    response: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost: str | None = None
    error: str | None = None


@dataclass(slots=True)
class ExecutionResult:
    """Running totals for one orchestrator run."""

    tasks_completed: int = 0
    tasks_failed: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0

    def add_tokens(self, result: AIResult) -> None:
        self.total_input_tokens += max(0, result.input_tokens)
        self.total_output_tokens += max(0, result.output_tokens)

    @property
    def exit_code(self) -> int:
        return 1 if self.tasks_failed > 0 else 0


@dataclass(slots=True)
class FallbackState:
    """Mutable state of the model fallback state machine."""

    in_fallback: bool = False
    fallback_started_at: float | None = None
    last_rate_limit_at: float | None = None
    rate_limit_count: int = 0


@dataclass(frozen=True, slots=True)
class EngineOptions:
    """Per-invocation options passed to an engine."""

    model_override: str | None = None
    engine_args: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class IsolationHandle:
    """Private working copy and branch handed to one parallel worker."""

    path: Path
    branch: str


@dataclass(slots=True)
class WorkerSlot:
    """A task dispatched into an isolated working copy."""

    task: Task
    handle: IsolationHandle
    started_at: float


@dataclass(slots=True)
class TaskOutcome:
    """Disposition of one task attempt, reported to observers."""

    task: Task
    disposition: TaskDisposition
    result: AIResult | None = None
    error: str | None = None
    deferrals: int = 0
    branch: str | None = None
    model: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.disposition == TaskDisposition.SUCCEEDED
