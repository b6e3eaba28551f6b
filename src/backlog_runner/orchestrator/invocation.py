"""Per-task engine invocation shared by both executors."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from pathlib import Path

from backlog_runner.orchestrator.backend.base import AIEngine, StreamingAIEngine
from backlog_runner.orchestrator.deferred import DeferredTaskTracker
from backlog_runner.orchestrator.errors import EngineRunError, RetryableAttemptError
from backlog_runner.orchestrator.failure_classifier import classify_failure, is_retryable_error
from backlog_runner.orchestrator.fallback import ModelFallbackManager
from backlog_runner.orchestrator.models import (
    AIResult,
    EngineOptions,
    FailureClass,
    Task,
    TaskDisposition,
    TaskOutcome,
)
from backlog_runner.orchestrator.observer import ExecutionObserver
from backlog_runner.orchestrator.retry import RetryPolicy

logger = logging.getLogger(__name__)

RECENT_LINES = 50


@dataclass(slots=True)
class Invocation:
    """Final state of a task invocation after retries and fallback."""

    result: AIResult | None
    model: str | None
    attempts: int = 1
    error: str | None = None
    failure_class: FailureClass | None = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None and self.result.success


class TaskInvoker:
    """Runs one prompt with retry around attempts and model fallback between them.

    The retry policy decides *whether* another attempt runs; the fallback
    manager decides *which* model it uses. Each attempt re-resolves the model
    unless a fixed ``model_override`` was given.
    """

    def __init__(
        self,
        engine: AIEngine,
        *,
        fallback: ModelFallbackManager,
        retry_policy: RetryPolicy,
        options: EngineOptions | None = None,
        observer: ExecutionObserver | None = None,
    ) -> None:
        self.engine = engine
        self.fallback = fallback
        self.retry_policy = retry_policy
        self.options = options or EngineOptions()
        self.observer = observer or ExecutionObserver()
        self._recent: deque[str] = deque(maxlen=RECENT_LINES)

    @property
    def recent_output(self) -> str:
        return "\n".join(self._recent)

    def resolve_model(self) -> str:
        return self.options.model_override or self.fallback.get_current_model()

    def invoke(self, prompt: str, task: Task, work_dir: Path) -> Invocation:
        """Run ``prompt`` for ``task`` and classify the final failure, if any."""

        attempts = 0
        last_model: str | None = None

        def _attempt(attempt: int) -> AIResult:
            nonlocal attempts, last_model
            attempts = attempt
            model = self.resolve_model()
            last_model = model
            try:
                result = self.call_engine(prompt, work_dir, model=model, task=task)
            except EngineRunError as error:
                if error.transient:
                    raise RetryableAttemptError(str(error), model=model) from error
                raise
            if result.success:
                return result

            message = result.error or "Unknown error"
            should_retry = False
            if not self.options.model_override:
                decision = self.fallback.handle_error(message)
                should_retry = decision.should_retry
            if should_retry or is_retryable_error(message):
                raise RetryableAttemptError(message, model=model)
            return result

        def _on_retry(attempt: int, _error: RetryableAttemptError) -> None:
            logger.info(
                "Retrying %r (attempt %d/%d) on model %s",
                task.title,
                attempt,
                self.retry_policy.max_retries,
                self.resolve_model(),
            )

        try:
            result = self.retry_policy.run(_attempt, on_retry=_on_retry)
        except RetryableAttemptError as error:
            return Invocation(
                result=None,
                model=error.model or last_model,
                attempts=attempts,
                error=str(error),
                failure_class=FailureClass.RETRYABLE,
            )
        except EngineRunError as error:
            return Invocation(
                result=None,
                model=last_model,
                attempts=attempts,
                error=str(error),
                failure_class=classify_failure(str(error)).failure_class,
            )

        if result.success:
            if not self.options.model_override:
                self.fallback.record_success(last_model)
            return Invocation(result=result, model=last_model, attempts=attempts)

        error_text = result.error or "Unknown error"
        return Invocation(
            result=result,
            model=last_model,
            attempts=attempts,
            error=error_text,
            failure_class=classify_failure(error_text).failure_class,
        )

    def call_engine(self, prompt: str, work_dir: Path, *, model: str | None, task: Task | None) -> AIResult:
        """Single engine call, streaming when the engine supports it."""

        options = EngineOptions(model_override=model, engine_args=self.options.engine_args)
        if isinstance(self.engine, StreamingAIEngine):

            def _on_progress(step: str, raw_line: str | None) -> None:
                if raw_line:
                    self._recent.append(raw_line)
                if task is not None:
                    self.observer.on_progress(task, step, raw_line)

            return self.engine.execute_streaming(prompt, work_dir, _on_progress, options)
        return self.engine.execute(prompt, work_dir, options)


def failure_outcome(
    task: Task,
    invocation: Invocation,
    *,
    deferred: DeferredTaskTracker,
    max_retries: int,
    branch: str | None = None,
) -> TaskOutcome:
    """Map a failed invocation to a disposition, updating the deferral counter."""

    error = invocation.error or "Unknown error"
    deferrals = 0
    if invocation.failure_class == FailureClass.RETRYABLE:
        deferrals = deferred.record(task, error=error)
        if deferrals >= max_retries:
            deferred.clear(task)
            disposition = TaskDisposition.FAILED
        else:
            disposition = TaskDisposition.DEFERRED
    elif invocation.failure_class == FailureClass.FATAL:
        disposition = TaskDisposition.FATAL
    else:
        deferred.clear(task)
        disposition = TaskDisposition.UNKNOWN
    return TaskOutcome(
        task=task,
        disposition=disposition,
        result=invocation.result,
        error=error,
        deferrals=deferrals,
        branch=branch,
        model=invocation.model,
    )
