"""Engine interface for task execution."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Protocol, runtime_checkable

from backlog_runner.orchestrator.models import AIResult, EngineOptions

ProgressCallback = Callable[[str, str | None], None]


class AIEngine(Protocol):
    """Protocol implemented by engine runners."""

    name: str
    default_model: str | None

    def execute(self, prompt: str, work_dir: Path, options: EngineOptions) -> AIResult:
        """Run a prompt to completion and return the parsed result."""


@runtime_checkable
class StreamingAIEngine(AIEngine, Protocol):
    """Engine that also reports progress while running."""

    def execute_streaming(
        self,
        prompt: str,
        work_dir: Path,
        on_progress: ProgressCallback,
        options: EngineOptions,
    ) -> AIResult:
        """Run a prompt, calling ``on_progress(step, raw_line)`` per output line."""
