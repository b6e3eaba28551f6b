"""Exceptions raised across the orchestrator."""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for orchestrator failures."""


class RetryableAttemptError(OrchestratorError):
    """Engine attempt failed in a way that another attempt may fix."""

    def __init__(self, message: str, *, model: str | None = None) -> None:
        super().__init__(message)
        self.model = model


class EngineRunError(OrchestratorError):
    """Engine process could not be run, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class GitCommandError(OrchestratorError):
    """A git or gh command exited with a non-zero status."""

    def __init__(self, command: list[str], returncode: int, stderr: str) -> None:
        super().__init__(
            f"{' '.join(command)} exited with code {returncode}: {stderr.strip() or '-'}",
        )
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class IsolationError(OrchestratorError):
    """Isolated working copy could not be created or removed."""


class TaskSourceError(OrchestratorError):
    """Backlog could not be read or updated."""
