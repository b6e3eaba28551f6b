"""Engine backend implementations."""

from backlog_runner.orchestrator.backend.base import AIEngine, ProgressCallback, StreamingAIEngine
from backlog_runner.orchestrator.backend.cli_backend import (
    SUPPORTED_ENGINES,
    CliAgentEngine,
    create_engine,
)

__all__ = [
    "SUPPORTED_ENGINES",
    "AIEngine",
    "CliAgentEngine",
    "ProgressCallback",
    "StreamingAIEngine",
    "create_engine",
]
