"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from backlog_runner.orchestrator.deferred import DeferredTaskTracker


@pytest.fixture()
def deferred_tracker(tmp_path: Path):
    tracker = DeferredTaskTracker(tmp_path / "state.db", source_type="memory", scope="PRD.md")
    yield tracker
    tracker.close()
