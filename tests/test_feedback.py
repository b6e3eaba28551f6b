from __future__ import annotations

import io
from pathlib import Path

import allure

from backlog_runner.orchestrator.feedback import FeedbackChannel, extract_feedback, start_stdin_reader
from backlog_runner.orchestrator.models import AIResult, Task, TaskDisposition, TaskOutcome
from backlog_runner.orchestrator.observer import CompositeObserver, ExecutionObserver, ProgressFileObserver
from backlog_runner.orchestrator.prompts import (
    RECENT_OUTPUT_LIMIT,
    build_chat_prompt,
    build_follow_up_prompt,
    build_task_prompt,
)

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Feedback and Prompts"),
]

TASK = Task(task_id="line-3", title="Add login form", body="Add login form\nUse the auth client.")


def test_channel_drops_blank_and_overflowing_messages() -> None:
    channel = FeedbackChannel(maxsize=2)

    assert not channel.submit("   ")
    assert channel.submit(" first ")
    assert channel.submit("second")
    assert not channel.submit("third")

    assert channel.drain() == ["first", "second"]
    assert channel.drain() == []
    assert channel.wait_for_message(0.01) is None


def test_stdin_reader_forwards_lines() -> None:
    channel = FeedbackChannel()

    start_stdin_reader(channel, io.StringIO("hello\n\nworld\n")).join(timeout=5)

    assert channel.drain() == ["hello", "world"]


def test_extract_feedback_reads_fenced_block() -> None:
    response = "Noted. I will apply this.\n```FEEDBACK\nUse snake_case\nfor new helpers\n```\n"

    assert extract_feedback(response) == "Use snake_case\nfor new helpers"
    assert extract_feedback("Just answering a question.") is None


def test_task_prompt_includes_body_rules_and_feedback() -> None:
    prompt = build_task_prompt(TASK, prd_file="PRD.md", feedback=["Use snake_case"])

    assert "## Task\nAdd login form\nUse the auth client." in prompt
    assert "- PRD.md" in prompt
    assert "## User Feedback (apply while doing this task)\n- Use snake_case" in prompt
    assert "Write tests for the change" in prompt
    assert "conventional commits" in prompt


def test_task_prompt_respects_skip_tests_and_parallel_mode() -> None:
    prompt = build_task_prompt(TASK, skip_tests=True, auto_commit=False, parallel=True)

    assert prompt.startswith("You are working on a specific task.")
    assert "Do NOT mark tasks complete" in prompt
    assert "Write tests" not in prompt
    assert "commit" not in prompt
    assert "User Feedback" not in prompt


def test_chat_prompt_truncates_recent_output() -> None:
    recent = "x" * (RECENT_OUTPUT_LIMIT + 500)

    prompt = build_chat_prompt("what are you doing?", task=TASK, recent_output=recent)

    assert "Active Task: Add login form" in prompt
    assert "..." + "x" * RECENT_OUTPUT_LIMIT in prompt
    assert "x" * (RECENT_OUTPUT_LIMIT + 1) not in prompt
    assert "Idle (No active task)" in build_chat_prompt("hi", task=None)


def test_follow_up_prompt_names_previous_task() -> None:
    prompt = build_follow_up_prompt("rename the button", TASK)

    assert "### User Message:\nrename the button" in prompt
    assert "### Previous Task:\nAdd login form" in prompt


def test_progress_file_and_composite_observer(tmp_path: Path) -> None:
    seen: list[TaskDisposition] = []

    class _Recorder(ExecutionObserver):
        def on_task_end(self, outcome: TaskOutcome) -> None:
            seen.append(outcome.disposition)

    path = tmp_path / "logs" / "progress.txt"
    observer = CompositeObserver([ProgressFileObserver(path), _Recorder()])

    observer.on_task_end(TaskOutcome(task=TASK, disposition=TaskDisposition.SUCCEEDED, result=AIResult(success=True)))
    observer.on_task_end(TaskOutcome(task=TASK, disposition=TaskDisposition.SKIPPED))
    observer.on_task_end(TaskOutcome(task=TASK, disposition=TaskDisposition.FATAL, error="Invalid API key"))

    lines = path.read_text("utf-8").splitlines()
    assert [line.split("] ", 1)[1] for line in lines] == ["completed: Add login form", "failed: Add login form"]
    assert seen == [TaskDisposition.SUCCEEDED, TaskDisposition.SKIPPED, TaskDisposition.FATAL]
