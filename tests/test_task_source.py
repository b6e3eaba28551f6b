from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
import yaml

from backlog_runner.orchestrator.errors import TaskSourceError
from backlog_runner.orchestrator.task_source import (
    CachedTaskSource,
    JsonTaskSource,
    MarkdownTaskSource,
    YamlTaskSource,
    create_task_source,
)

pytestmark = [
    allure.epic("Backlog"),
    allure.feature("Task Sources"),
]

MARKDOWN_BACKLOG = """\
# Tasks

- [x] Set up project
- [ ] Add login form <!-- group: 2 -->
  Use the existing auth client.
  Show validation errors inline.
- [ ] Write README
"""


def test_markdown_source_lists_unchecked_tasks_with_groups_and_bodies(tmp_path: Path) -> None:
    path = tmp_path / "PRD.md"
    path.write_text(MARKDOWN_BACKLOG, "utf-8")
    source = MarkdownTaskSource(path)

    tasks = source.get_all_tasks()

    assert [task.title for task in tasks] == ["Add login form", "Write README"]
    login = tasks[0]
    assert login.task_id == "line-4"
    assert login.parallel_group == 2
    assert login.body == (
        "Add login form\nUse the existing auth client.\nShow validation errors inline."
    )
    assert tasks[1].parallel_group is None
    assert tasks[1].body is None
    assert source.count_remaining() == 2


def test_markdown_mark_complete_checks_the_box(tmp_path: Path) -> None:
    path = tmp_path / "PRD.md"
    path.write_text(MARKDOWN_BACKLOG, "utf-8")
    source = MarkdownTaskSource(path)

    source.mark_complete("line-7")

    assert "- [x] Write README" in path.read_text("utf-8")
    assert source.get_next_task().title == "Add login form"
    assert source.get_next_task(exclude={"line-4"}) is None


def test_markdown_mark_complete_rejects_unknown_ids(tmp_path: Path) -> None:
    path = tmp_path / "PRD.md"
    path.write_text(MARKDOWN_BACKLOG, "utf-8")

    with pytest.raises(TaskSourceError):
        MarkdownTaskSource(path).mark_complete("line-1")


def test_json_source_reads_and_completes_tasks(tmp_path: Path) -> None:
    path = tmp_path / "tasks.json"
    path.write_text(
        json.dumps(
            {
                "tasks": [
                    {"id": "a", "title": "First", "completed": True},
                    {"id": "b", "title": "Second", "body": "Details", "parallel_group": 1},
                    {"title": "Third"},
                ],
            },
        ),
        "utf-8",
    )
    source = JsonTaskSource(path)

    tasks = source.get_all_tasks()
    assert [task.task_id for task in tasks] == ["b", "task-3"]
    assert tasks[0].body == "Details"
    assert tasks[0].parallel_group == 1

    source.mark_complete("task-3")
    payload = json.loads(path.read_text("utf-8"))
    assert payload["tasks"][2]["completed"] is True
    assert source.count_remaining() == 1


def test_json_source_rejects_malformed_files(tmp_path: Path) -> None:
    path = tmp_path / "tasks.json"
    path.write_text('{"items": []}', "utf-8")

    with pytest.raises(TaskSourceError, match="tasks"):
        JsonTaskSource(path).get_all_tasks()


def test_cached_source_buffers_completions_until_flush(tmp_path: Path) -> None:
    path = tmp_path / "PRD.md"
    path.write_text(MARKDOWN_BACKLOG, "utf-8")
    cached = CachedTaskSource(MarkdownTaskSource(path))

    cached.mark_complete("line-4")
    cached.mark_complete("line-4")

    assert cached.count_remaining() == 1
    assert "- [ ] Add login form" in path.read_text("utf-8")

    cached.close()
    assert "- [x] Add login form" in path.read_text("utf-8")
    assert MarkdownTaskSource(path).count_remaining() == 1


def test_create_task_source_rejects_unknown_type(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="Unsupported task source"):
        create_task_source("toml", tmp_path / "tasks.toml")


YAML_BACKLOG = """\
tasks:
  - id: setup
    title: Set up project
    completed: true
  - id: login
    title: Add login form
    body: Use the existing auth client.
    parallel_group: 2
  - title: Write README
"""


def test_yaml_source_reads_and_completes_tasks(tmp_path: Path) -> None:
    path = tmp_path / "tasks.yaml"
    path.write_text(YAML_BACKLOG, "utf-8")
    source = YamlTaskSource(path)

    tasks = source.get_all_tasks()
    assert [task.task_id for task in tasks] == ["login", "task-3"]
    assert tasks[0].body == "Use the existing auth client."
    assert tasks[0].parallel_group == 2

    source.mark_complete("login")

    payload = yaml.safe_load(path.read_text("utf-8"))
    assert payload["tasks"][1]["completed"] is True
    assert [entry["title"] for entry in payload["tasks"]] == ["Set up project", "Add login form", "Write README"]
    assert source.get_next_task().title == "Write README"


def test_yaml_source_reports_parse_errors(tmp_path: Path) -> None:
    path = tmp_path / "tasks.yaml"
    path.write_text("tasks: [unclosed\n", "utf-8")

    with pytest.raises(TaskSourceError, match="Cannot parse YAML backlog"):
        YamlTaskSource(path).get_all_tasks()


def test_json_source_reports_parse_errors(tmp_path: Path) -> None:
    path = tmp_path / "tasks.json"
    path.write_text("{not json", "utf-8")

    with pytest.raises(TaskSourceError, match="Cannot parse JSON backlog"):
        JsonTaskSource(path).get_all_tasks()


def test_create_task_source_accepts_yaml_aliases(tmp_path: Path) -> None:
    assert isinstance(create_task_source("yml", tmp_path / "tasks.yml"), YamlTaskSource)
    assert isinstance(create_task_source(" YAML ", tmp_path / "tasks.yaml"), YamlTaskSource)
