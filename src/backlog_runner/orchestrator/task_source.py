"""Backlog sources: markdown checklists, YAML and JSON task files, and a caching decorator."""

from __future__ import annotations

import json
import logging
import re
import threading
from collections.abc import Collection
from pathlib import Path
from typing import Protocol

import yaml

from backlog_runner.orchestrator.errors import TaskSourceError
from backlog_runner.orchestrator.models import Task

logger = logging.getLogger(__name__)

SUPPORTED_SOURCES = ("markdown", "yaml", "json")

_CHECKBOX = re.compile(r"^(?P<indent>\s*)[-*] \[(?P<mark>[ xX])\] (?P<title>.+?)\s*$")
_GROUP_MARKER = re.compile(r"\s*<!--\s*group:\s*(?P<group>\d+)\s*-->\s*$", re.IGNORECASE)


class TaskSource(Protocol):
    """Backlog storage consumed by the executors."""

    source_type: str

    def get_next_task(self, exclude: Collection[str] = ()) -> Task | None:
        """Return the first incomplete task whose id is not in ``exclude``."""

    def get_all_tasks(self) -> list[Task]:
        """Return every incomplete task in backlog order."""

    def count_remaining(self) -> int:
        """Count incomplete tasks."""

    def mark_complete(self, task_id: str) -> None:
        """Mark a task as done."""

    def flush(self) -> None:
        """Persist buffered completions."""

    def close(self) -> None:
        """Release resources."""


class MarkdownTaskSource:
    """Tasks are ``- [ ] title`` checklist lines; ``- [x]`` marks completion.

    A trailing ``<!-- group: N -->`` comment assigns the task to a parallel group.
    Indented non-checkbox lines directly below a task become its body.
    """

    source_type = "markdown"

    def __init__(self, path: Path) -> None:
        self.path = path

    def get_next_task(self, exclude: Collection[str] = ()) -> Task | None:
        for task in self.get_all_tasks():
            if task.task_id not in exclude:
                return task
        return None

    def get_all_tasks(self) -> list[Task]:
        lines = self._read_lines()
        tasks: list[Task] = []
        for index, line in enumerate(lines):
            match = _CHECKBOX.match(line)
            if match is None or match.group("mark") != " ":
                continue
            title, group = _split_group_marker(match.group("title"))
            body = _collect_body(lines, index + 1, indent=len(match.group("indent")))
            tasks.append(
                Task(
                    task_id=f"line-{index + 1}",
                    title=title,
                    body=f"{title}\n{body}" if body else None,
                    parallel_group=group,
                ),
            )
        return tasks

    def count_remaining(self) -> int:
        return len(self.get_all_tasks())

    def mark_complete(self, task_id: str) -> None:
        lines = self._read_lines()
        index = _line_index(task_id)
        if index is None or index >= len(lines):
            raise TaskSourceError(f"Unknown markdown task id: {task_id!r}")
        match = _CHECKBOX.match(lines[index])
        if match is None:
            raise TaskSourceError(f"Line {index + 1} of {self.path} is not a task checkbox.")
        lines[index] = lines[index].replace("[ ]", "[x]", 1)
        self.path.write_text("\n".join(lines) + "\n", "utf-8")

    def flush(self) -> None:
        return

    def close(self) -> None:
        return

    def _read_lines(self) -> list[str]:
        try:
            return self.path.read_text("utf-8").splitlines()
        except OSError as error:
            raise TaskSourceError(f"Cannot read backlog {self.path}: {error}") from error


class _StructuredTaskSource:
    """Tasks stored as a mapping with a ``tasks`` list of
    ``{"id", "title", "body", "parallel_group", "completed"}`` entries.

    Subclasses only decide how the file is decoded and encoded.
    """

    source_type = ""

    def __init__(self, path: Path) -> None:
        self.path = path

    def get_next_task(self, exclude: Collection[str] = ()) -> Task | None:
        for task in self.get_all_tasks():
            if task.task_id not in exclude:
                return task
        return None

    def get_all_tasks(self) -> list[Task]:
        tasks: list[Task] = []
        for index, raw in enumerate(self._read_entries()):
            if raw.get("completed"):
                continue
            title = raw.get("title")
            if not isinstance(title, str) or not title.strip():
                raise TaskSourceError(f"Task #{index + 1} in {self.path} has no title.")
            group = raw.get("parallel_group")
            body = raw.get("body")
            tasks.append(
                Task(
                    task_id=_entry_id(raw, index),
                    title=title.strip(),
                    body=body if isinstance(body, str) and body.strip() else None,
                    parallel_group=group if isinstance(group, int) else None,
                ),
            )
        return tasks

    def count_remaining(self) -> int:
        return len(self.get_all_tasks())

    def mark_complete(self, task_id: str) -> None:
        payload = self._read_payload()
        for index, raw in enumerate(payload["tasks"]):
            if isinstance(raw, dict) and _entry_id(raw, index) == task_id:
                raw["completed"] = True
                self.path.write_text(self._encode(payload), "utf-8")
                return
        raise TaskSourceError(f"Unknown {self.source_type} task id: {task_id!r}")

    def flush(self) -> None:
        return

    def close(self) -> None:
        return

    def _decode(self, text: str) -> object:
        raise NotImplementedError

    def _encode(self, payload: dict[str, list[dict[str, object]]]) -> str:
        raise NotImplementedError

    def _read_entries(self) -> list[dict[str, object]]:
        return [entry for entry in self._read_payload()["tasks"] if isinstance(entry, dict)]

    def _read_payload(self) -> dict[str, list[dict[str, object]]]:
        try:
            payload = self._decode(self.path.read_text("utf-8"))
        except OSError as error:
            raise TaskSourceError(f"Cannot read backlog {self.path}: {error}") from error
        if not isinstance(payload, dict) or not isinstance(payload.get("tasks"), list):
            raise TaskSourceError(f"{self.path} must contain a top-level 'tasks' list.")
        return payload


class JsonTaskSource(_StructuredTaskSource):
    source_type = "json"

    def _decode(self, text: str) -> object:
        try:
            return json.loads(text)
        except json.JSONDecodeError as error:
            raise TaskSourceError(f"Cannot parse JSON backlog {self.path}: {error}") from error

    def _encode(self, payload: dict[str, list[dict[str, object]]]) -> str:
        return json.dumps(payload, indent=2) + "\n"


class YamlTaskSource(_StructuredTaskSource):
    """YAML backlog with the same ``tasks:`` layout as the JSON source."""

    source_type = "yaml"

    def _decode(self, text: str) -> object:
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as error:
            raise TaskSourceError(f"Cannot parse YAML backlog {self.path}: {error}") from error

    def _encode(self, payload: dict[str, list[dict[str, object]]]) -> str:
        return yaml.safe_dump(payload, default_flow_style=False, sort_keys=False, allow_unicode=True)


class CachedTaskSource:
    """Loads the backlog once and buffers completions until :meth:`flush`."""

    def __init__(self, inner: TaskSource) -> None:
        self.inner = inner
        self.source_type = inner.source_type
        self._lock = threading.Lock()
        self._tasks: list[Task] | None = None
        self._completed: set[str] = set()
        self._pending: list[str] = []

    def get_next_task(self, exclude: Collection[str] = ()) -> Task | None:
        for task in self.get_all_tasks():
            if task.task_id not in exclude:
                return task
        return None

    def get_all_tasks(self) -> list[Task]:
        with self._lock:
            if self._tasks is None:
                self._tasks = self.inner.get_all_tasks()
            return [task for task in self._tasks if task.task_id not in self._completed]

    def count_remaining(self) -> int:
        return len(self.get_all_tasks())

    def mark_complete(self, task_id: str) -> None:
        with self._lock:
            if task_id in self._completed:
                return
            self._completed.add(task_id)
            self._pending.append(task_id)

    def flush(self) -> None:
        with self._lock:
            pending, self._pending = self._pending, []
        for task_id in pending:
            self.inner.mark_complete(task_id)
        if pending:
            logger.debug("Flushed %d completion(s) to %s backlog", len(pending), self.source_type)
        self.inner.flush()

    def close(self) -> None:
        self.flush()
        self.inner.close()


def create_task_source(source_type: str, path: Path) -> TaskSource:
    normalized = source_type.strip().lower()
    if normalized == "markdown":
        return MarkdownTaskSource(path)
    if normalized in {"yaml", "yml"}:
        return YamlTaskSource(path)
    if normalized == "json":
        return JsonTaskSource(path)
    raise ValueError(f"Unsupported task source: {source_type!r}. Use one of {SUPPORTED_SOURCES}.")


def _split_group_marker(title: str) -> tuple[str, int | None]:
    match = _GROUP_MARKER.search(title)
    if match is None:
        return title.strip(), None
    return title[: match.start()].strip(), int(match.group("group"))


def _collect_body(lines: list[str], start: int, *, indent: int) -> str:
    body: list[str] = []
    for line in lines[start:]:
        if not line.strip():
            break
        if _CHECKBOX.match(line) is not None:
            break
        if len(line) - len(line.lstrip()) <= indent:
            break
        body.append(line.strip())
    return "\n".join(body)


def _line_index(task_id: str) -> int | None:
    if not task_id.startswith("line-"):
        return None
    raw = task_id.removeprefix("line-")
    if not raw.isdigit():
        return None
    return int(raw) - 1


def _entry_id(raw: dict[str, object], index: int) -> str:
    return str(raw.get("id") or f"task-{index + 1}")
