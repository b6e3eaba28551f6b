"""Private working copies for concurrent task attempts."""

from __future__ import annotations

import logging
import shutil
import threading
from pathlib import Path
from typing import Protocol

from backlog_runner.orchestrator.errors import GitCommandError, IsolationError
from backlog_runner.orchestrator.git import GitRepository, MergeResult
from backlog_runner.orchestrator.models import IsolationHandle, Task

logger = logging.getLogger(__name__)

DEFAULT_WORKTREE_DIR = ".backlog-runner/worktrees"


class IsolationProvider(Protocol):
    def acquire(self, base_branch: str, task: Task) -> IsolationHandle:
        """Create a working copy on a new branch forked from ``base_branch``."""

    def collect(self, handle: IsolationHandle, task: Task) -> None:
        """Make sure everything the worker changed is on ``handle.branch``."""

    def release(self, handle: IsolationHandle) -> None:
        """Remove the working copy; the branch itself is kept."""


class MergeTarget(Protocol):
    def merge_branch(self, branch: str, into: str) -> MergeResult:
        """Merge a task branch back into the base branch."""

    def delete_branch(self, branch: str) -> None:
        """Delete a merged task branch."""


class WorktreeIsolation:
    """One ``git worktree`` per task under ``worktree_root``.

    A worktree with uncommitted changes is never removed: :meth:`collect`
    commits leftovers of a successful task onto its branch, and
    :meth:`release` keeps any still-dirty worktree on disk for inspection.
    """

    def __init__(self, repo: GitRepository, worktree_root: Path | None = None) -> None:
        self.repo = repo
        self.worktree_root = worktree_root or repo.root / DEFAULT_WORKTREE_DIR
        self._lock = threading.Lock()

    def acquire(self, base_branch: str, task: Task) -> IsolationHandle:
        with self._lock:
            branch = self.repo.unique_branch_name(task.title)
            path = self.worktree_root / branch.replace("/", "-")
            if path.exists():
                raise IsolationError(f"Worktree path already exists: {path}")
            self.worktree_root.mkdir(parents=True, exist_ok=True)
            try:
                self.repo.add_worktree(path, branch=branch, base_branch=base_branch)
            except GitCommandError as error:
                raise IsolationError(f"Cannot create worktree for {task.title!r}: {error}") from error
        logger.debug("Acquired worktree %s on %s", path, branch)
        return IsolationHandle(path=path, branch=branch)

    def collect(self, handle: IsolationHandle, task: Task) -> None:
        try:
            if not self.repo.is_dirty(handle.path):
                return
            logger.warning("Committing uncommitted changes left in %s onto %s", handle.path, handle.branch)
            self.repo.commit_all(handle.path, f"chore: uncommitted changes from {task.title}")
        except GitCommandError as error:
            raise IsolationError(f"Cannot commit leftover changes in {handle.path}: {error}") from error

    def release(self, handle: IsolationHandle) -> None:
        with self._lock:
            if handle.path.exists() and self._is_dirty(handle):
                logger.warning("Keeping worktree %s: it has uncommitted changes", handle.path)
                return
            try:
                self.repo.remove_worktree(handle.path)
            except GitCommandError as error:
                logger.warning("git worktree remove failed for %s: %s", handle.path, error)
                shutil.rmtree(handle.path, ignore_errors=True)
                self.repo.prune_worktrees()
        logger.debug("Released worktree %s", handle.path)

    def _is_dirty(self, handle: IsolationHandle) -> bool:
        try:
            return self.repo.is_dirty(handle.path)
        except GitCommandError as error:
            logger.warning("Cannot read status of %s: %s", handle.path, error)
            return True
