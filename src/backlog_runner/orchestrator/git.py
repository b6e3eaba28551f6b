"""Thin git/gh adapter: task branches, merge-back and pull requests."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from backlog_runner.orchestrator.errors import GitCommandError

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "backlog"
_SLUG_MAX_LENGTH = 50
_NON_SLUG = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class MergeResult:
    """Result of merging a task branch back into its target."""

    branch: str
    merged: bool
    conflict: bool = False
    detail: str = ""


def slugify(text: str) -> str:
    slug = _NON_SLUG.sub("-", text.lower()).strip("-")
    return slug[:_SLUG_MAX_LENGTH].rstrip("-") or "task"


class GitRepository:
    """Runs git and gh commands inside one repository checkout."""

    def __init__(self, root: Path, *, timeout_seconds: int = 120) -> None:
        self.root = root
        self.timeout_seconds = timeout_seconds

    def is_repository(self) -> bool:
        completed = self._completed(["git", "rev-parse", "--is-inside-work-tree"])
        return completed.returncode == 0 and completed.stdout.strip() == "true"

    def has_commits(self) -> bool:
        """False on an unborn branch (fresh `git init`)."""

        return self._completed(["git", "rev-parse", "--verify", "--quiet", "HEAD"]).returncode == 0

    def current_branch(self) -> str:
        return self._run(["git", "rev-parse", "--abbrev-ref", "HEAD"]).strip()

    def default_branch(self) -> str:
        """Branch the remote HEAD points to, else the current branch."""

        completed = self._run(
            ["git", "symbolic-ref", "--quiet", "--short", "refs/remotes/origin/HEAD"],
            check=False,
        )
        ref = completed.strip()
        if ref.startswith("origin/"):
            return ref.removeprefix("origin/")
        return self.current_branch()

    def branch_exists(self, branch: str) -> bool:
        completed = self._completed(
            ["git", "show-ref", "--verify", "--quiet", f"refs/heads/{branch}"],
        )
        return completed.returncode == 0

    def unique_branch_name(self, title: str) -> str:
        base = f"{BRANCH_PREFIX}/{slugify(title)}"
        candidate = base
        suffix = 2
        while self.branch_exists(candidate):
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate

    def create_task_branch(self, title: str, base_branch: str) -> str:
        """Check out a fresh branch for one task, forked from ``base_branch``."""

        branch = self.unique_branch_name(title)
        self._run(["git", "checkout", base_branch])
        self._run(["git", "checkout", "-b", branch])
        logger.debug("Created branch %s from %s", branch, base_branch)
        return branch

    def return_to_base_branch(self, base_branch: str) -> None:
        self._run(["git", "checkout", base_branch])

    def merge_branch(self, branch: str, into: str) -> MergeResult:
        """Merge ``branch`` into ``into``; aborts and reports a conflict on failure."""

        self._run(["git", "checkout", into])
        if self.commits_ahead(branch, into) == 0:
            logger.warning("Branch %s has no commits ahead of %s; nothing to merge", branch, into)
            return MergeResult(branch=branch, merged=False, detail=f"{branch} has no commits ahead of {into}")
        completed = self._completed(
            ["git", "merge", "--no-ff", "--no-edit", branch],
        )
        if completed.returncode == 0:
            logger.info("Merged %s into %s", branch, into)
            return MergeResult(branch=branch, merged=True)

        detail = (completed.stdout or "").strip()
        unmerged = self._run(["git", "diff", "--name-only", "--diff-filter=U"], check=False).strip()
        if unmerged:
            self._completed(["git", "merge", "--abort"])
            logger.warning("Merge conflict merging %s into %s: %s", branch, into, unmerged)
            return MergeResult(branch=branch, merged=False, conflict=True, detail=unmerged)
        raise GitCommandError(["git", "merge", branch], completed.returncode, detail)

    def commits_ahead(self, branch: str, base: str) -> int:
        return int(self._run(["git", "rev-list", "--count", f"{base}..{branch}"]).strip() or "0")

    def is_dirty(self, path: Path | None = None) -> bool:
        """True when the checkout at ``path`` has modified or untracked files."""

        return bool(self._run(["git", "status", "--porcelain"], cwd=path).strip())

    def commit_all(self, path: Path, message: str) -> None:
        self._run(["git", "add", "--all"], cwd=path)
        self._run(["git", "commit", "-q", "-m", message], cwd=path)

    def delete_branch(self, branch: str) -> None:
        self._run(["git", "branch", "-D", branch])

    def create_pull_request(
        self,
        *,
        branch: str,
        base_branch: str,
        title: str,
        body: str,
        draft: bool = False,
    ) -> str | None:
        """Push ``branch`` and open a PR with gh; returns the PR URL."""

        gh = shutil.which("gh")
        if gh is None:
            logger.warning("gh not found on PATH; skipping pull request for %s", branch)
            return None
        self._run(["git", "push", "--set-upstream", "origin", branch])
        args = [
            gh,
            "pr",
            "create",
            "--base",
            base_branch,
            "--head",
            branch,
            "--title",
            title,
            "--body",
            body,
        ]
        if draft:
            args.append("--draft")
        url = self._run(args).strip().splitlines()
        return url[-1] if url else None

    def add_worktree(self, path: Path, *, branch: str, base_branch: str) -> None:
        self._run(["git", "worktree", "add", str(path), "-b", branch, base_branch])

    def remove_worktree(self, path: Path) -> None:
        self._run(["git", "worktree", "remove", str(path)])

    def prune_worktrees(self) -> None:
        self._run(["git", "worktree", "prune"], check=False)

    def _run(self, command: list[str], *, check: bool = True, cwd: Path | None = None) -> str:
        completed = self._completed(command, cwd=cwd)
        if check and completed.returncode != 0:
            raise GitCommandError(command, completed.returncode, completed.stdout or "")
        return completed.stdout or ""

    def _completed(self, command: list[str], *, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(  # noqa: S603
                command,
                cwd=cwd or self.root,
                check=False,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=self.timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired) as error:
            raise GitCommandError(command, -1, str(error)) from error
