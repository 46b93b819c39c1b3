from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from flowpilot.errors import FlowStateError

if TYPE_CHECKING:
    from flowpilot.execution import ExecutionTask


class GitCommitter:
    """Commits the files of quality-checked tasks to the working repository."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()
        self._git_enabled = self._is_git_repo()

    @property
    def available(self) -> bool:
        return self._git_enabled

    def _is_git_repo(self) -> bool:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        if not self._git_enabled:
            raise FlowStateError("No git repository found. Commits are disabled.")
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise FlowStateError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def current_head(self) -> str | None:
        proc = self._run_git(["rev-parse", "HEAD"], check=False)
        return proc.stdout.strip() if proc.returncode == 0 else None

    def changed_files_for_commit(self, commit_hash: str) -> list[str]:
        proc = self._run_git(["show", "--pretty=format:", "--name-only", commit_hash], check=False)
        if proc.returncode != 0:
            return []
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def _stage(self, paths: Sequence[str]) -> None:
        existing = [path for path in paths if (self.repo_root / path).exists()]
        removed = [path for path in paths if path not in existing]
        if existing:
            self._run_git(["add", "--", *existing])
        if removed:
            # Deleted files are staged only when git already tracks them.
            self._run_git(["rm", "--cached", "--ignore-unmatch", "-q", "--", *removed])

    def commit(self, tasks: list[ExecutionTask], message: str) -> str:
        paths = sorted({path for task in tasks for path in task.files_modified + task.tests_added})
        staged: list[str] = []
        if paths:
            self._stage(paths)
            diff = self._run_git(["diff", "--cached", "--name-only", "--", *paths])
            staged = [line.strip() for line in diff.stdout.splitlines() if line.strip()]
        body = "\n".join(f"- {task.id}: {task.title}" for task in tasks)
        # --only keeps whatever else sits in the index out of the task commit.
        if staged:
            args = ["commit", "--only", "-m", message, "-m", body, "--", *staged]
        else:
            args = ["commit", "--allow-empty", "--only", "-m", message, "-m", body]
        self._run_git(args)
        head = self.current_head()
        if head is None:
            raise FlowStateError("Commit succeeded but HEAD could not be resolved.")
        return head
