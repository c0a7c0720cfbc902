"""Workspace manager: one isolated git worktree (branch + directory) per job."""

from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from drydock.errors import WorkspaceError
from drydock.git_tools import (
    GitError,
    delete_branch,
    worktree_add,
    worktree_paths,
    worktree_remove,
)

logger = logging.getLogger(__name__)

_ISSUE_DIR_RE = re.compile(r"^daemon-issue-(\d+)$")


@dataclass(frozen=True, slots=True)
class Workspace:
    """An allocated working copy."""

    name: str
    path: Path
    branch: str

    @property
    def artifacts_dir(self) -> Path:
        return self.path / ".drydock" / "artifacts"

    @property
    def runtime_dir(self) -> Path:
        return self.path / ".drydock"

    def prepare_runtime(self) -> Path:
        """Create the runtime directory, ignored by git so it never lands in commits."""
        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        ignore = self.runtime_dir / ".gitignore"
        if not ignore.exists():
            ignore.write_text("*\n", encoding="utf-8")
        return self.runtime_dir


class WorkspaceManager:
    """Allocate and reclaim worktrees under ``<repo>/.worktrees``.

    Parameters
    ----------
    repo_path:
        The main checkout all worktrees hang off.
    worktrees_dir:
        Where worktree directories are created.
    base_ref:
        Ref new job branches start from.
    """

    def __init__(
        self,
        repo_path: str | Path,
        worktrees_dir: str | Path | None = None,
        *,
        base_ref: str = "HEAD",
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        self.worktrees_dir = Path(worktrees_dir) if worktrees_dir else self.repo_path / ".worktrees"
        self.base_ref = base_ref

    @staticmethod
    def name_for_issue(issue: int) -> str:
        return f"daemon-issue-{issue}"

    @staticmethod
    def branch_for_issue(issue: int) -> str:
        return f"drydock/issue-{issue}"

    def workspace_for_issue(self, issue: int) -> Workspace:
        name = self.name_for_issue(issue)
        return Workspace(name=name, path=self.worktrees_dir / name, branch=self.branch_for_issue(issue))

    def _registered(self) -> set[Path]:
        try:
            return {path.resolve() for path in worktree_paths(self.repo_path)}
        except GitError as exc:
            raise WorkspaceError(f"Could not list worktrees in {self.repo_path}: {exc}") from exc

    def allocate(self, name: str, branch: str) -> Workspace:
        """Create (or reuse) the worktree *name* on *branch*."""
        workspace = Workspace(name=name, path=self.worktrees_dir / name, branch=branch)
        if workspace.path.exists():
            if workspace.path.resolve() in self._registered():
                logger.info("Reusing existing workspace %s", workspace.path)
                return workspace
            logger.warning("Removing unregistered leftover directory %s", workspace.path)
            shutil.rmtree(workspace.path, ignore_errors=True)
        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        try:
            worktree_add(self.repo_path, workspace.path, branch, base=self.base_ref)
        except GitError as exc:
            raise WorkspaceError(f"Could not create workspace {name}: {exc}") from exc
        workspace.prepare_runtime()
        logger.info("Allocated workspace %s on branch %s", workspace.path, branch)
        return workspace

    def allocate_for_issue(self, issue: int) -> Workspace:
        return self.allocate(self.name_for_issue(issue), self.branch_for_issue(issue))

    def release(self, workspace: Workspace, *, remove_branch: bool = False) -> None:
        """Remove the worktree directory; optionally delete its branch."""
        worktree_remove(self.repo_path, workspace.path)
        if workspace.path.exists():
            shutil.rmtree(workspace.path, ignore_errors=True)
        if remove_branch:
            delete_branch(self.repo_path, workspace.branch)
        logger.info("Released workspace %s", workspace.path)

    def release_issue(self, issue: int, *, remove_branch: bool = False) -> None:
        self.release(self.workspace_for_issue(issue), remove_branch=remove_branch)

    def issue_workspaces(self) -> dict[int, Path]:
        """Return ``{issue: path}`` for every job worktree directory on disk."""
        found: dict[int, Path] = {}
        if not self.worktrees_dir.is_dir():
            return found
        for child in self.worktrees_dir.iterdir():
            match = _ISSUE_DIR_RE.match(child.name)
            if match and child.is_dir():
                found[int(match.group(1))] = child
        return found

    def prune_orphans(self, active_issues: Iterable[int]) -> list[int]:
        """Remove job worktrees whose issue is no longer active; return the pruned issues."""
        active = set(active_issues)
        pruned: list[int] = []
        for issue in sorted(self.issue_workspaces()):
            if issue in active:
                continue
            self.release_issue(issue)
            pruned.append(issue)
        if pruned:
            logger.info("Pruned %d orphaned workspace(s): %s", len(pruned), pruned)
        return pruned
