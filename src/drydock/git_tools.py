"""Git helper utilities: diffs, commits, worktrees, shared-branch merges, pushes."""

from __future__ import annotations

import contextlib
import logging
import re
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_MARKER_RE = re.compile(r"\b(TODO|FIXME|HACK|XXX)\b")


class GitError(RuntimeError):
    """Raised when a git command fails unexpectedly."""


def _run_git(
    *args: str,
    cwd: Path,
    check: bool = True,
    timeout: int = 30,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return the CompletedProcess."""
    cmd = ["git", *args]
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    result = subprocess.run(
        cmd,
        cwd=cwd,
        capture_output=True,
        text=True,
        timeout=timeout,
    )
    if check and result.returncode != 0:
        raise GitError(
            f"`git {' '.join(args)}` failed (rc={result.returncode}): {result.stderr.strip()}"
        )
    return result


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def _parse_numstat_output(raw: str) -> list[dict[str, Any]]:
    """Parse ``git diff --numstat`` output into structured entries."""
    out = str(raw or "").strip()
    if not out:
        return []

    entries: list[dict[str, Any]] = []
    for line in out.splitlines():
        parts = line.split("\t", 2)
        if len(parts) < 3:
            continue
        ins_raw, del_raw, path = parts

        ins_val: int | None = None
        del_val: int | None = None
        with contextlib.suppress(ValueError):
            ins_val = int(ins_raw)
        with contextlib.suppress(ValueError):
            del_val = int(del_raw)

        entries.append({"path": path, "insertions": ins_val, "deletions": del_val})
    return entries


def diff_numstat_entries(repo: str | Path, revspec: str | None = None) -> list[dict[str, Any]]:
    """Return file-level entries (``path``, ``insertions``, ``deletions``) from ``git diff --numstat``."""
    args = ["diff", "--numstat"]
    if revspec:
        args.append(revspec)
    return _parse_numstat_output(_run_git(*args, cwd=Path(repo)).stdout)


def summarize_numstat_entries(entries: Sequence[dict[str, Any]]) -> tuple[int, int, int]:
    """Return (files_changed, insertions, deletions) for parsed numstat entries."""
    files = insertions = deletions = 0
    for entry in entries:
        files += 1
        if isinstance(entry.get("insertions"), int):
            insertions += int(entry["insertions"])
        if isinstance(entry.get("deletions"), int):
            deletions += int(entry["deletions"])
    return files, insertions, deletions


def diff_numstat(repo: str | Path, revspec: str | None = None) -> tuple[int, int, int]:
    """Return (files_changed, insertions, deletions) for *revspec*."""
    return summarize_numstat_entries(diff_numstat_entries(repo, revspec=revspec))


def diff_stat(repo: str | Path, revspec: str | None = None) -> str:
    """Return ``git diff --stat`` output."""
    args = ["diff", "--stat"]
    if revspec:
        args.append(revspec)
    return _run_git(*args, cwd=Path(repo)).stdout.strip()


def status_porcelain(repo: str | Path) -> str:
    """Return ``git status --porcelain`` output."""
    return _run_git("status", "--porcelain", cwd=Path(repo)).stdout.strip()


def is_clean(repo: str | Path) -> bool:
    """Return True when the working tree has no pending changes."""
    return status_porcelain(repo) == ""


def head_sha(repo: str | Path, *, short: bool = True) -> str:
    """Return the SHA of HEAD (empty string on an unborn branch)."""
    args = ["rev-parse", "--short", "HEAD"] if short else ["rev-parse", "HEAD"]
    result = _run_git(*args, cwd=Path(repo), check=False)
    return result.stdout.strip() if result.returncode == 0 else ""


def current_branch(repo: str | Path) -> str:
    """Return the name of the checked-out branch."""
    return _run_git("rev-parse", "--abbrev-ref", "HEAD", cwd=Path(repo)).stdout.strip()


def added_lines(repo: str | Path, revspec: str = "HEAD~1") -> list[str]:
    """Return lines added by ``git diff <revspec>`` (empty when the range is invalid)."""
    result = _run_git("diff", "--unified=0", revspec, cwd=Path(repo), check=False)
    if result.returncode != 0:
        return []
    return [
        line[1:]
        for line in result.stdout.splitlines()
        if line.startswith("+") and not line.startswith("+++")
    ]


def marker_lines(repo: str | Path, revspec: str = "HEAD~1") -> list[str]:
    """Return added lines that carry TODO/FIXME/HACK/XXX markers."""
    return [line.strip() for line in added_lines(repo, revspec) if _MARKER_RE.search(line)]


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def ensure_git_identity(repo: str | Path) -> None:
    """Set a fallback ``user.name``/``user.email`` when the repo has none."""
    cwd = Path(repo)
    for key, fallback in [
        ("user.name", "drydock"),
        ("user.email", "drydock@localhost"),
    ]:
        result = _run_git("config", key, cwd=cwd, check=False)
        if result.returncode != 0 or not result.stdout.strip():
            _run_git("config", key, fallback, cwd=cwd)
            logger.info("Set %s = %s in %s", key, fallback, cwd)


def commit_all(repo: str | Path, message: str) -> str:
    """Stage everything and commit.  Return the new commit SHA."""
    cwd = Path(repo)
    _run_git("add", "-A", cwd=cwd)
    _run_git("commit", "-m", message, cwd=cwd)
    return head_sha(repo)


def auto_commit(repo: str | Path, message: str) -> str | None:
    """Commit pending work if there is any; return the SHA or ``None`` when clean."""
    if is_clean(repo):
        return None
    ensure_git_identity(repo)
    sha = commit_all(repo, message)
    logger.info("Committed %s in %s", sha, repo)
    return sha


def generate_commit_message(iteration: int, summary: str = "autonomous progress") -> str:
    """Build the one-line commit subject used for per-iteration auto-commits."""
    subject = re.sub(r"\s+", " ", summary).strip() or "autonomous progress"
    if len(subject) > 60:
        subject = subject[:57] + "..."
    return f"drydock: iteration {iteration} {subject}"


# ---------------------------------------------------------------------------
# Worktrees and branches
# ---------------------------------------------------------------------------


def branch_exists(repo: str | Path, branch: str) -> bool:
    result = _run_git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", cwd=Path(repo), check=False)
    return result.returncode == 0


def worktree_add(repo: str | Path, path: str | Path, branch: str, base: str = "HEAD") -> None:
    """Create *path* as a worktree on *branch* (created from *base* when missing)."""
    cwd = Path(repo)
    if branch_exists(cwd, branch):
        _run_git("worktree", "add", str(path), branch, cwd=cwd, timeout=120)
    else:
        _run_git("worktree", "add", "-b", branch, str(path), base, cwd=cwd, timeout=120)


def worktree_remove(repo: str | Path, path: str | Path) -> None:
    """Force-remove the worktree at *path* and prune stale worktree records."""
    cwd = Path(repo)
    _run_git("worktree", "remove", "--force", str(path), cwd=cwd, check=False, timeout=120)
    _run_git("worktree", "prune", cwd=cwd, check=False)


def worktree_paths(repo: str | Path) -> list[Path]:
    """Return the paths of every registered worktree (the main checkout included)."""
    out = _run_git("worktree", "list", "--porcelain", cwd=Path(repo)).stdout
    return [Path(line[len("worktree ") :]) for line in out.splitlines() if line.startswith("worktree ")]


def delete_branch(repo: str | Path, branch: str) -> None:
    _run_git("branch", "-D", branch, cwd=Path(repo), check=False)


def merge_branch(repo: str | Path, branch: str) -> bool:
    """Merge *branch* into the current branch; abort and return False on conflict."""
    cwd = Path(repo)
    result = _run_git("merge", "--no-edit", branch, cwd=cwd, check=False, timeout=120)
    if result.returncode == 0:
        return True
    logger.warning("Merge of %s into %s failed: %s", branch, cwd, result.stderr.strip() or result.stdout.strip())
    _run_git("merge", "--abort", cwd=cwd, check=False)
    return False


def fetch(repo: str | Path, remote: str = "origin") -> bool:
    result = _run_git("fetch", remote, cwd=Path(repo), check=False, timeout=120)
    return result.returncode == 0


def push_branch(repo: str | Path, branch: str, remote: str = "origin") -> None:
    """Push *branch* to *remote*, setting upstream."""
    _run_git("push", "-u", remote, branch, cwd=Path(repo), timeout=300)
