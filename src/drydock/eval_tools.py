"""Evaluation utilities: run the workspace's tests and gather diff statistics."""

from __future__ import annotations

import contextlib
import logging
import shlex
import subprocess
from collections.abc import Sequence
from pathlib import Path

from drydock.git_tools import (
    GitError,
    diff_numstat_entries,
    diff_stat,
    status_porcelain,
    summarize_numstat_entries,
)
from drydock.schemas import EvalResult, TestOutcome

logger = logging.getLogger(__name__)


def parse_test_command(command: str | Sequence[str] | None) -> list[str] | None:
    """Parse test command input into argv-style tokens.

    Accepts either a shell-like string (quoted arguments supported) or a
    pre-tokenized sequence. Returns ``None`` for empty/blank commands.
    """
    if command is None:
        return None
    if isinstance(command, str):
        raw = command.strip()
        if not raw:
            return None
        try:
            parts = shlex.split(raw)
        except ValueError:
            logger.warning("Could not parse test command %r; falling back to whitespace split.", raw)
            parts = raw.split()
        return [part for part in parts if part] or None
    cleaned = [str(part).strip() for part in command if part is not None]
    return [part for part in cleaned if part] or None


class RepoEvaluator:
    """Run a test suite and gather diff statistics for a workspace.

    Parameters
    ----------
    test_cmd:
        Command used to run the test suite. ``None`` or empty means there is
        nothing to run and the outcome is reported as skipped.
    timeout:
        Maximum seconds to wait for the test command.
    """

    def __init__(self, test_cmd: str | Sequence[str] | None = None, timeout: int = 600) -> None:
        self.test_cmd = parse_test_command(test_cmd) or []
        self.timeout = timeout

    def evaluate(self, repo_path: str | Path, *, revspec: str | None = "HEAD~1") -> EvalResult:
        """Run the tests and describe the change introduced since *revspec*.

        The working tree is compared against *revspec* (the commit before the
        latest auto-commit by default); when that range is invalid, pending
        changes against HEAD are reported instead.
        """
        repo_path = Path(repo_path).resolve()
        test_outcome, test_summary, test_exit = self.run_tests(repo_path)

        changed_files: list[dict] = []
        stat = ""
        for candidate in (revspec, None):
            try:
                changed_files = diff_numstat_entries(repo_path, revspec=candidate)
                stat = diff_stat(repo_path, revspec=candidate)
                break
            except GitError:
                continue
        files_changed, ins, dels = summarize_numstat_entries(changed_files)
        porcelain = ""
        with contextlib.suppress(GitError):
            porcelain = status_porcelain(repo_path)

        return EvalResult(
            test_outcome=test_outcome,
            test_summary=test_summary,
            test_exit_code=test_exit,
            diff_stat=stat,
            status_porcelain=porcelain,
            net_lines_changed=ins - dels,
            insertions=ins,
            files_changed=files_changed,
            changed_files=changed_files,
        )

    def run_tests(self, cwd: Path) -> tuple[TestOutcome, str, int]:
        """Execute the test command and return (outcome, summary, exit_code)."""
        if not self.test_cmd:
            return TestOutcome.SKIPPED, "Tests skipped (no test command configured)", 0

        logger.info("Running tests: %s (cwd=%s)", " ".join(self.test_cmd), cwd)
        try:
            proc = subprocess.run(
                self.test_cmd,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            return TestOutcome.ERROR, f"Test command not found: {exc}", -1
        except subprocess.TimeoutExpired:
            return TestOutcome.ERROR, f"Test command timed out after {self.timeout}s", -1

        summary = summarise_output((proc.stdout + "\n" + proc.stderr).strip())
        if proc.returncode == 0:
            return TestOutcome.PASSED, summary, 0
        if proc.returncode == 5:
            # pytest: no tests collected
            return TestOutcome.SKIPPED, summary, 5
        return TestOutcome.FAILED, summary, proc.returncode


def summarise_output(text: str, max_lines: int = 30) -> str:
    """Keep the first 10 and last 20 lines of long test output."""
    lines = text.splitlines()
    if len(lines) <= max_lines:
        return text
    skipped = len(lines) - 30
    return "\n".join([*lines[:10], f"  ... ({skipped} lines omitted) ...", *lines[-20:]])
