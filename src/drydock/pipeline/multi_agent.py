"""Concurrent role-based build loops that coordinate through a shared branch.

Each role gets its own worktree on a branch forked from the shared branch.
Every ``sync_every`` iterations a worker commits, publishes its branch into
the shared checkout and merges the shared branch back, so roles see each
other's work. A conflicting merge is aborted and logged; the worker keeps
going on its own branch.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path

from drydock.config import AgentRoleConfig
from drydock.errors import WorkspaceError
from drydock.git_tools import GitError, auto_commit, merge_branch
from drydock.pipeline.loop import BuildLoop, LoopOutcome, LoopStatus
from drydock.prompts import PromptCatalog, get_catalog
from drydock.workspace import Workspace, WorkspaceManager

logger = logging.getLogger(__name__)

LoopFactory = Callable[[Path, str, Callable[[int], None]], BuildLoop]
"""``(workspace_path, role_context, on_iteration) -> BuildLoop``."""


@dataclass
class WorkerResult:
    role: str
    branch: str
    outcome: LoopOutcome | None = None
    error: str = ""
    syncs: int = 0
    conflicts: int = 0

    @property
    def status(self) -> str:
        if self.error:
            return LoopStatus.ERROR.value
        return self.outcome.status.value if self.outcome else LoopStatus.ERROR.value


@dataclass
class MultiAgentResult:
    workers: list[WorkerResult]

    @property
    def succeeded(self) -> bool:
        """At least one role finished its goal and none hit a fatal error."""
        statuses = [w.status for w in self.workers]
        return LoopStatus.COMPLETE.value in statuses and LoopStatus.ERROR.value not in statuses

    @property
    def cost_usd(self) -> float:
        return round(sum(w.outcome.cost_usd for w in self.workers if w.outcome), 6)

    def summary(self) -> str:
        return ", ".join(f"{w.role}={w.status}" for w in self.workers)


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-") or "agent"


class MultiAgentBuild:
    """Run one build loop per role in parallel against a shared branch.

    Parameters
    ----------
    shared_path:
        Checkout of the shared branch (the job's own workspace).
    shared_branch:
        Branch every role forks from and publishes into.
    roles:
        One worker per entry.
    loop_factory:
        Builds a configured :class:`BuildLoop` for a worker.
    sync_every:
        Iterations between synchronisations with the shared branch.
    """

    def __init__(
        self,
        shared_path: str | Path,
        shared_branch: str,
        roles: list[AgentRoleConfig],
        *,
        loop_factory: LoopFactory,
        sync_every: int = 3,
        catalog: PromptCatalog | None = None,
    ) -> None:
        if not roles:
            raise ValueError("multi-agent mode needs at least one role")
        self.shared_path = Path(shared_path)
        self.shared_branch = shared_branch
        self.roles = roles
        self.loop_factory = loop_factory
        self.sync_every = max(1, sync_every)
        self.catalog = catalog or get_catalog()
        self.workspaces = WorkspaceManager(
            self.shared_path,
            self.shared_path.parent,
            base_ref=shared_branch,
        )
        self._shared_lock = threading.Lock()

    def run(self) -> MultiAgentResult:
        """Run every role to completion and return per-role results."""
        logger.info(
            "Starting %d agents on %s: %s",
            len(self.roles),
            self.shared_branch,
            ", ".join(r.role for r in self.roles),
        )
        results: list[WorkerResult] = []
        with ThreadPoolExecutor(max_workers=len(self.roles), thread_name_prefix="drydock-agent") as pool:
            futures = {pool.submit(self._run_worker, role): role for role in self.roles}
            for future in as_completed(futures):
                role = futures[future]
                try:
                    results.append(future.result())
                except (GitError, WorkspaceError, OSError) as exc:
                    logger.error("Agent %s failed: %s", role.role, exc)
                    results.append(WorkerResult(role=role.role, branch="", error=str(exc)))
        results.sort(key=lambda r: [x.role for x in self.roles].index(r.role))
        outcome = MultiAgentResult(workers=results)
        logger.info("Multi-agent build finished: %s", outcome.summary())
        return outcome

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _workspace_for(self, role: AgentRoleConfig) -> Workspace:
        name = f"{self.shared_path.name}-{_slug(role.role)}"
        branch = f"{self.shared_branch}-{_slug(role.role)}"
        return self.workspaces.allocate(name, branch)

    def _run_worker(self, role: AgentRoleConfig) -> WorkerResult:
        workspace = self._workspace_for(role)
        result = WorkerResult(role=role.role, branch=workspace.branch)
        context = self.catalog.render_fragment("multi_agent", role=role.role, focus=role.focus or role.role)

        def on_iteration(iteration: int) -> None:
            if iteration % self.sync_every == 0:
                self._sync(workspace, result, iteration)

        try:
            loop = self.loop_factory(workspace.path, context, on_iteration)
            result.outcome = loop.run()
            self._sync(workspace, result, result.outcome.iterations)
        finally:
            self.workspaces.release(workspace, remove_branch=True)
        logger.info("Agent %s finished: %s", role.role, result.status)
        return result

    def _sync(self, workspace: Workspace, result: WorkerResult, iteration: int) -> None:
        """Publish the worker's branch into the shared checkout, then pull the shared branch back."""
        auto_commit(workspace.path, f"drydock: {result.role} sync at iteration {iteration}")
        with self._shared_lock:
            published = merge_branch(self.shared_path, workspace.branch)
        pulled = merge_branch(workspace.path, self.shared_branch)
        result.syncs += 1
        if not (published and pulled):
            result.conflicts += 1
            logger.warning(
                "Agent %s: sync conflict at iteration %d (published=%s, pulled=%s)",
                result.role,
                iteration,
                published,
                pulled,
            )
        else:
            logger.info("Agent %s synced with %s at iteration %d", result.role, self.shared_branch, iteration)
