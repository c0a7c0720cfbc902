"""Per-iteration build loop.

The :class:`BuildLoop` drives repeated agent invocations inside one
workspace. Each iteration is auto-committed, evaluated, scored by the vitals
engine and checkpointed. The loop ends when a completion claim survives the
quality gates, or on a fatal agent error, a tripped circuit breaker, an
exhausted iteration budget or an interruption.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from drydock.agent_runner import AgentRunner
from drydock.agent_signals import (
    completion_instruction,
    contains_completion_signal,
    detect_fatal_error,
    rejection_notice,
)
from drydock.config import PipelineConfig
from drydock.cost_ledger import CostLedger
from drydock.eval_tools import RepoEvaluator
from drydock.events import (
    CircuitBreakerTripped,
    CompletionRejected,
    EventRecorder,
    FatalErrorDetected,
    LoopExtension,
    LoopIteration,
    NullRecorder,
)
from drydock.git_tools import GitError, auto_commit, generate_commit_message, head_sha
from drydock.pipeline.checkpoint import Checkpoint, CheckpointStore
from drydock.pipeline.gates import GateReport, QualityGates
from drydock.prompts import PromptCatalog, get_catalog
from drydock.schemas import BudgetStatus, EvalResult, HealthScore, RunResult, Verdict, VitalsSnapshot
from drydock.vitals import VitalsEngine, VitalsStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

HIGH_VELOCITY_LINES: int = 20
"""Mean insertions per iteration above which an extension grows by 3."""

LOW_VELOCITY_LINES: int = 5
"""Mean insertions per iteration below which an extension shrinks by 2."""

_STALL_LIMIT_FOR_EXTENSION = 2


class LoopStatus(str, Enum):
    """How a build loop ended."""

    RUNNING = "running"
    COMPLETE = "complete"
    ABORTED = "aborted"
    MAX_ITERATIONS = "max_iterations"
    CIRCUIT_BREAKER = "circuit_breaker"
    ERROR = "error"
    INTERRUPTED = "interrupted"


@dataclass
class LoopOutcome:
    """Summary handed back to the pipeline engine."""

    status: LoopStatus
    iterations: int = 0
    max_iterations: int = 0
    extension_count: int = 0
    tests_passing: bool = False
    reason: str = ""
    cost_usd: float = 0.0
    last_eval: EvalResult | None = None
    last_output: str = ""
    velocity: list[int] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == LoopStatus.COMPLETE


# ---------------------------------------------------------------------------
# Policy helpers
# ---------------------------------------------------------------------------

def mean_velocity(insertions: list[int]) -> float:
    """Mean insertions per iteration (0 with no history)."""
    if not insertions:
        return 0.0
    return sum(insertions) / len(insertions)


def effective_extension(extension_size: int, velocity: float) -> int:
    """Scale an extension by velocity: fast loops earn more iterations, slow ones fewer."""
    if velocity > HIGH_VELOCITY_LINES:
        return extension_size + 3
    if velocity < LOW_VELOCITY_LINES:
        return max(extension_size - 2, 1)
    return extension_size


def should_extend(
    *,
    auto_extend: bool,
    extension_count: int,
    max_extensions: int,
    consecutive_failures: int,
    claimed_completion: bool,
    gates_failing: bool,
) -> bool:
    """Decide whether a loop that hit its cap deserves more iterations.

    Granted while extensions remain and either the loop is still moving
    without having claimed completion, or tests/gates still need fixing.
    """
    if not auto_extend or extension_count >= max_extensions:
        return False
    if consecutive_failures < _STALL_LIMIT_FOR_EXTENSION and not claimed_completion:
        return True
    return gates_failing


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------

class BuildLoop:
    """Run the agent repeatedly against a workspace until the goal is met.

    Parameters
    ----------
    workspace_path:
        Checkout the agent works in; every iteration is committed here.
    goal:
        What the agent is asked to achieve.
    config:
        Iteration, extension and circuit-breaker settings.
    agent:
        The coding-agent runner.
    evaluator:
        Test runner and diff statistics for the workspace.
    gates:
        Quality gates guarding completion claims.
    vitals / vitals_store:
        Health scoring; the verdict can trip the circuit breaker.
    checkpoints:
        Where per-iteration checkpoints are written (optional).
    ledger:
        Cost ledger that receives each invocation's spend (optional).
    max_iterations:
        Initial iteration cap (``config.max_iterations`` by default).
    extension_budget:
        Extensions this loop may still grant. Earlier loops of the same job
        consume the shared ``config.max_extensions`` allowance.
    on_iteration:
        Callback invoked with the iteration number after each iteration.
    """

    def __init__(
        self,
        workspace_path: str | Path,
        goal: str,
        *,
        config: PipelineConfig,
        agent: AgentRunner,
        evaluator: RepoEvaluator,
        gates: QualityGates,
        vitals: VitalsEngine,
        vitals_store: VitalsStore | None = None,
        recorder: EventRecorder | None = None,
        checkpoints: CheckpointStore | None = None,
        ledger: CostLedger | None = None,
        catalog: PromptCatalog | None = None,
        issue: int | None = None,
        job_id: str = "",
        stage: str = "build",
        artifacts_dir: str | Path | None = None,
        context: str = "",
        max_iterations: int | None = None,
        extension_budget: int | None = None,
        cancel_event: threading.Event | None = None,
        on_iteration: Callable[[int], None] | None = None,
    ) -> None:
        self.workspace_path = Path(workspace_path)
        self.goal = goal
        self.config = config
        self.agent = agent
        self.evaluator = evaluator
        self.gates = gates
        self.vitals = vitals
        self.vitals_store = vitals_store
        self.recorder = recorder or NullRecorder()
        self.checkpoints = checkpoints
        self.ledger = ledger
        self.catalog = catalog or get_catalog()
        self.issue = issue
        self.job_id = job_id or (f"issue-{issue}" if issue is not None else "local")
        self.stage = stage
        self.artifacts_dir = Path(artifacts_dir) if artifacts_dir else None
        self.context = context
        self.max_iterations = max_iterations or config.max_iterations
        if extension_budget is None:
            extension_budget = config.max_extensions
        self.extension_budget = max(0, min(extension_budget, config.max_extensions))
        self.cancel_event = cancel_event or threading.Event()
        self.on_iteration = on_iteration

        self.iteration = 0
        self.extension_count = 0
        self.consecutive_failures = 0
        self.velocity: list[int] = []
        self.rejection = ""
        self.cumulative_insertions = 0
        self._last_claimed = False
        self._last_gates: GateReport | None = None
        self._cost = 0.0

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def run(self, *, start_iteration: int = 0) -> LoopOutcome:
        """Execute the loop and return how it ended.

        *start_iteration* resumes numbering after a checkpointed iteration.
        """
        self.iteration = max(0, start_iteration)
        if self.iteration:
            logger.info("Resuming %s loop after iteration %d", self.stage, self.iteration)
        last_eval: EvalResult | None = None
        last_output = ""

        while True:
            if self.cancel_event.is_set():
                return self._finish(LoopStatus.INTERRUPTED, "cancelled", last_eval, last_output)

            if self.vitals.budget_trajectory(self.stage) == BudgetStatus.STOP:
                logger.error("Budget exhausted; stopping %s loop", self.stage)
                return self._finish(LoopStatus.ABORTED, "budget_exhausted", last_eval, last_output)

            if self.iteration >= self.max_iterations and not self._try_extend():
                logger.warning("Max iterations (%d) reached", self.max_iterations)
                return self._finish(LoopStatus.MAX_ITERATIONS, "max iterations reached", last_eval, last_output)

            self.iteration += 1
            logger.info("──── %s iteration %d / %d ────", self.stage, self.iteration, self.max_iterations)

            result = self.agent.run(self.workspace_path, self._build_prompt(), full_auto=True)
            last_output = result.output_text()
            self._record_cost(result)
            logger.info(
                "Agent finished (exit=%d, success=%s, %.1fs)",
                result.exit_code,
                result.success,
                result.duration_seconds,
            )

            if result.cancelled or self.cancel_event.is_set():
                return self._finish(LoopStatus.INTERRUPTED, "cancelled", last_eval, last_output)

            fatal = detect_fatal_error(result)
            if fatal:
                logger.error("Fatal agent error: %s", fatal)
                self.recorder.emit(
                    FatalErrorDetected(
                        job_id=self.job_id,
                        issue=self.issue,
                        pattern=fatal,
                        message=last_output[-500:],
                    )
                )
                return self._finish(LoopStatus.ERROR, fatal, last_eval, last_output)

            last_eval = self._commit_and_evaluate()
            progress = last_eval.insertions >= self.config.min_progress_lines
            self.velocity.append(last_eval.insertions)
            self.cumulative_insertions += last_eval.insertions
            self.consecutive_failures = 0 if progress else self.consecutive_failures + 1
            if not progress:
                logger.warning(
                    "Low progress (%d/%d before circuit breaker)",
                    self.consecutive_failures,
                    self.config.circuit_breaker_threshold,
                )

            self.recorder.emit(
                LoopIteration(
                    job_id=self.job_id,
                    issue=self.issue,
                    stage=self.stage,
                    iteration=self.iteration,
                    insertions=last_eval.insertions,
                    files_changed=last_eval.files_changed,
                    tests=last_eval.test_outcome.value,
                    progress=progress,
                )
            )
            health = self._record_vitals(last_eval)
            if self.on_iteration is not None:
                self.on_iteration(self.iteration)

            self._last_claimed = contains_completion_signal(last_output)
            self._last_gates = self.gates.check(
                self.workspace_path,
                eval_result=last_eval,
                artifacts_dir=self.artifacts_dir,
                health=health if self._last_claimed else None,
                include_dod=self._last_claimed,
            )

            if self._last_claimed:
                if self._last_gates.passed:
                    logger.info("Completion claim accepted at iteration %d", self.iteration)
                    self._save_checkpoint(last_eval, LoopStatus.COMPLETE)
                    return self._finish(LoopStatus.COMPLETE, "", last_eval, last_output)
                self._reject_completion(self._last_gates)
            else:
                self.rejection = ""

            tripped = self._circuit_breaker(health)
            self._save_checkpoint(last_eval, LoopStatus.RUNNING)
            if tripped:
                return self._finish(LoopStatus.CIRCUIT_BREAKER, tripped, last_eval, last_output)

    # ------------------------------------------------------------------
    # Iteration steps
    # ------------------------------------------------------------------

    def _build_prompt(self) -> str:
        return self.catalog.render(
            self.stage if self.catalog.stage(self.stage) else "build",
            goal=self.goal,
            issue=self.issue,
            iteration=self.iteration,
            max_iterations=self.max_iterations,
            rejection=self.rejection,
            artifacts_dir=str(self.artifacts_dir or ""),
            context=self.context,
            completion=completion_instruction(),
        )

    def _record_cost(self, result: RunResult) -> None:
        cost = result.usage.cost_usd
        if cost <= 0:
            return
        self._cost += cost
        if self.ledger is not None:
            self.ledger.record(cost, stage=self.stage, issue=self.issue, model=result.usage.model or "")

    def _commit_and_evaluate(self) -> EvalResult:
        try:
            sha = auto_commit(self.workspace_path, generate_commit_message(self.iteration))
        except GitError as exc:
            logger.warning("Auto-commit failed in %s: %s", self.workspace_path, exc)
            sha = None
        # Without a new commit, HEAD~1 would measure the previous iteration.
        revspec = "HEAD~1" if sha else "HEAD"
        eval_result = self.evaluator.evaluate(self.workspace_path, revspec=revspec)
        logger.info(
            "Eval: tests=%s, files_changed=%d, insertions=%d",
            eval_result.test_outcome.value,
            eval_result.files_changed,
            eval_result.insertions,
        )
        return eval_result

    def _record_vitals(self, eval_result: EvalResult) -> HealthScore | None:
        if self.vitals_store is None:
            return None
        last_error = "" if eval_result.tests_ok else eval_result.test_summary
        snapshot = VitalsSnapshot(
            iteration=self.iteration,
            stage=self.stage,
            diff_lines=self.cumulative_insertions,
            files_changed=eval_result.files_changed,
            last_error=last_error,
        )
        self.vitals_store.record(self.job_id, snapshot)
        return self.vitals.assess(self.vitals_store, self.job_id, issue=self.issue)

    def _reject_completion(self, report: GateReport) -> None:
        failures = report.failures
        logger.warning("Completion claim rejected: %s", ", ".join(failures))
        self.recorder.emit(
            CompletionRejected(
                job_id=self.job_id,
                issue=self.issue,
                iteration=self.iteration,
                failures=failures,
            )
        )
        self.rejection = rejection_notice(failures)

    def _circuit_breaker(self, health: HealthScore | None) -> str:
        """Return a trip reason, or an empty string to keep going.

        An ``abort`` verdict trips immediately; ``continue`` and ``warn``
        verdicts hold the breaker open. Otherwise the static stall
        threshold decides.
        """
        reason = ""
        if health is not None and self.vitals.enabled:
            if health.verdict == Verdict.ABORT:
                reason = f"health score {health.score}/100 (abort verdict)"
            elif health.verdict in {Verdict.CONTINUE, Verdict.WARN}:
                return ""
        if not reason and self.consecutive_failures >= self.config.circuit_breaker_threshold:
            reason = f"{self.consecutive_failures} consecutive iterations without meaningful progress"
        if reason:
            logger.error("Circuit breaker tripped: %s", reason)
            self.recorder.emit(
                CircuitBreakerTripped(
                    job_id=self.job_id,
                    issue=self.issue,
                    reason=reason,
                    consecutive_failures=self.consecutive_failures,
                )
            )
        return reason

    def _try_extend(self) -> bool:
        gates_failing = self._last_gates is not None and not self._last_gates.passed
        if not should_extend(
            auto_extend=self.config.auto_extend,
            extension_count=self.extension_count,
            max_extensions=self.extension_budget,
            consecutive_failures=self.consecutive_failures,
            claimed_completion=self._last_claimed,
            gates_failing=gates_failing,
        ):
            if self.extension_count >= self.extension_budget:
                logger.warning(
                    "Hard cap reached: %d extensions applied (budget %d)",
                    self.extension_count,
                    self.extension_budget,
                )
            return False
        velocity = mean_velocity(self.velocity)
        granted = effective_extension(self.config.extension_size, velocity)
        self.extension_count += 1
        self.max_iterations += granted
        logger.info(
            "Auto-extending: +%d iterations (now %d max, extension %d/%d, velocity ~%.0f lines/iter)",
            granted,
            self.max_iterations,
            self.extension_count,
            self.config.max_extensions,
            velocity,
        )
        self.recorder.emit(
            LoopExtension(
                job_id=self.job_id,
                issue=self.issue,
                extension_count=self.extension_count,
                granted=granted,
                max_iterations=self.max_iterations,
                velocity=round(velocity, 2),
            )
        )
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _save_checkpoint(self, eval_result: EvalResult | None, status: LoopStatus) -> None:
        if self.checkpoints is None:
            return
        files = [str(entry.get("path", "")) for entry in (eval_result.changed_files if eval_result else [])]
        self.checkpoints.save(
            Checkpoint(
                stage=self.stage,
                iteration=self.iteration,
                files_modified=[f for f in files if f],
                tests_passing=bool(eval_result and eval_result.tests_ok),
                git_sha=head_sha(self.workspace_path),
                loop_state=status.value,
            )
        )

    def _finish(
        self,
        status: LoopStatus,
        reason: str,
        last_eval: EvalResult | None,
        last_output: str,
    ) -> LoopOutcome:
        if status == LoopStatus.INTERRUPTED:
            self._save_checkpoint(last_eval, status)
        logger.info("%s loop finished: %s after %d iteration(s)", self.stage, status.value, self.iteration)
        return LoopOutcome(
            status=status,
            iterations=self.iteration,
            max_iterations=self.max_iterations,
            extension_count=self.extension_count,
            tests_passing=bool(last_eval and last_eval.tests_ok),
            reason=reason,
            cost_usd=round(self._cost, 6),
            last_eval=last_eval,
            last_output=last_output,
            velocity=list(self.velocity),
        )
