"""Pipeline engine: drives one job through its stages to a terminal state.

Stages run in pipeline order. Before each stage the engine consults the skip
heuristics and the budget trajectory; after it, required artifacts are
verified. Build and test run as a self-healing pair, review findings can send
the run back to design, and every transition is checkpointed so an
interrupted run can resume where it stopped.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from drydock.agent_runner import AgentRunner, create_agent
from drydock.agent_signals import detect_fatal_error
from drydock.config import DrydockConfig
from drydock.cost_ledger import CostLedger
from drydock.errors import FatalAgentError, FeedError, PipelineAborted
from drydock.eval_tools import RepoEvaluator, parse_test_command, summarise_output
from drydock.events import (
    Backtracked,
    BacktrackBlocked,
    DeployFailed,
    FatalErrorDetected,
    EventRecorder,
    NullRecorder,
    PipelineCompleted,
    PipelineStarted,
    StageCompleted,
    StageFailed,
    StageSkipped,
    StageStarted,
)
from drydock.feed import WorkFeed
from drydock.file_io import atomic_write_json
from drydock.git_tools import (
    GitError,
    auto_commit,
    current_branch,
    diff_numstat,
    fetch,
    merge_branch,
    push_branch,
)
from drydock.pipeline.checkpoint import CheckpointStore, PipelineState
from drydock.pipeline.findings import (
    ClassifiedFindings,
    backtrack_target,
    classify_findings,
    findings_context,
)
from drydock.pipeline.gates import QualityGates
from drydock.pipeline.loop import BuildLoop, LoopOutcome, LoopStatus
from drydock.pipeline.multi_agent import MultiAgentBuild
from drydock.pipeline.stages import (
    COMMAND_STAGES,
    Stage,
    iteration_limit,
    resolve_stages,
    should_skip_stage,
    verify_artifacts,
)
from drydock.prompts import PromptCatalog, get_catalog
from drydock.schemas import BudgetStatus, Job, RunResult, StageResult, StageStatus, WorkItem
from drydock.triage import estimate_complexity
from drydock.vitals import IterationModel, VitalsEngine, VitalsStore, build_vitals_engine
from drydock.workspace import Workspace

logger = logging.getLogger(__name__)

SUCCESS_LOG_LINE = "Pipeline completed successfully"
"""Logged on success; the scheduler reads it back from job logs it did not spawn."""

REVIEW_FILENAME = "review.md"
PR_FILENAME = "pr.md"
FINDINGS_FILENAME = "classified-findings.json"


class PipelineStatus(str, Enum):
    """Terminal status of a pipeline run."""

    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    ABORTED = "aborted"
    MAX_ITERATIONS = "max_iterations"
    CIRCUIT_BREAKER = "circuit_breaker"
    ERROR = "error"
    INTERRUPTED = "interrupted"


# Loop endings that end the whole run with the same status.
_LOOP_TERMINAL = {
    LoopStatus.ABORTED: PipelineStatus.ABORTED,
    LoopStatus.MAX_ITERATIONS: PipelineStatus.MAX_ITERATIONS,
    LoopStatus.CIRCUIT_BREAKER: PipelineStatus.CIRCUIT_BREAKER,
    LoopStatus.ERROR: PipelineStatus.ERROR,
    LoopStatus.INTERRUPTED: PipelineStatus.INTERRUPTED,
}


class PipelineResult:
    """What a finished run reports back to the CLI and the scheduler."""

    def __init__(self, job: Job, state: PipelineState, status: PipelineStatus, reason: str, duration: float) -> None:
        self.job = job
        self.state = state
        self.status = status
        self.reason = reason
        self.duration_seconds = duration

    @property
    def succeeded(self) -> bool:
        return self.status == PipelineStatus.COMPLETE

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    @property
    def stage_results(self) -> list[StageResult]:
        return self.job.stage_results


class PipelineEngine:
    """Stage machine for one job.

    Parameters
    ----------
    config:
        Full configuration; the engine reads ``pipeline`` and ``vitals``.
    workspace:
        The job's checkout. Runtime files live under ``.drydock``.
    item:
        The work item being processed (title, body, labels drive prompts
        and skip heuristics). Optional for ad-hoc runs with *goal*.
    goal:
        Overrides the goal derived from *item*.
    template:
        Stage template; defaults to ``config.pipeline.template``.
    agent_factory:
        Builds agent runners (one per multi-agent worker). Defaults to the
        configured registry entry.
    recorder / ledger / vitals / vitals_store:
        Outcome sink, cost ledger and health scoring. Defaults are built
        from *config*.
    feed:
        Used by the pr stage to open a pull request after pushing.
    """

    def __init__(
        self,
        config: DrydockConfig,
        workspace: Workspace,
        *,
        item: WorkItem | None = None,
        goal: str = "",
        template: str | None = None,
        agent_factory: Callable[[], AgentRunner] | None = None,
        evaluator: RepoEvaluator | None = None,
        recorder: EventRecorder | None = None,
        ledger: CostLedger | None = None,
        vitals: VitalsEngine | None = None,
        vitals_store: VitalsStore | None = None,
        catalog: PromptCatalog | None = None,
        feed: WorkFeed | None = None,
    ) -> None:
        self.config = config
        self.pipeline_config = config.pipeline
        self.workspace = workspace
        self.item = item
        self.issue = item.id if item is not None else None
        self.template = template or self.pipeline_config.template
        self.base_goal = goal or self._goal_from_item(item)
        if not self.base_goal:
            raise ValueError("A pipeline run needs a goal or a work item")
        self.agent_factory = agent_factory or self._default_agent_factory
        self.agent = self.agent_factory()
        self.evaluator = evaluator or RepoEvaluator(self.pipeline_config.test_cmd, self.pipeline_config.test_timeout)
        self.recorder = recorder or NullRecorder()
        self.ledger = ledger
        self.vitals = vitals or build_vitals_engine(
            config.vitals,
            ledger=ledger,
            recorder=self.recorder,
            iteration_model=IterationModel(config.iteration_model_path),
        )
        self.vitals_store = vitals_store
        self.catalog = catalog or get_catalog()
        self.feed = feed

        self.stages = resolve_stages(self.template, self.pipeline_config)
        self.checkpoints = CheckpointStore(
            workspace.runtime_dir,
            max_age_hours=self.pipeline_config.checkpoint_max_age_hours,
        )
        self.job = Job(
            issue=self.issue or 0,
            title=item.title if item is not None else self.base_goal[:80],
            workspace=str(workspace.path),
            branch=workspace.branch,
            template=self.template,
        )
        self.job_id = self.job.job_id if self.issue is not None else "local"
        self.gates = QualityGates(
            agent=self.agent,
            vitals=self.vitals,
            dod_check=self.pipeline_config.dod_check,
            catalog=self.catalog,
        )
        self.state = PipelineState(issue=self.issue, template=self.template, goal=self.base_goal)
        self.cancel_event = threading.Event()
        self.findings: ClassifiedFindings | None = None
        self.backtrack_context = ""
        self._resume_iteration = 0
        self._failure_status: PipelineStatus | None = None
        self._active_agents: list[AgentRunner] = [self.agent]

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _goal_from_item(item: WorkItem | None) -> str:
        if item is None:
            return ""
        goal = f"Resolve issue #{item.id}: {item.title}".strip()
        if item.body.strip():
            goal += f"\n\n{item.body.strip()}"
        return goal

    def _default_agent_factory(self) -> AgentRunner:
        cfg = self.pipeline_config
        return create_agent(
            cfg.agent,
            claude_binary=cfg.claude_binary,
            timeout=cfg.iteration_timeout,
            max_turns=cfg.max_turns,
            model=cfg.model,
        )

    @property
    def goal(self) -> str:
        if self.backtrack_context:
            return f"{self.base_goal}\n\n{self.backtrack_context}"
        return self.base_goal

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Stop the run at the next safe point; in-flight agent calls are cancelled."""
        logger.warning("Cancellation requested for %s", self.job_id)
        self.cancel_event.set()
        for agent in list(self._active_agents):
            agent.stop()

    def run(self, *, resume: bool = False) -> PipelineResult:
        """Run every enabled stage and return the outcome."""
        start = time.monotonic()
        self.workspace.prepare_runtime()
        self.checkpoints.expire()
        if resume:
            self._restore_state()
        self.state.status = PipelineStatus.RUNNING.value
        self.checkpoints.save_state(self.state)

        stage_names = [s.value for s in self.stages]
        logger.info(
            "Starting pipeline for %s (template=%s, stages=%s)",
            self.job_id,
            self.template,
            ", ".join(stage_names),
        )
        self.recorder.emit(
            PipelineStarted(job_id=self.job_id, issue=self.issue, template=self.template, stages=stage_names)
        )

        status = PipelineStatus.COMPLETE
        reason = ""
        try:
            self._run_stages()
        except PipelineAborted as exc:
            status = PipelineStatus(exc.status)
            reason = exc.reason
        except FatalAgentError as exc:
            status = PipelineStatus.ERROR
            reason = str(exc)

        return self._finish(status, reason, time.monotonic() - start)

    # ------------------------------------------------------------------
    # Stage machine
    # ------------------------------------------------------------------

    def _restore_state(self) -> None:
        previous = self.checkpoints.load_state()
        if previous is None or previous.issue != self.issue:
            logger.info("No resumable state for %s; starting fresh", self.job_id)
            return
        if previous.template and previous.template != self.template:
            logger.warning(
                "Resuming with template %s (previous run used %s)",
                self.template,
                previous.template,
            )
        self.state = previous
        self.state.template = self.template
        checkpoint = self.checkpoints.load(Stage.BUILD.value)
        if checkpoint is not None and Stage.BUILD.value not in previous.completed_stages:
            self._resume_iteration = checkpoint.iteration
        logger.info(
            "Resuming %s: completed=%s, build iteration=%d",
            self.job_id,
            ", ".join(previous.completed_stages) or "none",
            self._resume_iteration,
        )

    def _run_stages(self) -> None:
        index = 0
        while index < len(self.stages):
            stage = self.stages[index]
            index += 1
            if self.cancel_event.is_set():
                raise PipelineAborted(PipelineStatus.INTERRUPTED.value, "cancelled")
            if stage.value in self.state.completed_stages:
                logger.info("Stage %s already complete; skipping", stage.value)
                continue

            skip_reason = self._skip_reason(stage)
            if skip_reason:
                self._skip(stage, skip_reason)
                continue

            self._check_budget(stage)
            result = self._execute(stage)
            self.job.stage_results.append(result)
            if result.status == StageStatus.FAILED:
                self._stage_failed(stage, result)

            if stage == Stage.REVIEW and self.findings is not None:
                target = self._maybe_backtrack(self.findings)
                if target is not None:
                    index = self.stages.index(target)

    def _skip_reason(self, stage: Stage) -> str | None:
        labels = self.item.labels if self.item is not None else []
        complexity = estimate_complexity(self.item) if self.item is not None else 0
        diff_lines = self._diff_lines() if stage == Stage.COMPOUND_QUALITY else 0
        return should_skip_stage(stage, labels=labels, complexity=complexity, diff_lines=diff_lines)

    def _skip(self, stage: Stage, reason: str) -> None:
        logger.info("Skipping stage %s (%s)", stage.value, reason)
        self.recorder.emit(StageSkipped(job_id=self.job_id, issue=self.issue, stage=stage.value, reason=reason))
        self.state.skipped_stages[stage.value] = reason
        self.job.stage_results.append(StageResult(stage=stage.value, status=StageStatus.SKIPPED, skip_reason=reason))
        self.checkpoints.save_state(self.state)

    def _check_budget(self, stage: Stage) -> None:
        trajectory = self.vitals.budget_trajectory(stage.value)
        if trajectory == BudgetStatus.STOP:
            logger.error("Budget exhausted before stage %s", stage.value)
            raise PipelineAborted(PipelineStatus.ABORTED.value, "budget_exhausted")
        if trajectory == BudgetStatus.WARN:
            logger.warning("Remaining budget may not cover the stages left after %s", stage.value)

    def _execute(self, stage: Stage) -> StageResult:
        self.state.current_stage = stage.value
        self.job.current_stage = stage.value
        self.checkpoints.save_state(self.state)
        self.recorder.emit(StageStarted(job_id=self.job_id, issue=self.issue, stage=stage.value))
        logger.info("Stage: %s", stage.value)
        started = time.monotonic()

        result = self._handler(stage)()
        result.duration_seconds = round(time.monotonic() - started, 2)

        if result.status == StageStatus.PASSED:
            present, missing = verify_artifacts(stage, self.workspace.artifacts_dir)
            result.artifacts = present
            if missing:
                result.status = StageStatus.FAILED
                result.missing_artifacts = missing
                result.error = f"missing required artifacts: {', '.join(missing)}"

        if result.status == StageStatus.PASSED:
            self.state.mark_completed(stage.value)
            self.checkpoints.save_state(self.state)
            self.recorder.emit(
                StageCompleted(
                    job_id=self.job_id,
                    issue=self.issue,
                    stage=stage.value,
                    duration_seconds=result.duration_seconds,
                )
            )
            logger.info("Stage %s passed (%.1fs)", stage.value, result.duration_seconds)
        return result

    def _handler(self, stage: Stage) -> Callable[[], StageResult]:
        if stage == Stage.BUILD:
            return self._stage_build
        if stage == Stage.TEST:
            return self._stage_test
        if stage == Stage.REVIEW:
            return self._stage_review
        if stage == Stage.COMPOUND_QUALITY:
            return self._stage_compound_quality
        if stage == Stage.PR:
            return self._stage_pr
        if stage == Stage.MERGE:
            return self._stage_merge
        if stage in COMMAND_STAGES:
            return lambda: self._stage_command(stage)
        return lambda: self._stage_agent(stage)

    def _stage_failed(self, stage: Stage, result: StageResult) -> None:
        logger.error("Stage %s failed: %s", stage.value, result.error)
        self.recorder.emit(StageFailed(job_id=self.job_id, issue=self.issue, stage=stage.value, error=result.error))
        if stage == Stage.DEPLOY:
            self.recorder.emit(DeployFailed(job_id=self.job_id, issue=self.issue, stage=stage.value, error=result.error))
        status = self._failure_status or PipelineStatus.FAILED
        self._failure_status = None
        raise PipelineAborted(status.value, f"{stage.value}: {result.error}")

    # ------------------------------------------------------------------
    # Agent plumbing
    # ------------------------------------------------------------------

    def _prompt_context(self, **extra: object) -> dict[str, object]:
        ctx: dict[str, object] = {
            "goal": self.goal,
            "issue": self.issue if self.issue is not None else "",
            "title": self.item.title if self.item is not None else "",
            "body": self.item.body if self.item is not None else self.base_goal,
            "artifacts_dir": str(self.workspace.artifacts_dir),
        }
        ctx.update(extra)
        return ctx

    def _run_agent(self, stage: Stage, **extra: object) -> RunResult:
        """Run one agent turn for *stage*; fatal upstream failures raise."""
        prompt = self.catalog.render(stage.value, **self._prompt_context(**extra))
        result = self.agent.run(self.workspace.path, prompt, full_auto=True)
        if result.usage.cost_usd > 0 and self.ledger is not None:
            self.ledger.record(
                result.usage.cost_usd,
                stage=stage.value,
                issue=self.issue,
                model=result.usage.model or "",
            )
        if result.cancelled or self.cancel_event.is_set():
            raise PipelineAborted(PipelineStatus.INTERRUPTED.value, "cancelled")
        fatal = detect_fatal_error(result)
        if fatal:
            logger.error("Fatal agent error in %s: %s", stage.value, fatal)
            self.recorder.emit(
                FatalErrorDetected(
                    job_id=self.job_id,
                    issue=self.issue,
                    pattern=fatal,
                    message=result.output_text()[-500:],
                )
            )
            raise FatalAgentError(fatal)
        return result

    def _commit(self, stage: Stage) -> None:
        try:
            auto_commit(self.workspace.path, f"drydock: {stage.value} stage")
        except GitError as exc:
            logger.warning("Could not commit after %s: %s", stage.value, exc)

    def _stage_agent(self, stage: Stage) -> StageResult:
        """Generic agent stage (intake, plan, design and any stage without a handler)."""
        result = self._run_agent(stage, context=self.backtrack_context)
        if not result.success:
            return StageResult(
                stage=stage.value,
                status=StageStatus.FAILED,
                error=(result.errors[-1] if result.errors else f"agent exited with {result.exit_code}"),
            )
        return StageResult(stage=stage.value, status=StageStatus.PASSED)

    # ------------------------------------------------------------------
    # Build and test
    # ------------------------------------------------------------------

    def _make_loop(
        self,
        goal: str,
        *,
        workspace_path: Path | None = None,
        agent: AgentRunner | None = None,
        context: str = "",
        on_iteration: Callable[[int], None] | None = None,
        job_id: str | None = None,
    ) -> BuildLoop:
        runner = agent or self.agent
        return BuildLoop(
            workspace_path or self.workspace.path,
            goal,
            config=self.pipeline_config,
            agent=runner,
            evaluator=self.evaluator,
            gates=self.gates if runner is self.agent else QualityGates(
                agent=runner,
                vitals=self.vitals,
                dod_check=self.pipeline_config.dod_check,
                catalog=self.catalog,
            ),
            vitals=self.vitals,
            vitals_store=self.vitals_store,
            recorder=self.recorder,
            checkpoints=self.checkpoints if workspace_path is None else None,
            ledger=self.ledger,
            catalog=self.catalog,
            issue=self.issue,
            job_id=job_id or self.job_id,
            artifacts_dir=self.workspace.artifacts_dir,
            context=context,
            max_iterations=iteration_limit(self.template, self.pipeline_config),
            extension_budget=self.pipeline_config.max_extensions - self.state.extension_count,
            cancel_event=self.cancel_event,
            on_iteration=on_iteration,
        )

    def _build_once(self, goal: str, context: str) -> LoopOutcome:
        if self.pipeline_config.roles:
            return self._build_multi_agent(goal, context)
        loop = self._make_loop(goal, context=context)
        start = self._resume_iteration
        self._resume_iteration = 0
        outcome = loop.run(start_iteration=start)
        self.state.extension_count += outcome.extension_count
        self.job.extension_count = self.state.extension_count
        return outcome

    def _build_multi_agent(self, goal: str, context: str) -> LoopOutcome:
        shared_branch = self.pipeline_config.shared_branch or self.workspace.branch
        if not shared_branch:
            shared_branch = current_branch(self.workspace.path)

        def factory(path: Path, role_context: str, on_iteration: Callable[[int], None]) -> BuildLoop:
            agent = self.agent_factory()
            self._active_agents.append(agent)
            role_id = f"{self.job_id}-{path.name}"
            return self._make_loop(
                goal,
                workspace_path=path,
                agent=agent,
                context="\n\n".join(part for part in (role_context, context) if part),
                on_iteration=on_iteration,
                job_id=role_id,
            )

        result = MultiAgentBuild(
            self.workspace.path,
            shared_branch,
            self.pipeline_config.roles,
            loop_factory=factory,
            sync_every=self.pipeline_config.sync_every,
            catalog=self.catalog,
        ).run()
        if self.cancel_event.is_set():
            status = LoopStatus.INTERRUPTED
        elif result.succeeded:
            status = LoopStatus.COMPLETE
        elif any(w.status == LoopStatus.ERROR.value for w in result.workers):
            status = LoopStatus.ERROR
        else:
            status = LoopStatus.MAX_ITERATIONS
        return LoopOutcome(
            status=status,
            iterations=sum(w.outcome.iterations for w in result.workers if w.outcome),
            reason=result.summary(),
            cost_usd=result.cost_usd,
        )

    def _self_heal_limit(self) -> int:
        retries = self.pipeline_config.build_test_retries
        if self.vitals.enabled and self.vitals_store is not None:
            health = self.vitals.assess(self.vitals_store, self.job_id, issue=self.issue)
            limit = self.vitals.adaptive_limit(health)
            if limit < retries:
                logger.info("Vitals-driven build-test limit: %d -> %d", retries, limit)
            retries = min(retries, limit)
        return max(0, retries)

    def _stage_build(self) -> StageResult:
        """Build, then test; on test failure rebuild with the failure summary."""
        run_tests_here = Stage.TEST in self.stages and Stage.TEST.value not in self.state.completed_stages
        retries = self._self_heal_limit() if run_tests_here else 0
        context = self.backtrack_context
        goal = self.goal
        last_error = ""
        iterations = 0

        for cycle in range(1, retries + 2):
            if cycle > 1:
                self.state.self_heal_count += 1
                self.checkpoints.clear(Stage.BUILD.value)
                logger.warning("Self-healing cycle %d/%d: feeding test failure back to build", cycle, retries + 1)
                goal = f"{self.goal}\n\n{self.catalog.render_fragment('self_heal', summary=last_error)}"
                self.checkpoints.save_state(self.state)

            outcome = self._build_once(goal, context)
            iterations += outcome.iterations
            if outcome.status != LoopStatus.COMPLETE:
                self._failure_status = _LOOP_TERMINAL.get(outcome.status, PipelineStatus.FAILED)
                return StageResult(
                    stage=Stage.BUILD.value,
                    status=StageStatus.FAILED,
                    iterations=iterations,
                    error=f"build loop ended with {outcome.status.value}: {outcome.reason}",
                )
            if not run_tests_here:
                return StageResult(stage=Stage.BUILD.value, status=StageStatus.PASSED, iterations=iterations)

            self.state.mark_completed(Stage.BUILD.value)
            test_result = self._execute(Stage.TEST)
            if test_result.status == StageStatus.PASSED:
                self.job.stage_results.append(test_result)
                return StageResult(stage=Stage.BUILD.value, status=StageStatus.PASSED, iterations=iterations)
            self.state.reopen([Stage.BUILD.value])
            last_error = test_result.error
            logger.warning("Tests failed after build cycle %d: %s", cycle, last_error.splitlines()[0] if last_error else "")

        self.job.stage_results.append(
            StageResult(stage=Stage.TEST.value, status=StageStatus.FAILED, error=last_error)
        )
        return StageResult(
            stage=Stage.BUILD.value,
            status=StageStatus.FAILED,
            iterations=iterations,
            error=f"tests still failing after {retries + 1} build-test cycle(s)",
        )

    def _stage_test(self) -> StageResult:
        if self.catalog.stage(Stage.TEST.value):
            self._run_agent(Stage.TEST, context=self.backtrack_context)
            self._commit(Stage.TEST)
        evaluation = self.evaluator.evaluate(self.workspace.path, revspec=None)
        if evaluation.tests_ok:
            return StageResult(stage=Stage.TEST.value, status=StageStatus.PASSED)
        return StageResult(
            stage=Stage.TEST.value,
            status=StageStatus.FAILED,
            error=evaluation.test_summary or f"tests {evaluation.test_outcome.value}",
        )

    # ------------------------------------------------------------------
    # Review, quality and backtracking
    # ------------------------------------------------------------------

    def _stage_review(self) -> StageResult:
        result = self._run_agent(Stage.REVIEW)
        review_path = self.workspace.artifacts_dir / REVIEW_FILENAME
        try:
            text = review_path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            text = result.output_text()
        self.findings = classify_findings(text)
        atomic_write_json(self.workspace.artifacts_dir / FINDINGS_FILENAME, self.findings.to_dict())
        return StageResult(stage=Stage.REVIEW.value, status=StageStatus.PASSED)

    def _maybe_backtrack(self, findings: ClassifiedFindings) -> Stage | None:
        """Act on review findings; return the stage to resume from when backtracking."""
        if findings.needs_backtrack:
            target = backtrack_target(self.stages)
            if target is None:
                logger.warning("Architecture findings but no plan/design stage to return to")
            elif self.state.backtrack_count >= self.pipeline_config.max_backtracks:
                logger.warning(
                    "Max backtracks (%d) reached; cannot backtrack to %s",
                    self.pipeline_config.max_backtracks,
                    target.value,
                )
                self.recorder.emit(
                    BacktrackBlocked(
                        job_id=self.job_id,
                        issue=self.issue,
                        reason="max_backtracks_reached",
                        backtrack_count=self.state.backtrack_count,
                    )
                )
            else:
                return self._backtrack(target, findings)

        if findings.total_blocking and Stage.COMPOUND_QUALITY not in self.stages:
            logger.info("Rebuilding with %d review finding(s)", findings.total_blocking)
            self.backtrack_context = findings_context(findings)
            self.state.reopen([Stage.BUILD.value, Stage.TEST.value])
            result = self._execute(Stage.BUILD)
            self.job.stage_results.append(result)
            if result.status == StageStatus.FAILED:
                self._stage_failed(Stage.BUILD, result)
        return None

    def _backtrack(self, target: Stage, findings: ClassifiedFindings) -> Stage:
        self.state.backtrack_count += 1
        self.job.backtrack_count = self.state.backtrack_count
        logger.info("Backtracking to %s (reason: architecture findings)", target.value)
        self.recorder.emit(
            Backtracked(
                job_id=self.job_id,
                issue=self.issue,
                from_stage=Stage.REVIEW.value,
                to_stage=target.value,
                reason="architecture_violation",
            )
        )
        arch = findings_context(findings, categories=[findings.route])
        self.backtrack_context = self.catalog.render_fragment("backtrack", findings=arch)
        reopened = [s.value for s in self.stages if self.stages.index(s) >= self.stages.index(target)]
        self.state.reopen(reopened)
        self.checkpoints.clear(Stage.BUILD.value)
        self.checkpoints.save_state(self.state)
        return target

    def _stage_compound_quality(self) -> StageResult:
        findings = findings_context(self.findings) if self.findings is not None else ""
        self._run_agent(Stage.COMPOUND_QUALITY, findings=findings)
        self._commit(Stage.COMPOUND_QUALITY)
        evaluation = self.evaluator.evaluate(self.workspace.path)
        report = self.gates.check(
            self.workspace.path,
            eval_result=evaluation,
            artifacts_dir=self.workspace.artifacts_dir,
            include_dod=False,
        )
        if report.passed:
            return StageResult(stage=Stage.COMPOUND_QUALITY.value, status=StageStatus.PASSED, gate="quality")
        return StageResult(
            stage=Stage.COMPOUND_QUALITY.value,
            status=StageStatus.FAILED,
            gate="quality",
            error="; ".join(report.failures),
        )

    # ------------------------------------------------------------------
    # Delivery stages
    # ------------------------------------------------------------------

    def _diff_lines(self) -> int:
        try:
            _, insertions, deletions = diff_numstat(self.workspace.path, f"{self.pipeline_config.base_branch}...HEAD")
        except GitError as exc:
            logger.debug("Could not measure diff against %s: %s", self.pipeline_config.base_branch, exc)
            return 0
        return insertions + deletions

    def _branch(self) -> str:
        return self.workspace.branch or current_branch(self.workspace.path)

    def _stage_pr(self) -> StageResult:
        self._run_agent(Stage.PR)
        pr_path = self.workspace.artifacts_dir / PR_FILENAME
        try:
            lines = pr_path.read_text(encoding="utf-8", errors="replace").strip().splitlines()
        except OSError:
            lines = []
        title = lines[0].lstrip("# ").strip() if lines else (self.job.title or self.base_goal[:72])
        body = "\n".join(lines[1:]).strip()
        if self.issue is not None and f"#{self.issue}" not in body:
            body = f"{body}\n\nCloses #{self.issue}".strip()

        if not self.pipeline_config.push:
            logger.info("Push disabled; pull request left for manual review on %s", self._branch())
            return StageResult(stage=Stage.PR.value, status=StageStatus.PASSED)

        branch = self._branch()
        try:
            push_branch(self.workspace.path, branch, self.pipeline_config.remote)
        except GitError as exc:
            return StageResult(stage=Stage.PR.value, status=StageStatus.FAILED, error=str(exc))
        if self.feed is not None:
            try:
                url = self.feed.open_pull_request(branch, self.pipeline_config.base_branch, title, body)
            except FeedError as exc:
                return StageResult(stage=Stage.PR.value, status=StageStatus.FAILED, error=str(exc))
            if url:
                logger.info("Pull request: %s", url)
        return StageResult(stage=Stage.PR.value, status=StageStatus.PASSED)

    def _stage_merge(self) -> StageResult:
        """Bring the base branch into the job branch and re-run the tests."""
        base = self.pipeline_config.base_branch
        if self.pipeline_config.push and fetch(self.workspace.path, self.pipeline_config.remote):
            base = f"{self.pipeline_config.remote}/{base}"
        if not merge_branch(self.workspace.path, base):
            return StageResult(stage=Stage.MERGE.value, status=StageStatus.FAILED, error=f"merge conflict with {base}")
        evaluation = self.evaluator.evaluate(self.workspace.path, revspec=None)
        if not evaluation.tests_ok:
            return StageResult(
                stage=Stage.MERGE.value,
                status=StageStatus.FAILED,
                error=f"tests failing after merging {base}: {evaluation.test_summary[:500]}",
            )
        return StageResult(stage=Stage.MERGE.value, status=StageStatus.PASSED)

    def _stage_command(self, stage: Stage) -> StageResult:
        """Run the configured shell command for deploy, validate or monitor."""
        raw = getattr(self.pipeline_config, COMMAND_STAGES[stage], "")
        argv = parse_test_command(raw)
        if not argv:
            return StageResult(stage=stage.value, status=StageStatus.SKIPPED, skip_reason="no command configured")
        logger.info("Running %s command: %s", stage.value, " ".join(argv))
        try:
            proc = subprocess.run(
                argv,
                cwd=self.workspace.path,
                capture_output=True,
                text=True,
                timeout=self.pipeline_config.iteration_timeout,
            )
        except FileNotFoundError as exc:
            return StageResult(stage=stage.value, status=StageStatus.FAILED, error=f"command not found: {exc}")
        except subprocess.TimeoutExpired:
            return StageResult(
                stage=stage.value,
                status=StageStatus.FAILED,
                error=f"command timed out after {self.pipeline_config.iteration_timeout}s",
            )
        if proc.returncode != 0:
            output = summarise_output((proc.stdout + "\n" + proc.stderr).strip())
            return StageResult(
                stage=stage.value,
                status=StageStatus.FAILED,
                error=f"exit {proc.returncode}: {output[-1000:]}",
            )
        return StageResult(stage=stage.value, status=StageStatus.PASSED)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _finish(self, status: PipelineStatus, reason: str, duration: float) -> PipelineResult:
        self.state.status = status.value
        self.checkpoints.save_state(self.state)
        if status == PipelineStatus.COMPLETE:
            self.checkpoints.clear()
            if Stage.BUILD in self.stages:
                self.vitals.learn_cycles(self.state.self_heal_count + 1)
        self.recorder.emit(
            PipelineCompleted(
                job_id=self.job_id,
                issue=self.issue,
                result="success" if status == PipelineStatus.COMPLETE else "failure",
                status=status.value,
                duration_seconds=round(duration, 2),
                self_heal_count=self.state.self_heal_count,
                backtrack_count=self.state.backtrack_count,
                extension_count=self.state.extension_count,
            )
        )
        if status == PipelineStatus.COMPLETE:
            logger.info(SUCCESS_LOG_LINE)
        else:
            logger.error("Pipeline ended with %s: %s", status.value, reason or "no reason recorded")
        return PipelineResult(self.job, self.state, status, reason, duration)
