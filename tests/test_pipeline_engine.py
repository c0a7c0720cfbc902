"""End-to-end tests for the pipeline engine on a scratch repository."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path

import pytest

from drydock.agent_runner import AgentRunner
from drydock.config import DrydockConfig, PipelineConfig, VitalsConfig
from drydock.events import EventRecorder
from drydock.pipeline.checkpoint import PipelineState
from drydock.pipeline.engine import PipelineEngine, PipelineStatus
from drydock.prompts import PromptCatalog
from drydock.schemas import EvalResult, RunResult, StageStatus, TestOutcome, WorkItem
from drydock.workspace import Workspace

pytestmark = pytest.mark.integration


class StageAgent(AgentRunner):
    """Writes whatever each stage prompt asks for."""

    name = "stage"

    def __init__(self, reviews: list[str] | None = None) -> None:
        self.reviews = list(reviews or ["No findings."])
        self.prompts: list[str] = []
        self.builds = 0

    def run(self, repo_path, prompt, *, full_auto=False, extra_args=None) -> RunResult:
        self.prompts.append(prompt)
        repo = Path(repo_path)
        artifacts = repo / ".drydock" / "artifacts"
        text = "done"
        if "Iteration " in prompt:
            self.builds += 1
            body = "".join(f"line_{i} = {i}\n" for i in range(8))
            (repo / f"feature_{self.builds}.py").write_text(body, encoding="utf-8")
            text = "Implemented.\nLOOP_COMPLETE"
        elif "plan.md as an ordered" in prompt:
            (artifacts / "plan.md").write_text("1. add greeting\n", encoding="utf-8")
            (artifacts / "dod.md").write_text("- greeting works\n", encoding="utf-8")
        elif "one finding per line" in prompt:
            review = self.reviews.pop(0) if self.reviews else "No findings."
            (artifacts / "review.md").write_text(review + "\n", encoding="utf-8")
        elif "a pull request title" in prompt:
            (artifacts / "pr.md").write_text("# Add greeting\nAdds a greeting.\n", encoding="utf-8")
        elif "Compare the repository against every item" in prompt:
            text = "DOD_PASS"
        return RunResult(success=True, exit_code=0, final_message=text)


class FatalAgent(AgentRunner):
    name = "fatal"

    def run(self, repo_path, prompt, *, full_auto=False, extra_args=None) -> RunResult:
        return RunResult(success=False, exit_code=1, errors=["Invalid API key provided"])


class FlakyTestEvaluator:
    """Loop evaluations pass; the test stage fails the first *failures* times."""

    def __init__(self, failures: int) -> None:
        self.failures = failures

    def evaluate(self, repo_path, *, revspec="HEAD~1") -> EvalResult:
        if revspec is None and self.failures > 0:
            self.failures -= 1
            return EvalResult(test_outcome=TestOutcome.FAILED, test_summary="AssertionError: greeting")
        return EvalResult(test_outcome=TestOutcome.PASSED, insertions=10, files_changed=1)


def _engine(
    git_repo: Path,
    tmp_path: Path,
    agent: AgentRunner,
    *,
    item: WorkItem | None = None,
    goal: str = "",
    evaluator=None,
    **pipeline: object,
) -> PipelineEngine:
    config = DrydockConfig(
        state_dir=tmp_path / "state",
        repo_path=git_repo,
        pipeline=PipelineConfig(**pipeline),
        vitals=VitalsConfig(enabled=False),
    )
    return PipelineEngine(
        config,
        Workspace(name="local", path=git_repo, branch="main"),
        item=item,
        goal=goal,
        agent_factory=lambda: agent,
        evaluator=evaluator,
        recorder=EventRecorder(tmp_path / "events.jsonl"),
        catalog=PromptCatalog(user_override=tmp_path / "no-overrides.yaml"),
    )


def _statuses(result) -> dict[str, StageStatus]:
    return {r.stage: r.status for r in result.stage_results}


def _events(tmp_path: Path) -> list[str]:
    return [event.type for event in EventRecorder(tmp_path / "events.jsonl").read()]


def test_fast_template_runs_to_completion(git_repo: Path, tmp_path: Path) -> None:
    agent = StageAgent()
    item = WorkItem(id=42, title="Add greeting", body="Say hello.")

    result = _engine(git_repo, tmp_path, agent, item=item, template="fast").run()

    assert result.succeeded
    assert result.exit_code == 0
    assert _statuses(result) == {
        "intake": StageStatus.PASSED,
        "build": StageStatus.PASSED,
        "test": StageStatus.PASSED,
        "pr": StageStatus.PASSED,
    }
    log = subprocess.run(
        ["git", "log", "--format=%s"], cwd=git_repo, capture_output=True, text=True, check=True
    ).stdout
    assert "drydock: iteration 1 autonomous progress" in log
    assert (git_repo / "feature_1.py").exists()
    assert "issue #42 (Add greeting)" in agent.prompts[-1]

    types = _events(tmp_path)
    assert types[0] == "pipeline.started"
    assert types[-1] == "pipeline.completed"
    completed = EventRecorder(tmp_path / "events.jsonl").read(types=["pipeline.completed"])[0]
    assert completed.result == "success"


def test_missing_artifacts_fail_the_stage(git_repo: Path, tmp_path: Path) -> None:
    class SilentAgent(AgentRunner):
        def run(self, repo_path, prompt, *, full_auto=False, extra_args=None) -> RunResult:
            return RunResult(success=True, exit_code=0, final_message="thinking about it")

    result = _engine(git_repo, tmp_path, SilentAgent(), goal="Plan the work", enabled_stages=["plan"]).run()

    assert result.status == PipelineStatus.FAILED
    assert result.reason == "plan: missing required artifacts: plan.md, dod.md"
    assert "stage.failed" in _events(tmp_path)


def test_fatal_agent_error_ends_run(git_repo: Path, tmp_path: Path) -> None:
    result = _engine(git_repo, tmp_path, FatalAgent(), goal="Anything", template="fast").run()

    assert result.status == PipelineStatus.ERROR
    assert result.reason == "fatal upstream error: Invalid API key"
    assert "loop.fatal_error" in _events(tmp_path)


def test_cancel_before_start_interrupts(git_repo: Path, tmp_path: Path) -> None:
    engine = _engine(git_repo, tmp_path, StageAgent(), goal="Anything", template="fast")
    engine.cancel()

    result = engine.run()

    assert result.status == PipelineStatus.INTERRUPTED
    assert result.stage_results == []


def test_failed_tests_feed_back_into_build(git_repo: Path, tmp_path: Path) -> None:
    agent = StageAgent()
    engine = _engine(
        git_repo,
        tmp_path,
        agent,
        goal="Add greeting",
        evaluator=FlakyTestEvaluator(failures=1),
        enabled_stages=["build", "test"],
    )

    result = engine.run()

    assert result.succeeded
    assert result.state.self_heal_count == 1
    assert agent.builds == 2
    assert any("AssertionError: greeting" in prompt for prompt in agent.prompts)
    model = json.loads((tmp_path / "state" / "iteration-model.json").read_text(encoding="utf-8"))
    assert model["build_test"]["history"] == [2]


def test_persistent_test_failures_exhaust_retries(git_repo: Path, tmp_path: Path) -> None:
    engine = _engine(
        git_repo,
        tmp_path,
        StageAgent(),
        goal="Add greeting",
        evaluator=FlakyTestEvaluator(failures=10),
        enabled_stages=["build", "test"],
        build_test_retries=1,
    )

    result = engine.run()

    assert result.status == PipelineStatus.FAILED
    assert result.reason == "build: tests still failing after 2 build-test cycle(s)"


class PacedAgent(StageAgent):
    """Claims completion only on every second build iteration."""

    def run(self, repo_path, prompt, *, full_auto=False, extra_args=None) -> RunResult:
        result = super().run(repo_path, prompt, full_auto=full_auto, extra_args=extra_args)
        if "Iteration " in prompt and self.builds % 2:
            return RunResult(success=True, exit_code=0, final_message="Implemented.")
        return result


def test_extensions_are_capped_across_self_heal_cycles(git_repo: Path, tmp_path: Path) -> None:
    agent = PacedAgent()
    engine = _engine(
        git_repo,
        tmp_path,
        agent,
        goal="Add greeting",
        evaluator=FlakyTestEvaluator(failures=1),
        enabled_stages=["build", "test"],
        max_iterations=1,
        max_extensions=1,
        extension_size=1,
        build_test_retries=1,
    )

    result = engine.run()

    assert result.job.extension_count == 1
    assert result.state.extension_count == 1
    assert result.status == PipelineStatus.MAX_ITERATIONS
    assert "max_iterations" in result.reason
    assert agent.builds == 3


def test_architecture_findings_backtrack_to_plan_once(git_repo: Path, tmp_path: Path) -> None:
    agent = StageAgent(reviews=["[architecture] circular dependency between api and db", "No findings."])

    result = _engine(git_repo, tmp_path, agent, goal="Refactor storage", enabled_stages=["plan", "review"]).run()

    assert result.succeeded
    assert result.state.backtrack_count == 1
    plan_prompts = [p for p in agent.prompts if "plan.md as an ordered" in p]
    assert len(plan_prompts) == 2
    assert "circular dependency" in plan_prompts[1]
    assert _events(tmp_path).count("intelligence.backtrack") == 1


def test_resume_skips_completed_stages(git_repo: Path, tmp_path: Path) -> None:
    agent = StageAgent()
    engine = _engine(git_repo, tmp_path, agent, goal="Plan it", enabled_stages=["intake", "plan"])
    engine.workspace.prepare_runtime()
    engine.checkpoints.save_state(PipelineState(goal="Plan it", completed_stages=["intake"]))

    result = engine.run(resume=True)

    assert result.succeeded
    assert not any("You are starting work" in p for p in agent.prompts)
    assert result.state.completed_stages == ["intake", "plan"]
