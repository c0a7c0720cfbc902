"""Tests for the quality gates guarding completion claims."""

from __future__ import annotations

from pathlib import Path

import pytest

import drydock.pipeline.gates as gates_module
from drydock.agent_runner import AgentRunner
from drydock.config import VitalsConfig
from drydock.git_tools import GitError
from drydock.pipeline.gates import GateReport, QualityGates
from drydock.schemas import EvalResult, HealthScore, RunResult, TestOutcome
from drydock.vitals import VitalsEngine

pytestmark = pytest.mark.unit


class AnsweringAgent(AgentRunner):
    name = "answering"

    def __init__(self, answer: str) -> None:
        self.answer = answer
        self.prompts: list[str] = []

    def run(self, repo_path, prompt, *, full_auto=False, extra_args=None) -> RunResult:
        self.prompts.append(prompt)
        return RunResult(success=True, exit_code=0, final_message=self.answer)


@pytest.fixture()
def clean_repo(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(gates_module, "is_clean", lambda _repo: True)
    monkeypatch.setattr(gates_module, "marker_lines", lambda _repo, _rev="HEAD~1": [])


def _passing() -> EvalResult:
    return EvalResult(test_outcome=TestOutcome.PASSED, insertions=40, files_changed=2)


def test_report_collects_failure_reasons() -> None:
    report = GateReport()
    report.record("tests", True)
    report.record("clean_tree", False, "uncommitted changes present")
    report.record("markers", False)

    assert not report.passed
    assert report.failures == ["uncommitted changes present", "markers gate failed"]


def test_all_gates_pass(tmp_path: Path, clean_repo: None) -> None:
    report = QualityGates().check(tmp_path, eval_result=_passing())

    assert report.passed
    assert set(report.results) == {"tests", "clean_tree", "markers"}


def test_skipped_tests_count_as_passing(tmp_path: Path, clean_repo: None) -> None:
    report = QualityGates().check(tmp_path, eval_result=EvalResult(test_outcome=TestOutcome.SKIPPED))

    assert report.results["tests"] is True


def test_failing_tests_and_markers(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(gates_module, "is_clean", lambda _repo: True)
    monkeypatch.setattr(gates_module, "marker_lines", lambda _repo, _rev="HEAD~1": ["# TODO later", "# FIXME"])

    report = QualityGates().check(tmp_path, eval_result=EvalResult(test_outcome=TestOutcome.FAILED))

    assert report.failures == ["tests failing (failed)", "2 TODO/FIXME/HACK/XXX markers in new code"]


def test_git_status_error_fails_clean_tree(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def broken(_repo):
        raise GitError("not a repository")

    monkeypatch.setattr(gates_module, "is_clean", broken)
    monkeypatch.setattr(gates_module, "marker_lines", lambda _repo, _rev="HEAD~1": [])

    report = QualityGates().check(tmp_path, eval_result=_passing())

    assert report.results["clean_tree"] is False


class TestDefinitionOfDone:
    def test_agent_confirms_dod(self, tmp_path: Path, clean_repo: None) -> None:
        (tmp_path / "dod.md").write_text("- [ ] endpoint returns 200\n", encoding="utf-8")
        agent = AnsweringAgent("All items verified.\nDOD_PASS")

        report = QualityGates(agent=agent).check(tmp_path, eval_result=_passing(), artifacts_dir=tmp_path)

        assert report.results["dod"] is True
        assert str(tmp_path) in agent.prompts[0]

    def test_agent_rejects_dod(self, tmp_path: Path, clean_repo: None) -> None:
        (tmp_path / "dod.md").write_text("- [ ] docs updated\n", encoding="utf-8")

        report = QualityGates(agent=AnsweringAgent("DOD_FAIL: docs missing")).check(
            tmp_path, eval_result=_passing(), artifacts_dir=tmp_path
        )

        assert report.failures == ["definition of done not satisfied"]

    def test_no_dod_file_skips_gate(self, tmp_path: Path, clean_repo: None) -> None:
        agent = AnsweringAgent("DOD_PASS")

        report = QualityGates(agent=agent).check(tmp_path, eval_result=_passing(), artifacts_dir=tmp_path)

        assert "dod" not in report.results
        assert agent.prompts == []

    def test_include_dod_false_skips_agent_call(self, tmp_path: Path, clean_repo: None) -> None:
        (tmp_path / "dod.md").write_text("- [ ] done\n", encoding="utf-8")
        agent = AnsweringAgent("DOD_PASS")

        QualityGates(agent=agent).check(tmp_path, eval_result=_passing(), artifacts_dir=tmp_path, include_dod=False)

        assert agent.prompts == []


def test_health_gate_uses_threshold(tmp_path: Path, clean_repo: None) -> None:
    gates = QualityGates(vitals=VitalsEngine(VitalsConfig(health_gate_threshold=40)))

    low = gates.check(tmp_path, eval_result=_passing(), health=HealthScore(score=30))
    high = gates.check(tmp_path, eval_result=_passing(), health=HealthScore(score=75))

    assert low.failures == ["health score 30 below 40"]
    assert high.passed
