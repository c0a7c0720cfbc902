"""Tests for stage ordering, templates, artifacts and skip heuristics."""

from __future__ import annotations

from pathlib import Path

import pytest

from drydock.config import PipelineConfig
from drydock.errors import ConfigError
from drydock.pipeline.stages import (
    Stage,
    iteration_limit,
    ordered,
    resolve_stages,
    should_skip_stage,
    verify_artifacts,
)

pytestmark = pytest.mark.unit


class TestResolveStages:
    def test_standard_template(self) -> None:
        stages = resolve_stages("standard", PipelineConfig())

        assert stages == [Stage.INTAKE, Stage.PLAN, Stage.BUILD, Stage.TEST, Stage.REVIEW, Stage.PR]

    def test_unknown_template_falls_back_to_standard(self) -> None:
        assert resolve_stages("nonsense", PipelineConfig()) == resolve_stages("standard", PipelineConfig())

    def test_enabled_stages_override_template_and_are_ordered(self) -> None:
        config = PipelineConfig(enabled_stages=["pr", "build", "intake"])

        assert resolve_stages("full", config) == [Stage.INTAKE, Stage.BUILD, Stage.PR]

    def test_unknown_enabled_stage_is_a_config_error(self) -> None:
        with pytest.raises(ConfigError):
            resolve_stages("standard", PipelineConfig(enabled_stages=["build", "launch"]))

    def test_command_stages_appended_when_configured(self) -> None:
        config = PipelineConfig(deploy_cmd="make deploy", monitor_cmd="  ")

        stages = resolve_stages("fast", config)

        assert stages[-1] == Stage.DEPLOY
        assert Stage.MONITOR not in stages

    def test_ordered_drops_duplicates(self) -> None:
        assert ordered(["test", "build", "build"]) == [Stage.BUILD, Stage.TEST]


def test_hotfix_template_caps_iterations() -> None:
    config = PipelineConfig(max_iterations=20)

    assert iteration_limit("hotfix", config) == 3
    assert iteration_limit("standard", config) == 20
    assert iteration_limit("hotfix", PipelineConfig(max_iterations=2)) == 2


class TestVerifyArtifacts:
    def test_missing_and_blank_files_count_as_missing(self, tmp_path: Path) -> None:
        (tmp_path / "plan.md").write_text("# Plan\n- step one\n", encoding="utf-8")
        (tmp_path / "dod.md").write_text("   \n\n", encoding="utf-8")

        present, missing = verify_artifacts(Stage.PLAN, tmp_path)

        assert present == ["plan.md"]
        assert missing == ["dod.md"]

    def test_stage_without_requirements(self, tmp_path: Path) -> None:
        assert verify_artifacts("build", tmp_path) == ([], [])


class TestShouldSkipStage:
    def test_core_stages_never_skip(self) -> None:
        for stage in (Stage.INTAKE, Stage.BUILD, Stage.TEST, Stage.PR):
            assert should_skip_stage(stage, labels=["documentation"], complexity=1) is None

    def test_documentation_label_skips_review(self) -> None:
        assert should_skip_stage(Stage.REVIEW, labels=["Docs"]) == "label:documentation"
        assert should_skip_stage(Stage.PLAN, labels=["docs"]) is None

    def test_hotfix_label_skips_planning(self) -> None:
        assert should_skip_stage(Stage.PLAN, labels=["hotfix"]) == "label:hotfix"
        assert should_skip_stage(Stage.DESIGN, labels=["P0"]) == "label:hotfix"
        assert should_skip_stage(Stage.REVIEW, labels=["hotfix"]) is None

    @pytest.mark.parametrize(
        ("stage", "complexity", "expected"),
        [
            (Stage.DESIGN, 2, "complexity:2/10"),
            (Stage.REVIEW, 2, "complexity:2/10"),
            (Stage.DESIGN, 3, "complexity:3/10"),
            (Stage.REVIEW, 3, None),
            (Stage.DESIGN, 0, None),
            (Stage.DESIGN, 7, None),
        ],
    )
    def test_complexity(self, stage: Stage, complexity: int, expected: str | None) -> None:
        assert should_skip_stage(stage, complexity=complexity) == expected

    def test_small_diff_skips_compound_quality(self) -> None:
        assert should_skip_stage(Stage.COMPOUND_QUALITY, diff_lines=12) == "diff_size:12_lines"
        assert should_skip_stage(Stage.COMPOUND_QUALITY, diff_lines=0) is None
        assert should_skip_stage(Stage.COMPOUND_QUALITY, diff_lines=250) is None
