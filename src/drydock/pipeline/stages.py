"""Stage definitions: ordering, templates, required artifacts and skip heuristics.

Stages run in a fixed order; a template picks which of them are enabled for
a job. A stage is only complete once its required artifacts exist and are
non-empty.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from enum import Enum
from pathlib import Path

from drydock.config import PipelineConfig
from drydock.errors import ConfigError

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    """The stages of a job's pipeline, in execution order."""

    INTAKE = "intake"
    PLAN = "plan"
    DESIGN = "design"
    BUILD = "build"
    TEST = "test"
    REVIEW = "review"
    COMPOUND_QUALITY = "compound_quality"
    PR = "pr"
    MERGE = "merge"
    DEPLOY = "deploy"
    VALIDATE = "validate"
    MONITOR = "monitor"


STAGE_ORDER: list[Stage] = list(Stage)

TEMPLATES: dict[str, list[Stage]] = {
    "fast": [Stage.INTAKE, Stage.BUILD, Stage.TEST, Stage.PR],
    "standard": [Stage.INTAKE, Stage.PLAN, Stage.BUILD, Stage.TEST, Stage.REVIEW, Stage.PR],
    "full": [
        Stage.INTAKE,
        Stage.PLAN,
        Stage.DESIGN,
        Stage.BUILD,
        Stage.TEST,
        Stage.REVIEW,
        Stage.COMPOUND_QUALITY,
        Stage.PR,
    ],
    "hotfix": [Stage.INTAKE, Stage.BUILD, Stage.TEST, Stage.PR],
}

# Per-template cap on build iterations (overrides PipelineConfig.max_iterations).
TEMPLATE_ITERATION_LIMITS: dict[str, int] = {"hotfix": 3}

REQUIRED_ARTIFACTS: dict[Stage, tuple[str, ...]] = {
    Stage.PLAN: ("plan.md", "dod.md"),
    Stage.DESIGN: ("design.md", "plan.md"),
}

# Stages whose outcome is decided by running a shell command.
COMMAND_STAGES: dict[Stage, str] = {
    Stage.DEPLOY: "deploy_cmd",
    Stage.VALIDATE: "validate_cmd",
    Stage.MONITOR: "monitor_cmd",
}

NEVER_SKIP = frozenset({Stage.INTAKE, Stage.BUILD, Stage.TEST, Stage.PR, Stage.MERGE})
_DOCS_LABELS = frozenset({"documentation", "docs", "typo"})
_HOTFIX_LABELS = frozenset({"hotfix", "urgent", "p0"})


def ordered(stages: Iterable[Stage | str]) -> list[Stage]:
    """Return the distinct *stages* sorted into pipeline order."""
    wanted = {Stage(s) for s in stages}
    return [stage for stage in STAGE_ORDER if stage in wanted]


def resolve_stages(template: str, config: PipelineConfig) -> list[Stage]:
    """Return the enabled stages for a job.

    An explicit ``enabled_stages`` list wins over the template. Command
    stages (deploy/validate/monitor) are appended when their command is
    configured.
    """
    if config.enabled_stages:
        try:
            return ordered(config.enabled_stages)
        except ValueError as exc:
            raise ConfigError(f"Unknown stage in enabled_stages: {exc}") from exc
    stages = TEMPLATES.get(template)
    if stages is None:
        logger.warning("Unknown template %r; using 'standard'", template)
        stages = TEMPLATES["standard"]
    extra = [stage for stage, field in COMMAND_STAGES.items() if getattr(config, field, "").strip()]
    return ordered([*stages, *extra])


def iteration_limit(template: str, config: PipelineConfig) -> int:
    return min(config.max_iterations, TEMPLATE_ITERATION_LIMITS.get(template, config.max_iterations))


def verify_artifacts(stage: Stage | str, artifacts_dir: str | Path) -> tuple[list[str], list[str]]:
    """Return ``(present, missing)`` required artifacts for *stage*.

    A file that exists but holds only whitespace counts as missing.
    """
    root = Path(artifacts_dir)
    present: list[str] = []
    missing: list[str] = []
    for name in REQUIRED_ARTIFACTS.get(Stage(stage), ()):
        path = root / name
        try:
            ok = path.is_file() and bool(path.read_text(encoding="utf-8", errors="replace").strip())
        except OSError:
            ok = False
        (present if ok else missing).append(name)
    return present, missing


def should_skip_stage(
    stage: Stage | str,
    *,
    labels: Iterable[str] = (),
    complexity: int = 0,
    diff_lines: int = 0,
) -> str | None:
    """Return a skip reason for *stage*, or ``None`` when it should run.

    Signals, in order: documentation labels, hotfix labels, estimated
    complexity (1-10, 0 = unknown) and, for compound quality only, the size
    of the job's diff.
    """
    stage = Stage(stage)
    if stage in NEVER_SKIP:
        return None
    label_set = {label.strip().lower() for label in labels if label}

    if label_set & _DOCS_LABELS and stage in {Stage.REVIEW, Stage.COMPOUND_QUALITY}:
        return "label:documentation"
    if label_set & _HOTFIX_LABELS and stage in {Stage.PLAN, Stage.DESIGN, Stage.COMPOUND_QUALITY}:
        return "label:hotfix"
    if complexity > 0:
        if complexity <= 2 and stage in {Stage.DESIGN, Stage.COMPOUND_QUALITY, Stage.REVIEW}:
            return f"complexity:{complexity}/10"
        if complexity <= 3 and stage == Stage.DESIGN:
            return f"complexity:{complexity}/10"
    if stage == Stage.COMPOUND_QUALITY and 0 < diff_lines < 20:
        return f"diff_size:{diff_lines}_lines"
    return None
