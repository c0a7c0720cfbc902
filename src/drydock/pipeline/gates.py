"""Quality gates checked before a completion claim is accepted."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from drydock.agent_runner import AgentRunner
from drydock.agent_signals import contains_dod_pass
from drydock.git_tools import GitError, is_clean, marker_lines
from drydock.prompts import PromptCatalog, get_catalog
from drydock.schemas import EvalResult, HealthScore
from drydock.vitals import VitalsEngine

logger = logging.getLogger(__name__)

DOD_FILENAME = "dod.md"


@dataclass
class GateReport:
    """Outcome of one gate run: gate name -> passed, plus failure reasons."""

    results: dict[str, bool] = field(default_factory=dict)
    reasons: dict[str, str] = field(default_factory=dict)

    def record(self, gate: str, passed: bool, reason: str = "") -> None:
        self.results[gate] = passed
        if not passed:
            self.reasons[gate] = reason or f"{gate} gate failed"

    @property
    def passed(self) -> bool:
        return all(self.results.values())

    @property
    def failures(self) -> list[str]:
        return [self.reasons[gate] for gate, ok in self.results.items() if not ok]


class QualityGates:
    """Runs the automated checks that guard a completion claim.

    Parameters
    ----------
    agent:
        Runner used for the definition-of-done check. ``None`` skips it.
    vitals:
        Engine used for the health gate. ``None`` skips it.
    dod_check:
        Whether to ask the agent to confirm ``dod.md`` when the file exists.
    catalog:
        Prompt catalog for the DoD prompt (the shared one by default).
    """

    def __init__(
        self,
        *,
        agent: AgentRunner | None = None,
        vitals: VitalsEngine | None = None,
        dod_check: bool = True,
        catalog: PromptCatalog | None = None,
    ) -> None:
        self.agent = agent
        self.vitals = vitals
        self.dod_check = dod_check
        self.catalog = catalog or get_catalog()

    def check(
        self,
        repo_path: str | Path,
        *,
        eval_result: EvalResult,
        artifacts_dir: str | Path | None = None,
        health: HealthScore | None = None,
        include_dod: bool = True,
    ) -> GateReport:
        """Run every gate and return the report.

        The definition-of-done gate costs an agent call, so callers checking
        gates between iterations pass ``include_dod=False``.
        """
        repo = Path(repo_path)
        report = GateReport()

        report.record(
            "tests",
            eval_result.tests_ok,
            f"tests failing ({eval_result.test_outcome.value})",
        )

        try:
            clean = is_clean(repo)
        except GitError as exc:
            logger.warning("Could not read git status for %s: %s", repo, exc)
            clean = False
        report.record("clean_tree", clean, "uncommitted changes present")

        markers = marker_lines(repo, "HEAD~1")
        report.record(
            "markers",
            not markers,
            f"{len(markers)} TODO/FIXME/HACK/XXX markers in new code",
        )

        if include_dod and self.dod_check and self.agent is not None and artifacts_dir is not None:
            dod_path = Path(artifacts_dir) / DOD_FILENAME
            if dod_path.is_file():
                report.record("dod", self._dod_satisfied(repo, Path(artifacts_dir)), "definition of done not satisfied")
            else:
                logger.debug("No %s in %s; skipping DoD gate", DOD_FILENAME, artifacts_dir)

        if self.vitals is not None and health is not None:
            report.record(
                "health",
                self.vitals.health_gate(health),
                f"health score {health.score} below {self.vitals.config.health_gate_threshold}",
            )

        if report.passed:
            logger.info("Quality gates: all passed")
        else:
            logger.warning("Quality gates: FAILED (%s)", ", ".join(report.failures))
        return report

    def _dod_satisfied(self, repo: Path, artifacts_dir: Path) -> bool:
        prompt = self.catalog.render("dod_check", artifacts_dir=str(artifacts_dir))
        result = self.agent.run(repo, prompt, full_auto=False)
        satisfied = contains_dod_pass(result.output_text())
        logger.info("Definition of done: %s", "satisfied" if satisfied else "not satisfied")
        return satisfied

