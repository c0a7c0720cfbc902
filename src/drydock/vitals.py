"""Vitals / adaptive-budget engine.

Scores an in-flight job from its snapshot history (momentum, convergence,
error maturity) and the cost ledger (budget headroom), turns the composite
score into a continue/warn/intervene/abort verdict, and recommends how many
build/test cycles a stage may use.
"""

from __future__ import annotations

import logging
import math
import re
import statistics
import time
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from drydock.config import VitalsConfig
from drydock.cost_ledger import CostLedger
from drydock.events import EventRecorder, VitalsRecorded
from drydock.file_io import atomic_write_json, atomic_write_text, locked_path, read_json
from drydock.schemas import BudgetStatus, HealthScore, Verdict, VitalsSnapshot

logger = logging.getLogger(__name__)

FIRST_STAGE = "intake"

# Stages still ahead of the named stage, used to project remaining spend.
REMAINING_STAGES: dict[str, int] = {
    "intake": 11,
    "plan": 10,
    "design": 9,
    "build": 8,
    "test": 7,
    "review": 6,
    "compound_quality": 5,
    "pr": 4,
    "merge": 3,
    "deploy": 2,
    "validate": 1,
    "monitor": 0,
}
_DEFAULT_REMAINING_STAGES = 6

VERDICT_ACTIONS: dict[Verdict, str] = {
    Verdict.CONTINUE: "continue",
    Verdict.WARN: "extend patience, monitor closely",
    Verdict.INTERVENE: "prepare intervention, consider reducing scope",
    Verdict.ABORT: "abort pipeline, escalate to human",
}

_SIGNATURE_HEX_RE = re.compile(r"0x[0-9a-fA-F]+")
_SIGNATURE_NUM_RE = re.compile(r"\d+")
_SIGNATURE_WS_RE = re.compile(r"\s+")


def _clamp(value: float, low: int = 0, high: int = 100) -> int:
    return int(max(low, min(high, round(value))))


def error_signature(text: str, *, max_len: int = 160) -> str:
    """Normalize an error message so repeats of the same failure compare equal."""
    first = ""
    for line in str(text or "").splitlines():
        if line.strip():
            first = line.strip()
            break
    if not first:
        return ""
    normalized = _SIGNATURE_HEX_RE.sub("0xN", first)
    normalized = _SIGNATURE_NUM_RE.sub("N", normalized)
    normalized = _SIGNATURE_WS_RE.sub(" ", normalized).lower()
    return normalized[:max_len]


# ---------------------------------------------------------------------------
# Per-job history
# ---------------------------------------------------------------------------

class VitalsHistory(BaseModel):
    """Persisted per-job progress history."""

    job_id: str
    snapshots: list[VitalsSnapshot] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    no_progress_count: int = 0
    last_score: int | None = None
    updated_at: float = Field(default_factory=time.time)

    def append(self, snapshot: VitalsSnapshot, *, max_snapshots: int = 20) -> None:
        """Add *snapshot*, maintaining the stagnation counter and the size cap."""
        if self.snapshots:
            prev = self.snapshots[-1]
            if snapshot.stage != prev.stage or snapshot.iteration > prev.iteration:
                self.no_progress_count = 0
            else:
                self.no_progress_count += 1
        self.snapshots.append(snapshot)
        if len(self.snapshots) > max_snapshots:
            self.snapshots = self.snapshots[-max_snapshots:]
        if snapshot.last_error:
            signature = error_signature(snapshot.last_error)
            if signature:
                self.errors.append(signature)
                self.errors = self.errors[-200:]
        self.updated_at = time.time()


class VitalsStore:
    """Atomic JSON storage of :class:`VitalsHistory` documents, one per job."""

    def __init__(self, directory: str | Path, *, max_snapshots: int = 20) -> None:
        self.directory = Path(directory)
        self.max_snapshots = max_snapshots

    def path_for(self, job_id: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", job_id) or "job"
        return self.directory / f"{safe}.json"

    def load(self, job_id: str) -> VitalsHistory:
        path = self.path_for(job_id)
        data = read_json(path, default=None)
        if not isinstance(data, dict):
            return VitalsHistory(job_id=job_id)
        try:
            return VitalsHistory.model_validate(data)
        except ValidationError as exc:
            logger.warning("Discarding invalid vitals history %s: %s", path, exc)
            return VitalsHistory(job_id=job_id)

    def save(self, history: VitalsHistory) -> None:
        atomic_write_text(self.path_for(history.job_id), history.model_dump_json(indent=2))

    def record(self, job_id: str, snapshot: VitalsSnapshot) -> VitalsHistory:
        """Append a snapshot to the job's history and persist it."""
        path = self.path_for(job_id)
        with locked_path(path):
            history = self.load(job_id)
            history.append(snapshot, max_snapshots=self.max_snapshots)
            self.save(history)
        return history

    def remember_score(self, job_id: str, score: int) -> None:
        path = self.path_for(job_id)
        with locked_path(path):
            history = self.load(job_id)
            history.last_score = score
            self.save(history)

    def prune(self, *, max_age_seconds: float) -> int:
        """Delete histories untouched for *max_age_seconds*; return how many."""
        if not self.directory.is_dir():
            return 0
        cutoff = time.time() - max_age_seconds
        removed = 0
        for path in self.directory.glob("*.json"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError:
                continue
        return removed


# ---------------------------------------------------------------------------
# Learned iteration model
# ---------------------------------------------------------------------------

class IterationModel:
    """Build/test cycle counts learned from finished pipelines.

    The document maps a loop type to its recent samples and the derived
    recommendation::

        {"build_test": {"history": [1, 2, 1], "samples": 3, "mean": 1.3,
                        "stddev": 0.5, "recommended_cycles": 1}}

    ``recommended_cycles`` is ``floor(mean + stddev)`` and stays 0 until
    *min_samples* outcomes have been recorded.
    """

    def __init__(self, path: str | Path, *, min_samples: int = 3, max_samples: int = 50) -> None:
        self.path = Path(path)
        self.min_samples = max(1, min_samples)
        self.max_samples = max(self.min_samples, max_samples)

    def load(self) -> dict[str, dict]:
        data = read_json(self.path, default={})
        return data if isinstance(data, dict) else {}

    def recommended(self, loop_type: str) -> int:
        entry = self.load().get(loop_type)
        if not isinstance(entry, dict):
            return 0
        try:
            return max(0, int(entry.get("recommended_cycles") or 0))
        except (TypeError, ValueError):
            return 0

    def record(self, loop_type: str, cycles: int) -> int:
        """Add one successful run's cycle count; return the new recommendation."""
        with locked_path(self.path):
            data = self.load()
            entry = data.get(loop_type) if isinstance(data.get(loop_type), dict) else {}
            history = [int(c) for c in entry.get("history", []) if isinstance(c, (int, float))]
            history.append(max(1, int(cycles)))
            history = history[-self.max_samples :]
            mean = statistics.fmean(history)
            stddev = statistics.pstdev(history) if len(history) > 1 else 0.0
            recommended = max(1, math.floor(mean + stddev)) if len(history) >= self.min_samples else 0
            data[loop_type] = {
                "history": history,
                "samples": len(history),
                "mean": round(mean, 2),
                "stddev": round(stddev, 2),
                "recommended_cycles": recommended,
                "updated_at": time.time(),
            }
            atomic_write_json(self.path, data)
        logger.debug("Iteration model %s: %d sample(s), recommended=%d", loop_type, len(history), recommended)
        return recommended


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class VitalsEngine:
    """Compute health scores, verdicts, and adaptive iteration limits.

    Parameters
    ----------
    config:
        Weights, verdict thresholds, and limit defaults.
    ledger:
        Optional cost ledger for the budget signal. Without one the budget
        signal is always full and the trajectory always ``ok``.
    recorder:
        Optional event sink for ``vitals.snapshot`` events.
    iteration_model:
        Optional :class:`IterationModel`. Its recommendation for a loop type,
        once it has enough samples, replaces the configured base limit.
    """

    enabled = True

    def __init__(
        self,
        config: VitalsConfig | None = None,
        *,
        ledger: CostLedger | None = None,
        recorder: EventRecorder | None = None,
        iteration_model: IterationModel | None = None,
    ) -> None:
        self.config = config or VitalsConfig()
        self.ledger = ledger
        self.recorder = recorder
        self.iteration_model = iteration_model

    # -- individual signals --------------------------------------------

    @staticmethod
    def momentum(history: VitalsHistory | None) -> int:
        """Reward forward stage movement, iteration progress, and diff growth."""
        if history is None or not history.snapshots:
            return 50
        snapshots = history.snapshots
        if len(snapshots) == 1:
            stage = snapshots[0].stage
            if stage and stage not in {FIRST_STAGE, "unknown"}:
                return 60
            return 50

        prev, current = snapshots[-2], snapshots[-1]
        score = 50
        if current.stage != prev.stage and current.stage != "unknown":
            score += 30
        iter_delta = current.iteration - prev.iteration
        if iter_delta > 0:
            score += min(30, iter_delta * 10)
        diff_delta = current.diff_lines - prev.diff_lines
        if diff_delta > 0:
            score += min(20, (diff_delta // 50) * 5)
        score -= history.no_progress_count * 20
        return _clamp(score)

    @staticmethod
    def convergence(history: VitalsHistory | None) -> int:
        """Reward a falling rate of errors across the snapshot history."""
        if history is None or not history.errors:
            return 100
        snapshots = history.snapshots
        if len(snapshots) >= 2:
            half = len(snapshots) // 2
            early = sum(1 for snap in snapshots[:half] if snap.last_error)
            late = sum(1 for snap in snapshots[half:] if snap.last_error)
            if early > 0:
                reduction = (early - late) * 100 // early
                if reduction > 50:
                    return 100
                if reduction > 0:
                    return 75
                if reduction == 0:
                    return 40
        if history.no_progress_count >= 3:
            return 10
        return 40

    @staticmethod
    def error_maturity(history: VitalsHistory | None) -> int:
        """Score how settled the error population is (many new errors = immature)."""
        if history is None or not history.errors:
            return 80
        total = len(history.errors)
        unique = len(set(history.errors))
        ratio = unique * 100 // total
        if ratio > 80:
            return 20
        if ratio > 40:
            return 50
        return 60

    def budget_signal(self) -> int:
        """Remaining share of today's budget as 0-100 (100 without a budget)."""
        if self.ledger is None:
            return 100
        snapshot = self.ledger.snapshot()
        if snapshot is None:
            return 100
        return snapshot.remaining_percent

    # -- composite ------------------------------------------------------

    def verdict(self, score: int, prior: int | None = None) -> Verdict:
        """Classify *score*, using *prior* to separate improving from declining runs."""
        thresholds = self.config.thresholds
        if score >= thresholds.continue_at:
            return Verdict.CONTINUE
        if score < thresholds.abort_below:
            return Verdict.ABORT
        if prior is not None and score > prior:
            return Verdict.WARN
        if score >= thresholds.warn_floor:
            return Verdict.WARN
        return Verdict.INTERVENE

    def compute(self, history: VitalsHistory | None, *, prior: int | None = None) -> HealthScore:
        """Return the weighted health score and verdict for *history*."""
        weights = self.config.weights
        momentum = self.momentum(history)
        convergence = self.convergence(history)
        budget = self.budget_signal()
        maturity = self.error_maturity(history)
        total_weight = weights.total or 1
        raw = (
            momentum * weights.momentum
            + convergence * weights.convergence
            + budget * weights.budget
            + maturity * weights.error_maturity
        ) / total_weight
        score = _clamp(raw)
        if prior is None and history is not None:
            prior = history.last_score
        verdict = self.verdict(score, prior)
        return HealthScore(
            score=score,
            verdict=verdict,
            momentum=momentum,
            convergence=convergence,
            budget=budget,
            error_maturity=maturity,
            action=VERDICT_ACTIONS[verdict],
            prior_score=prior,
        )

    def assess(self, store: VitalsStore, job_id: str, *, issue: int | None = None) -> HealthScore:
        """Score the stored history for *job_id*, remember the score, and emit an event."""
        history = store.load(job_id)
        health = self.compute(history)
        store.remember_score(job_id, health.score)
        if self.recorder is not None:
            iteration = history.snapshots[-1].iteration if history.snapshots else 0
            self.recorder.emit(
                VitalsRecorded(
                    job_id=job_id,
                    issue=issue,
                    iteration=iteration,
                    score=health.score,
                    verdict=health.verdict.value,
                    momentum=health.momentum,
                    convergence=health.convergence,
                    budget=health.budget,
                    error_maturity=health.error_maturity,
                )
            )
        return health

    # -- adaptive decisions -----------------------------------------------

    def _base_limit(self, loop_type: str) -> int:
        base = max(1, int(self.config.base_iteration_limit))
        if self.iteration_model is None:
            return base
        return self.iteration_model.recommended(loop_type) or base

    def learn_cycles(self, cycles: int, *, loop_type: str = "build_test") -> None:
        """Feed a successful run's cycle count into the iteration model."""
        if self.iteration_model is not None:
            self.iteration_model.record(loop_type, cycles)

    def adaptive_limit(self, health: HealthScore | None = None, *, loop_type: str = "build_test") -> int:
        """Return the iteration cap for a loop, always a positive integer.

        Without vitals the static base limit is returned. A nearly exhausted
        budget caps the limit at 1 regardless of the other signals.
        """
        base = self._base_limit(loop_type)
        ceiling = max(4, base * 2)
        if health is None:
            return base
        limit = base
        if health.score > 70 and health.convergence > 60:
            limit = base + 1
        if health.score < 40:
            limit = base
        if health.budget < 30:
            limit = 1
        return max(1, min(ceiling, limit))

    def budget_trajectory(self, current_stage: str = "") -> BudgetStatus:
        """Project whether the remaining budget covers the remaining stages."""
        if self.ledger is None:
            return BudgetStatus.OK
        snapshot = self.ledger.snapshot()
        if snapshot is None:
            return BudgetStatus.OK
        avg = snapshot.avg_cost_per_stage or self.config.avg_cost_per_stage
        stages_left = REMAINING_STAGES.get(current_stage, _DEFAULT_REMAINING_STAGES)
        needed = avg * stages_left * self.config.budget_safety_multiplier
        remaining = snapshot.remaining_usd
        if remaining < avg * 2:
            return BudgetStatus.STOP
        if remaining < needed:
            return BudgetStatus.WARN
        return BudgetStatus.OK

    def health_gate(self, health: HealthScore | int) -> bool:
        """Return True when the score clears the configured gate threshold."""
        score = health.score if isinstance(health, HealthScore) else int(health)
        return score >= self.config.health_gate_threshold


class DisabledVitalsEngine(VitalsEngine):
    """Stand-in used when vitals are switched off: neutral on every decision."""

    enabled = False

    def compute(self, history: VitalsHistory | None, *, prior: int | None = None) -> HealthScore:
        return HealthScore(
            score=100,
            verdict=Verdict.CONTINUE,
            momentum=50,
            convergence=100,
            budget=100,
            error_maturity=80,
            action=VERDICT_ACTIONS[Verdict.CONTINUE],
            prior_score=prior,
        )

    def assess(self, store: VitalsStore, job_id: str, *, issue: int | None = None) -> HealthScore:
        return self.compute(None)

    def adaptive_limit(self, health: HealthScore | None = None, *, loop_type: str = "build_test") -> int:
        return self._base_limit(loop_type)

    def budget_trajectory(self, current_stage: str = "") -> BudgetStatus:
        return BudgetStatus.OK

    def health_gate(self, health: HealthScore | int) -> bool:
        return True


def build_vitals_engine(
    config: VitalsConfig,
    *,
    ledger: CostLedger | None = None,
    recorder: EventRecorder | None = None,
    iteration_model: IterationModel | None = None,
) -> VitalsEngine:
    """Return an active engine, or the neutral stand-in when vitals are disabled."""
    cls = VitalsEngine if config.enabled else DisabledVitalsEngine
    return cls(config, ledger=ledger, recorder=recorder, iteration_model=iteration_model)
