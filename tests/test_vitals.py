"""Tests for health scoring, verdicts and adaptive limits."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from drydock.config import VitalsConfig
from drydock.cost_ledger import CostLedger
from drydock.events import EventRecorder
from drydock.schemas import BudgetStatus, HealthScore, Verdict, VitalsSnapshot
from drydock.vitals import (
    DisabledVitalsEngine,
    IterationModel,
    VitalsEngine,
    VitalsHistory,
    VitalsStore,
    build_vitals_engine,
    error_signature,
)

pytestmark = pytest.mark.unit


def _ledger(tmp_path: Path, budget: float) -> CostLedger:
    budget_path = tmp_path / "budget.json"
    budget_path.write_text(json.dumps({"enabled": True, "daily_budget_usd": budget}), encoding="utf-8")
    return CostLedger(tmp_path / "costs.json", budget_path)


class TestVerdict:
    @pytest.mark.parametrize(
        ("score", "prior", "expected"),
        [
            (60, None, Verdict.CONTINUE),
            (59, None, Verdict.WARN),
            (50, None, Verdict.WARN),
            (49, None, Verdict.INTERVENE),
            (49, 40, Verdict.WARN),
            (49, 55, Verdict.INTERVENE),
            (25, None, Verdict.INTERVENE),
            (24, 10, Verdict.ABORT),
        ],
    )
    def test_thresholds(self, score: int, prior: int | None, expected: Verdict) -> None:
        assert VitalsEngine().verdict(score, prior) == expected

    @pytest.mark.parametrize(
        ("score", "expected"),
        [(80, Verdict.CONTINUE), (55, Verdict.WARN), (35, Verdict.INTERVENE), (20, Verdict.ABORT)],
    )
    def test_verdict_is_monotonic_in_score(self, score: int, expected: Verdict) -> None:
        assert VitalsEngine().verdict(score) == expected

    def test_trend_decides_inside_the_band(self) -> None:
        engine = VitalsEngine()

        assert engine.verdict(40, 30) == Verdict.WARN
        assert engine.verdict(40, 55) == Verdict.INTERVENE


class TestSignals:
    def test_momentum_without_history(self) -> None:
        assert VitalsEngine.momentum(None) == 50

    def test_momentum_single_snapshot_past_intake(self) -> None:
        history = VitalsHistory(job_id="j", snapshots=[VitalsSnapshot(stage="build", iteration=1)])

        assert VitalsEngine.momentum(history) == 60

    def test_momentum_rewards_forward_movement(self) -> None:
        history = VitalsHistory(
            job_id="j",
            snapshots=[
                VitalsSnapshot(stage="plan", iteration=1, diff_lines=0),
                VitalsSnapshot(stage="build", iteration=2, diff_lines=100),
            ],
        )

        assert VitalsEngine.momentum(history) == 100

    def test_momentum_penalises_stagnation(self) -> None:
        history = VitalsHistory(
            job_id="j",
            snapshots=[VitalsSnapshot(stage="build", iteration=3), VitalsSnapshot(stage="build", iteration=3)],
            no_progress_count=2,
        )

        assert VitalsEngine.momentum(history) == 10

    def test_convergence_rewards_falling_errors(self) -> None:
        snaps = [
            VitalsSnapshot(iteration=1, last_error="boom"),
            VitalsSnapshot(iteration=2, last_error="boom"),
            VitalsSnapshot(iteration=3),
            VitalsSnapshot(iteration=4),
        ]
        history = VitalsHistory(job_id="j", snapshots=snaps, errors=["boom", "boom"])

        assert VitalsEngine.convergence(history) == 100
        assert VitalsEngine.convergence(VitalsHistory(job_id="j")) == 100

    def test_error_maturity(self) -> None:
        fresh = VitalsHistory(job_id="j", errors=["a", "b", "c", "d", "e"])
        settled = VitalsHistory(job_id="j", errors=["a"] * 5)

        assert VitalsEngine.error_maturity(fresh) == 20
        assert VitalsEngine.error_maturity(settled) == 60
        assert VitalsEngine.error_maturity(None) == 80

    def test_error_signature_normalises_numbers(self) -> None:
        first = error_signature("TypeError   at line 42, col 7\ntraceback")
        second = error_signature("TypeError at line 97, col 12")

        assert first == second == "typeerror at line n, col n"


class TestCompute:
    def test_neutral_history_scores_continue(self) -> None:
        health = VitalsEngine().compute(None)

        assert health.score == 80
        assert health.verdict == Verdict.CONTINUE
        assert health.budget == 100

    def test_assess_remembers_score_and_emits_event(self, tmp_path: Path) -> None:
        recorder = EventRecorder(tmp_path / "events.jsonl")
        store = VitalsStore(tmp_path / "vitals")
        store.record("issue-3", VitalsSnapshot(stage="build", iteration=1, diff_lines=40))

        health = VitalsEngine(recorder=recorder).assess(store, "issue-3", issue=3)

        assert store.load("issue-3").last_score == health.score
        events = recorder.read(types=["vitals.snapshot"])
        assert len(events) == 1
        assert events[0].issue == 3


class TestAdaptiveLimit:
    def test_base_without_health(self) -> None:
        assert VitalsEngine(VitalsConfig(base_iteration_limit=5)).adaptive_limit() == 5

    def test_healthy_converging_run_earns_one_more(self) -> None:
        health = HealthScore(score=80, convergence=70, budget=90)

        assert VitalsEngine().adaptive_limit(health) == 6

    def test_low_budget_caps_at_one(self) -> None:
        health = HealthScore(score=80, convergence=70, budget=20)

        assert VitalsEngine().adaptive_limit(health) == 1

    def test_learned_limit_overrides_base(self, tmp_path: Path) -> None:
        learned = tmp_path / "iteration-model.json"
        learned.write_text(json.dumps({"build_test": {"recommended_cycles": 8}}), encoding="utf-8")
        engine = VitalsEngine(iteration_model=IterationModel(learned))

        assert engine.adaptive_limit(HealthScore(score=30, budget=100)) == 8
        assert engine.adaptive_limit(HealthScore(score=30, budget=100), loop_type="review") == 5


class TestIterationModel:
    def test_recommendation_waits_for_enough_samples(self, tmp_path: Path) -> None:
        model = IterationModel(tmp_path / "iteration-model.json", min_samples=3)

        assert model.record("build_test", 1) == 0
        assert model.record("build_test", 3) == 0
        assert model.recommended("build_test") == 0
        assert model.record("build_test", 2) == 2

        entry = model.load()["build_test"]
        assert entry["history"] == [1, 3, 2]
        assert entry["mean"] == 2.0
        assert model.recommended("review") == 0

    def test_history_is_capped(self, tmp_path: Path) -> None:
        model = IterationModel(tmp_path / "iteration-model.json", min_samples=1, max_samples=3)
        for cycles in (5, 1, 1, 1):
            model.record("build_test", cycles)

        assert model.load()["build_test"]["history"] == [1, 1, 1]
        assert model.recommended("build_test") == 1

    def test_engine_learns_from_successful_runs(self, tmp_path: Path) -> None:
        model = IterationModel(tmp_path / "iteration-model.json", min_samples=2)
        engine = VitalsEngine(VitalsConfig(base_iteration_limit=5), iteration_model=model)

        engine.learn_cycles(2)
        assert engine.adaptive_limit() == 5

        engine.learn_cycles(2)
        assert engine.adaptive_limit() == 2

    def test_corrupt_model_falls_back_to_base(self, tmp_path: Path) -> None:
        path = tmp_path / "iteration-model.json"
        path.write_text("[not json", encoding="utf-8")
        engine = VitalsEngine(VitalsConfig(base_iteration_limit=4), iteration_model=IterationModel(path))

        assert engine.adaptive_limit() == 4


class TestBudgetTrajectory:
    def test_without_ledger(self) -> None:
        assert VitalsEngine().budget_trajectory("build") == BudgetStatus.OK

    def test_levels(self, tmp_path: Path) -> None:
        assert VitalsEngine(ledger=_ledger(tmp_path, 10.0)).budget_trajectory("build") == BudgetStatus.OK
        assert VitalsEngine(ledger=_ledger(tmp_path, 4.0)).budget_trajectory("build") == BudgetStatus.WARN
        assert VitalsEngine(ledger=_ledger(tmp_path, 0.5)).budget_trajectory("build") == BudgetStatus.STOP

    def test_budget_signal_reflects_spend(self, tmp_path: Path) -> None:
        ledger = _ledger(tmp_path, 10.0)
        ledger.record(2.5, stage="build", issue=1)

        assert VitalsEngine(ledger=ledger).budget_signal() == 75


class TestVitalsStore:
    def test_no_progress_counter(self, tmp_path: Path) -> None:
        store = VitalsStore(tmp_path)
        store.record("job", VitalsSnapshot(stage="build", iteration=3, diff_lines=10))
        store.record("job", VitalsSnapshot(stage="build", iteration=3, diff_lines=40))
        history = store.record("job", VitalsSnapshot(stage="build", iteration=2, diff_lines=90))

        assert history.no_progress_count == 2

        history = store.record("job", VitalsSnapshot(stage="build", iteration=4, diff_lines=90))
        assert history.no_progress_count == 0

        store.record("job", VitalsSnapshot(stage="build", iteration=4, diff_lines=90))
        history = store.record("job", VitalsSnapshot(stage="test", iteration=4, diff_lines=90))
        assert history.no_progress_count == 0

    def test_snapshots_are_capped(self, tmp_path: Path) -> None:
        store = VitalsStore(tmp_path, max_snapshots=3)
        for i in range(6):
            store.record("job", VitalsSnapshot(stage="build", iteration=i, diff_lines=i * 10))

        assert [s.iteration for s in store.load("job").snapshots] == [3, 4, 5]

    def test_unsafe_job_id_is_sanitised(self, tmp_path: Path) -> None:
        assert VitalsStore(tmp_path).path_for("issue/7 retry").name == "issue_7_retry.json"


def test_disabled_engine_is_neutral() -> None:
    engine = build_vitals_engine(VitalsConfig(enabled=False))

    assert isinstance(engine, DisabledVitalsEngine)
    assert engine.health_gate(0)
    assert engine.compute(None).verdict == Verdict.CONTINUE
