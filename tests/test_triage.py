"""Tests for triage scoring and template selection."""

from __future__ import annotations

import datetime as dt
from pathlib import Path

import pytest

from drydock.config import TriageConfig
from drydock.events import EventRecorder, PipelineCompleted
from drydock.schemas import WorkItem
from drydock.triage import (
    TriageBreakdown,
    TriageScorer,
    blocking_dependencies,
    estimate_complexity,
    file_references,
)

pytestmark = pytest.mark.unit

NOW = dt.datetime(2026, 3, 10, 12, 0, tzinfo=dt.timezone.utc)


def _item(issue: int, *, labels: list[str] | None = None, body: str = "", days_old: float = 0) -> WorkItem:
    created = (NOW - dt.timedelta(days=days_old)).isoformat()
    return WorkItem(id=issue, title=f"Issue {issue}", labels=labels or [], body=body, created_at=created)


class TestSignals:
    def test_file_references_are_distinct(self) -> None:
        body = "Touches src/app.py and src/app.py plus config.yaml"

        assert file_references(body) == ["src/app.py", "config.yaml"]

    def test_blocking_dependencies(self) -> None:
        assert blocking_dependencies("Blocked by #12, depends on #4; see #99") == [4, 12]

    def test_estimate_complexity(self) -> None:
        assert estimate_complexity(_item(1, body="small fix")) == 2
        assert estimate_complexity(_item(2, body="x" * 1500)) == 6
        many_files = " ".join(f"mod{i}.py" for i in range(6)) + " " + "y" * 3000
        assert estimate_complexity(_item(3, body=many_files)) == 10


class TestBreakdown:
    def test_urgent_old_bug(self) -> None:
        scorer = TriageScorer()

        result = scorer.breakdown(_item(1, labels=["P0", "bug"], body="crash on start", days_old=10), now=NOW)

        assert (result.priority, result.age, result.complexity, result.type_bonus) == (30, 15, 20, 10)
        assert result.total == 75

    def test_total_is_clamped(self) -> None:
        assert TriageBreakdown(dependency=-15, memory=-5).total == 0
        assert TriageBreakdown(priority=90, age=30).total == 100

    def test_open_dependency_penalised(self) -> None:
        scorer = TriageScorer(is_open=lambda issue: issue == 5)

        blocked = scorer.breakdown(_item(1, body="blocked by #5"), now=NOW)
        unblocked = scorer.breakdown(_item(2, body="depends on #6"), now=NOW)

        assert blocked.dependency == -15
        assert unblocked.dependency == 0

    def test_failing_lookup_counts_dependency_as_open(self) -> None:
        def lookup(_issue: int) -> bool:
            raise RuntimeError("tracker down")

        scorer = TriageScorer(is_open=lookup)

        assert scorer.breakdown(_item(1, body="blocked by #5"), now=NOW).dependency == -15

    def test_blocking_other_items_earns_bonus(self) -> None:
        scorer = TriageScorer()
        blocker = _item(5)
        waiting = _item(6, body="depends on #5")

        assert scorer.breakdown(blocker, others=[blocker, waiting], now=NOW).dependency == 15

    def test_memory_from_past_outcomes(self, tmp_path: Path) -> None:
        recorder = EventRecorder(tmp_path / "events.jsonl")
        recorder.emit(PipelineCompleted(issue=1, result="failure"))
        recorder.emit(PipelineCompleted(issue=1, result="success"))
        recorder.emit(PipelineCompleted(issue=2, result="failure"))
        scorer = TriageScorer(recorder=recorder)

        assert scorer.breakdown(_item(1), now=NOW).memory == 10
        assert scorer.breakdown(_item(2), now=NOW).memory == -5
        assert scorer.breakdown(_item(3), now=NOW).memory == 0


class TestRank:
    def test_sorted_by_score_then_id(self, tmp_path: Path) -> None:
        recorder = EventRecorder(tmp_path / "events.jsonl")
        items = [_item(3, body="x" * 500), _item(1, labels=["high"]), _item(2, labels=["high"])]

        ranked = TriageScorer(recorder=recorder).rank(items, now=NOW)

        assert [item.id for item in ranked] == [1, 2, 3]
        assert ranked[0].score == 40
        assert len(recorder.read(types=["daemon.triage"])) == 3


class TestSelectTemplate:
    @pytest.mark.parametrize(
        ("labels", "expected"),
        [
            (["hotfix"], "hotfix"),
            (["incident", "security"], "hotfix"),
            (["security"], "full"),
            (["bug"], "fast"),
            (["enhancement"], "standard"),
            ([], "standard"),
        ],
    )
    def test_label_mapping(self, labels: list[str], expected: str) -> None:
        assert TriageScorer().select_template(_item(1, labels=labels)) == expected

    def test_custom_map_wins(self) -> None:
        scorer = TriageScorer(TriageConfig(template_map={"^infra": "full"}))

        assert scorer.select_template(_item(1, labels=["infra-ci", "bug"])) == "full"

    def test_retries_escalate_to_full(self) -> None:
        scorer = TriageScorer()

        assert scorer.select_template(_item(1, labels=["bug"]), retry_count=2) == "full"
        assert scorer.select_template(_item(1, labels=["hotfix"]), retry_count=5) == "hotfix"

    def test_high_failure_rate_escalates(self, tmp_path: Path) -> None:
        recorder = EventRecorder(tmp_path / "events.jsonl")
        for issue, result in enumerate(["success", "failure", "failure", "success", "failure"]):
            recorder.emit(PipelineCompleted(issue=issue, result=result))

        assert TriageScorer(recorder=recorder).select_template(_item(9, labels=["bug"])) == "full"

    def test_too_few_samples_do_not_escalate(self, tmp_path: Path) -> None:
        recorder = EventRecorder(tmp_path / "events.jsonl")
        recorder.emit(PipelineCompleted(issue=1, result="failure"))

        assert TriageScorer(recorder=recorder).select_template(_item(9)) == "standard"
