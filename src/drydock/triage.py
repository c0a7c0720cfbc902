"""Triage scoring: rank candidate work items and pick a pipeline template."""

from __future__ import annotations

import datetime as dt
import logging
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import asdict, dataclass

from drydock.config import TriageConfig
from drydock.events import EventRecorder, TriageScored
from drydock.schemas import WorkItem, parse_iso

logger = logging.getLogger(__name__)

PRIORITY_SCORES: dict[str, int] = {
    "urgent": 30,
    "p0": 30,
    "high": 20,
    "p1": 20,
    "normal": 10,
    "p2": 10,
    "low": 5,
    "p3": 5,
}

FILE_REFERENCE_RE = re.compile(r"[a-zA-Z0-9_/-]+\.(?:ts|js|py|go|rs|sh|json|yaml|yml|md)\b")
DEPENDENCY_RE = re.compile(r"(?:blocked by|depends on)\s+#(\d+)", re.IGNORECASE)
ISSUE_REFERENCE_RE = re.compile(r"#(\d+)")

HOTFIX_LABELS = frozenset({"urgent", "p0", "hotfix", "incident"})
SECURITY_LABELS = frozenset({"security"})
BUG_LABELS = frozenset({"bug"})
FEATURE_LABELS = frozenset({"feature", "enhancement"})

TEMPLATES = ("fast", "standard", "full", "hotfix")

_DAY = 86400


@dataclass(frozen=True, slots=True)
class TriageBreakdown:
    """Per-signal contributions to a triage score."""

    priority: int = 0
    age: int = 0
    complexity: int = 0
    dependency: int = 0
    type_bonus: int = 0
    memory: int = 0

    @property
    def total(self) -> int:
        raw = self.priority + self.age + self.complexity + self.dependency + self.type_bonus + self.memory
        return max(0, min(100, raw))

    def to_dict(self) -> dict[str, int]:
        data = asdict(self)
        data["total"] = self.total
        return data


def file_references(text: str) -> list[str]:
    """Return distinct file-looking references in *text*."""
    seen: dict[str, None] = {}
    for match in FILE_REFERENCE_RE.finditer(text or ""):
        seen.setdefault(match.group(0), None)
    return list(seen)


def blocking_dependencies(text: str) -> list[int]:
    """Return issue numbers named by ``blocked by #N`` / ``depends on #N``."""
    return sorted({int(num) for num in DEPENDENCY_RE.findall(text or "")})


def estimate_complexity(item: WorkItem) -> int:
    """Coarse 1-10 complexity estimate from body length and referenced files."""
    body = item.body or ""
    refs = len(file_references(body))
    if len(body) < 200 and refs < 3:
        estimate = 2
    elif len(body) < 1000:
        estimate = 4
    elif len(body) < 3000:
        estimate = 6
    else:
        estimate = 8
    if refs >= 5:
        estimate += 2
    return max(1, min(10, estimate))


def _priority_score(labels: set[str]) -> int:
    return max((PRIORITY_SCORES[label] for label in labels if label in PRIORITY_SCORES), default=0)


def _age_score(created_at: str | None, now: dt.datetime) -> int:
    created = parse_iso(created_at)
    if created is None:
        return 0
    age = (now - created).total_seconds()
    if age > 7 * _DAY:
        return 15
    if age > 3 * _DAY:
        return 10
    if age > _DAY:
        return 5
    return 0


def _complexity_score(body: str) -> int:
    refs = len(file_references(body))
    if len(body) < 200 and refs < 3:
        return 20
    if len(body) < 1000:
        return 10
    if refs < 5:
        return 5
    return 0


def _type_score(labels: set[str]) -> int:
    if labels & (SECURITY_LABELS | BUG_LABELS):
        return 10
    if labels & FEATURE_LABELS:
        return 5
    return 0


class TriageScorer:
    """Score work items from labels, age, size, dependencies, type and history.

    Parameters
    ----------
    config:
        Template-escalation settings.
    recorder:
        Event sink; each score emits a ``daemon.triage`` breakdown and past
        ``pipeline.completed`` events feed the memory bonus.
    is_open:
        Callback answering whether a referenced item is still unresolved.
        Without one, every referenced dependency counts as open.
    """

    def __init__(
        self,
        config: TriageConfig | None = None,
        *,
        recorder: EventRecorder | None = None,
        is_open: Callable[[int], bool] | None = None,
    ) -> None:
        self.config = config or TriageConfig()
        self.recorder = recorder
        self.is_open = is_open

    def _dependency_score(self, item: WorkItem, others: Sequence[WorkItem]) -> int:
        for dep in blocking_dependencies(item.body):
            if dep == item.id:
                continue
            if self._safe_is_open(dep):
                return -15
        for other in others:
            if other.id != item.id and item.id in blocking_dependencies(other.body):
                return 15
        return 0

    def _safe_is_open(self, issue: int) -> bool:
        if self.is_open is None:
            return True
        try:
            return bool(self.is_open(issue))
        except Exception as exc:
            logger.warning("Could not resolve dependency #%s; treating as open: %s", issue, exc)
            return True

    def _memory_score(self, item: WorkItem) -> int:
        if self.recorder is None:
            return 0
        outcome = self.recorder.last_outcome_for_issue(item.id)
        if outcome == "success":
            return 10
        if outcome == "failure":
            return -5
        return 0

    def breakdown(
        self,
        item: WorkItem,
        *,
        others: Sequence[WorkItem] = (),
        now: dt.datetime | None = None,
    ) -> TriageBreakdown:
        """Compute the per-signal breakdown without side effects."""
        labels = item.label_set()
        current = now or dt.datetime.now(dt.timezone.utc)
        return TriageBreakdown(
            priority=_priority_score(labels),
            age=_age_score(item.created_at, current),
            complexity=_complexity_score(item.body or ""),
            dependency=self._dependency_score(item, others),
            type_bonus=_type_score(labels),
            memory=self._memory_score(item),
        )

    def score(
        self,
        item: WorkItem,
        *,
        others: Sequence[WorkItem] = (),
        now: dt.datetime | None = None,
    ) -> int:
        """Score *item* in [0, 100], store it on the item, and emit the breakdown."""
        result = self.breakdown(item, others=others, now=now)
        item.score = result.total
        if self.recorder is not None:
            self.recorder.emit(
                TriageScored(
                    issue=item.id,
                    score=result.total,
                    priority=result.priority,
                    age=result.age,
                    complexity=result.complexity,
                    dependency=result.dependency,
                    type_bonus=result.type_bonus,
                    memory=result.memory,
                )
            )
        logger.debug("Triage #%s -> %s %s", item.id, result.total, result.to_dict())
        return result.total

    def rank(self, items: Iterable[WorkItem], *, now: dt.datetime | None = None) -> list[WorkItem]:
        """Re-score every item and return them sorted by descending score."""
        pool = list(items)
        for item in pool:
            self.score(item, others=pool, now=now)
        return sorted(pool, key=lambda it: (-it.score, it.id))

    # -- template selection ---------------------------------------------

    def _recent_failure_rate(self) -> float | None:
        if self.recorder is None:
            return None
        completions = self.recorder.recent_completions(self.config.escalation_window)
        if len(completions) < self.config.escalation_min_samples:
            return None
        failures = sum(1 for ev in completions if ev.result == "failure")
        return failures * 100.0 / len(completions)

    def select_template(self, item: WorkItem, *, retry_count: int = 0) -> str:
        """Map an item's labels (and recent outcomes) to a pipeline template."""
        labels = item.label_set()
        for pattern, template in self.config.template_map.items():
            if any(re.search(pattern, label, re.IGNORECASE) for label in labels):
                return template
        if labels & HOTFIX_LABELS:
            template = "hotfix"
        elif labels & SECURITY_LABELS:
            template = "full"
        elif labels & BUG_LABELS:
            template = "fast"
        else:
            template = "standard"

        if template != "hotfix":
            if retry_count >= self.config.retry_escalation_after:
                logger.info("Escalating #%s to full template after %s retries", item.id, retry_count)
                return "full"
            cfr = self._recent_failure_rate()
            if cfr is not None and cfr > self.config.escalation_cfr_percent:
                logger.info(
                    "Change failure rate %.0f%% over recent runs; escalating #%s to full template",
                    cfr,
                    item.id,
                )
                return "full"
        return template
