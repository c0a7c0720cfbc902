"""Review-findings classification and routing.

Review output is read line by line. A line prefixed with a bracketed category
(``[security] ...``) is taken at its word; otherwise keyword sets decide.
The routed category picks how the pipeline reacts: architecture problems send
the run back to design, everything else is fed into the next build.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from drydock.pipeline.stages import Stage

logger = logging.getLogger(__name__)


class FindingCategory(str, Enum):
    ARCHITECTURE = "architecture"
    SECURITY = "security"
    CORRECTNESS = "correctness"
    PERFORMANCE = "performance"
    TESTING = "testing"
    STYLE = "style"


# Order in which a line is matched against keywords.
_MATCH_ORDER: tuple[FindingCategory, ...] = (
    FindingCategory.SECURITY,
    FindingCategory.ARCHITECTURE,
    FindingCategory.CORRECTNESS,
    FindingCategory.PERFORMANCE,
    FindingCategory.TESTING,
    FindingCategory.STYLE,
)

_KEYWORDS: dict[FindingCategory, re.Pattern[str]] = {
    FindingCategory.ARCHITECTURE: re.compile(
        r"architect|layer.*violation|circular.*depend|coupling|abstraction|design.*flaw|separation.*concern",
        re.IGNORECASE,
    ),
    FindingCategory.SECURITY: re.compile(
        r"security|vulnerab|injection|\bxss\b|\bcsrf\b|auth.*bypass|privilege|sanitiz|escap",
        re.IGNORECASE,
    ),
    FindingCategory.CORRECTNESS: re.compile(
        r"\bbug\b|\bcritical\b|race.*condition|null.*pointer|off.*by.*one|edge.*case|undefined.*behav"
        r"|incorrect|wrong result|crash",
        re.IGNORECASE,
    ),
    FindingCategory.PERFORMANCE: re.compile(
        r"latency|\bslow\b|memory leak|O\(n|N\+1|cache miss|performance|bottleneck|throughput",
        re.IGNORECASE,
    ),
    FindingCategory.TESTING: re.compile(
        r"untested|missing test|no coverage|flaky|test gap|test missing|coverage gap",
        re.IGNORECASE,
    ),
    FindingCategory.STYLE: re.compile(
        r"naming|convention|format|style|readabil|inconsisten|whitespace|comment",
        re.IGNORECASE,
    ),
}

_PREFIX_RE = re.compile(
    r"^\s*(?:[-*]\s*)?\[(" + "|".join(c.value for c in FindingCategory) + r")\]\s*(.*)$",
    re.IGNORECASE,
)
_NO_FINDINGS_RE = re.compile(r"^\s*no findings\.?\s*$", re.IGNORECASE)


@dataclass
class ClassifiedFindings:
    """Per-category findings plus the routing decision derived from them."""

    lines: dict[FindingCategory, list[str]] = field(
        default_factory=lambda: {category: [] for category in FindingCategory}
    )
    route: FindingCategory = FindingCategory.CORRECTNESS
    needs_backtrack: bool = False

    def count(self, category: FindingCategory) -> int:
        return len(self.lines.get(category, []))

    @property
    def total_blocking(self) -> int:
        """Findings that should block the run (style never does)."""
        return sum(self.count(c) for c in FindingCategory if c != FindingCategory.STYLE)

    @property
    def empty(self) -> bool:
        return not any(self.lines.values())

    def priority_summary(self) -> str:
        """``security:2,architecture:1`` style summary, highest priority first."""
        return ",".join(f"{c.value}:{self.count(c)}" for c in _MATCH_ORDER if self.count(c))

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {c.value: self.count(c) for c in FindingCategory}
        data.update(
            total_blocking=self.total_blocking,
            route=self.route.value,
            needs_backtrack=self.needs_backtrack,
            priority_findings=self.priority_summary(),
        )
        return data


def classify_line(line: str) -> tuple[FindingCategory | None, str]:
    """Return ``(category, text)`` for one review line; category is ``None`` when unmatched."""
    text = line.strip()
    if not text or _NO_FINDINGS_RE.match(text):
        return None, text
    match = _PREFIX_RE.match(text)
    if match:
        return FindingCategory(match.group(1).lower()), match.group(2).strip()
    if text.startswith("#"):
        return None, text
    for category in _MATCH_ORDER:
        if _KEYWORDS[category].search(text):
            return category, text
    return None, text


def _route(findings: ClassifiedFindings) -> None:
    """Pick the category the pipeline reacts to.

    Security outranks architecture; only an architecture route asks for a
    backtrack. Performance and testing take the route only when nothing more
    serious was found.
    """
    count = findings.count
    route = FindingCategory.CORRECTNESS
    needs_backtrack = False
    if count(FindingCategory.SECURITY):
        route = FindingCategory.SECURITY
    elif count(FindingCategory.ARCHITECTURE):
        route = FindingCategory.ARCHITECTURE
        needs_backtrack = True
    elif not count(FindingCategory.CORRECTNESS):
        if count(FindingCategory.PERFORMANCE):
            route = FindingCategory.PERFORMANCE
        elif count(FindingCategory.TESTING):
            route = FindingCategory.TESTING
    findings.route = route
    findings.needs_backtrack = needs_backtrack


def classify_findings(text: str | Iterable[str]) -> ClassifiedFindings:
    """Classify review output (a string or an iterable of lines)."""
    lines = text.splitlines() if isinstance(text, str) else list(text)
    findings = ClassifiedFindings()
    for line in lines:
        category, body = classify_line(line)
        if category is not None:
            findings.lines[category].append(body)
    _route(findings)
    if not findings.empty:
        logger.info("Review findings: %s (route=%s)", findings.priority_summary(), findings.route.value)
    return findings


def backtrack_target(enabled_stages: Iterable[Stage | str]) -> Stage | None:
    """Stage to return to on architecture findings: design, else plan, else none."""
    enabled = {Stage(s) for s in enabled_stages}
    if Stage.DESIGN in enabled:
        return Stage.DESIGN
    if Stage.PLAN in enabled:
        return Stage.PLAN
    return None


def findings_context(findings: ClassifiedFindings, *, categories: Iterable[FindingCategory] | None = None) -> str:
    """Render findings as a bullet list for the next prompt."""
    wanted = list(categories) if categories is not None else list(_MATCH_ORDER)
    out: list[str] = []
    for category in wanted:
        for line in findings.lines.get(category, []):
            out.append(f"- [{category.value}] {line}")
    return "\n".join(out)
