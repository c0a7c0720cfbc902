"""Pydantic models for structured data shared across drydock components."""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return dt.datetime.now(dt.timezone.utc).isoformat()


def parse_iso(value: str | None) -> dt.datetime | None:
    """Parse an ISO-8601 timestamp (``Z`` suffix accepted); ``None`` when invalid."""
    raw = str(value or "").strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def seconds_since(value: str | None, *, now: dt.datetime | None = None) -> float | None:
    """Return elapsed seconds since an ISO timestamp, or ``None`` when unparseable."""
    parsed = parse_iso(value)
    if parsed is None:
        return None
    current = now or dt.datetime.now(dt.timezone.utc)
    return (current - parsed).total_seconds()


# ---------------------------------------------------------------------------
# Work items and jobs
# ---------------------------------------------------------------------------

class WorkItemState(str, Enum):
    """Lifecycle of a work item inside the scheduler."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkItem(BaseModel):
    """A unit of external work (e.g. a tracker issue) eligible for processing."""

    id: int
    title: str = ""
    labels: list[str] = Field(default_factory=list)
    body: str = ""
    created_at: str | None = None
    score: int = 0
    state: WorkItemState = WorkItemState.QUEUED
    url: str = ""
    open: bool = True

    def label_set(self) -> set[str]:
        """Return lower-cased labels for case-insensitive matching."""
        return {label.strip().lower() for label in self.labels if label and label.strip()}


class StageStatus(str, Enum):
    """Status of one pipeline stage."""

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StageResult(BaseModel):
    """Outcome of a single stage execution."""

    stage: str
    status: StageStatus = StageStatus.PENDING
    artifacts: list[str] = Field(default_factory=list)
    missing_artifacts: list[str] = Field(default_factory=list)
    gate: str = "auto"
    duration_seconds: float = 0.0
    iterations: int = 0
    skip_reason: str = ""
    error: str = ""


class Job(BaseModel):
    """One attempt at a work item, as tracked in the scheduler's registry."""

    issue: int
    title: str = ""
    pid: int = 0
    workspace: str = ""
    branch: str = ""
    template: str = "standard"
    log_path: str = ""
    started_at: str = Field(default_factory=utc_now_iso)
    current_stage: str = ""
    stage_results: list[StageResult] = Field(default_factory=list)
    extension_count: int = 0
    backtrack_count: int = 0
    retry_count: int = 0

    @property
    def job_id(self) -> str:
        return f"issue-{self.issue}"


# ---------------------------------------------------------------------------
# Vitals
# ---------------------------------------------------------------------------

class VitalsSnapshot(BaseModel):
    """Point-in-time progress sample recorded once per iteration."""

    iteration: int = 0
    stage: str = ""
    diff_lines: int = 0
    files_changed: int = 0
    last_error: str = ""
    timestamp: str = Field(default_factory=utc_now_iso)


class Verdict(str, Enum):
    """Discrete health decision derived from the composite score."""

    CONTINUE = "continue"
    WARN = "warn"
    INTERVENE = "intervene"
    ABORT = "abort"


class BudgetStatus(str, Enum):
    """Budget-trajectory classification."""

    OK = "ok"
    WARN = "warn"
    STOP = "stop"


class HealthScore(BaseModel):
    """Composite 0-100 health score with its per-signal breakdown."""

    score: int = 0
    verdict: Verdict = Verdict.CONTINUE
    momentum: int = 0
    convergence: int = 0
    budget: int = 100
    error_maturity: int = 0
    action: str = ""
    prior_score: int | None = None


# ---------------------------------------------------------------------------
# Incidents
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    """Incident severity, P0 being the most urgent."""

    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"


class IncidentStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class Incident(BaseModel):
    """A classified burst of failure events."""

    id: str
    created_at: str = Field(default_factory=utc_now_iso)
    severity: Severity = Severity.P3
    status: IncidentStatus = IncidentStatus.OPEN
    root_cause: str = "unknown"
    failure_events: list[dict[str, Any]] = Field(default_factory=list)
    timeline: list[dict[str, Any]] = Field(default_factory=list)
    remediation: dict[str, Any] | None = None
    resolved_at: str | None = None
    mttr_seconds: float | None = None
    fingerprint: str = ""


# ---------------------------------------------------------------------------
# Agent run results
# ---------------------------------------------------------------------------

class EventKind(str, Enum):
    """Normalized kinds of streaming events emitted by an agent CLI."""

    AGENT_MESSAGE = "agent_message"
    FILE_CHANGE = "file_change"
    COMMAND_EXEC = "command_exec"
    TURN_COMPLETED = "turn.completed"
    ERROR = "error"
    UNKNOWN = "unknown"


class AgentEvent(BaseModel):
    """A single parsed JSONL event from an agent run."""

    kind: EventKind = EventKind.UNKNOWN
    raw: dict[str, Any] = Field(default_factory=dict)
    text: str | None = None


class UsageInfo(BaseModel):
    """Token and cost usage reported by the agent."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    model: str | None = None


class RunResult(BaseModel):
    """Aggregated result of one agent invocation."""

    success: bool = False
    exit_code: int = -1
    final_message: str = ""
    events: list[AgentEvent] = Field(default_factory=list)
    file_changes: list[dict[str, Any]] = Field(default_factory=list)
    command_executions: list[dict[str, Any]] = Field(default_factory=list)
    usage: UsageInfo = Field(default_factory=UsageInfo)
    errors: list[str] = Field(default_factory=list)
    raw_output: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0
    timed_out: bool = False
    cancelled: bool = False

    def output_text(self) -> str:
        """Return every piece of text the agent produced, joined for pattern scans."""
        parts = [ev.text for ev in self.events if ev.text]
        if self.final_message and self.final_message not in parts:
            parts.append(self.final_message)
        parts.extend(self.errors)
        if not parts:
            parts.extend(self.raw_output)
        return "\n".join(parts)


# ---------------------------------------------------------------------------
# Evaluation results
# ---------------------------------------------------------------------------

class TestOutcome(str, Enum):
    """Outcome of test execution during repository evaluation."""
    __test__ = False  # Prevent pytest from collecting this enum as a test class.

    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED = "skipped"


class EvalResult(BaseModel):
    """Result of evaluating a workspace after an agent iteration."""

    test_outcome: TestOutcome = TestOutcome.ERROR
    test_summary: str = ""
    test_exit_code: int = -1
    diff_stat: str = ""
    status_porcelain: str = ""
    net_lines_changed: int = 0
    insertions: int = 0
    files_changed: int = 0
    changed_files: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def tests_ok(self) -> bool:
        return self.test_outcome in {TestOutcome.PASSED, TestOutcome.SKIPPED}
