"""Outcome Recorder: append-only structured event log.

Each event kind is a small pydantic model with a ``type`` literal; all kinds
share the same envelope (``type``, ``ts``, ``job_id``, ``issue``) and are
serialized uniformly as one JSON object per line. The log is the feedback
source for triage memory, degradation alerting, and the incident watcher.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from drydock.file_io import append_text, locked_path
from drydock.schemas import parse_iso, utc_now_iso

logger = logging.getLogger(__name__)

_DEFAULT_MAX_BYTES = 50 * 1024 * 1024
_DEFAULT_MAX_ARCHIVES = 5


# ---------------------------------------------------------------------------
# Event kinds
# ---------------------------------------------------------------------------

class Event(BaseModel):
    """Common envelope for every recorded event."""

    model_config = ConfigDict(extra="allow")

    type: str
    ts: str = Field(default_factory=utc_now_iso)
    job_id: str = ""
    issue: int | None = None


class DaemonStarted(Event):
    type: Literal["daemon.started"] = "daemon.started"
    pid: int = 0
    max_parallel: int = 0


class DaemonStopped(Event):
    type: Literal["daemon.stopped"] = "daemon.stopped"
    reason: str = ""


class DaemonPoll(Event):
    type: Literal["daemon.poll"] = "daemon.poll"
    candidates: int = 0
    spawned: int = 0
    queued: int = 0


class TriageScored(Event):
    type: Literal["daemon.triage"] = "daemon.triage"
    score: int = 0
    priority: int = 0
    age: int = 0
    complexity: int = 0
    dependency: int = 0
    type_bonus: int = 0
    memory: int = 0


class JobSpawned(Event):
    type: Literal["daemon.spawn"] = "daemon.spawn"
    pid: int = 0
    workspace: str = ""
    template: str = ""
    title: str = ""


class JobReaped(Event):
    type: Literal["daemon.reap"] = "daemon.reap"
    result: Literal["success", "failure"] = "failure"
    exit_code: int = -1
    duration_seconds: float = 0.0
    reason: str = ""


class HealthChecked(Event):
    type: Literal["daemon.health"] = "daemon.health"
    findings: int = 0
    details: list[str] = Field(default_factory=list)


class DegradationAlert(Event):
    type: Literal["daemon.alert"] = "daemon.alert"
    cfr_percent: float = 0.0
    success_percent: float = 0.0
    window: int = 0
    reasons: list[str] = Field(default_factory=list)


class PollBackoff(Event):
    type: Literal["daemon.backoff"] = "daemon.backoff"
    seconds: int = 0
    error: str = ""


class RetryScheduled(Event):
    type: Literal["daemon.retry"] = "daemon.retry"
    failure_class: str = ""
    retry_count: int = 0
    delay_seconds: int = 0


class AutoPaused(Event):
    type: Literal["daemon.auto_pause"] = "daemon.auto_pause"
    minutes: int = 0
    consecutive_failures: int = 0
    reason: str = ""


class PatrolRan(Event):
    type: Literal["daemon.patrol"] = "daemon.patrol"
    actions: list[str] = Field(default_factory=list)


class PipelineStarted(Event):
    type: Literal["pipeline.started"] = "pipeline.started"
    template: str = ""
    stages: list[str] = Field(default_factory=list)


class PipelineCompleted(Event):
    type: Literal["pipeline.completed"] = "pipeline.completed"
    result: Literal["success", "failure"] = "failure"
    status: str = ""
    duration_seconds: float = 0.0
    self_heal_count: int = 0
    backtrack_count: int = 0
    extension_count: int = 0


class StageStarted(Event):
    type: Literal["stage.started"] = "stage.started"
    stage: str = ""


class StageCompleted(Event):
    type: Literal["stage.completed"] = "stage.completed"
    stage: str = ""
    duration_seconds: float = 0.0


class StageFailed(Event):
    type: Literal["stage.failed"] = "stage.failed"
    stage: str = ""
    error: str = ""


class DeployFailed(Event):
    type: Literal["deploy.failed"] = "deploy.failed"
    stage: str = ""
    error: str = ""


class StageSkipped(Event):
    type: Literal["intelligence.stage_skipped"] = "intelligence.stage_skipped"
    stage: str = ""
    reason: str = ""


class Backtracked(Event):
    type: Literal["intelligence.backtrack"] = "intelligence.backtrack"
    from_stage: str = ""
    to_stage: str = ""
    reason: str = ""


class BacktrackBlocked(Event):
    type: Literal["intelligence.backtrack_blocked"] = "intelligence.backtrack_blocked"
    reason: str = ""
    backtrack_count: int = 0


class LoopIteration(Event):
    type: Literal["loop.iteration"] = "loop.iteration"
    stage: str = ""
    iteration: int = 0
    insertions: int = 0
    files_changed: int = 0
    tests: str = ""
    progress: bool = False


class LoopExtension(Event):
    type: Literal["loop.extension"] = "loop.extension"
    extension_count: int = 0
    granted: int = 0
    max_iterations: int = 0
    velocity: float = 0.0


class CompletionRejected(Event):
    type: Literal["loop.completion_rejected"] = "loop.completion_rejected"
    iteration: int = 0
    failures: list[str] = Field(default_factory=list)


class CircuitBreakerTripped(Event):
    type: Literal["loop.circuit_breaker"] = "loop.circuit_breaker"
    reason: str = ""
    consecutive_failures: int = 0


class FatalErrorDetected(Event):
    type: Literal["loop.fatal_error"] = "loop.fatal_error"
    pattern: str = ""
    message: str = ""


class VitalsRecorded(Event):
    type: Literal["vitals.snapshot"] = "vitals.snapshot"
    iteration: int = 0
    score: int = 0
    verdict: str = ""
    momentum: int = 0
    convergence: int = 0
    budget: int = 0
    error_maturity: int = 0


class IncidentCreated(Event):
    type: Literal["incident.created"] = "incident.created"
    incident_id: str = ""
    severity: str = ""
    root_cause: str = ""


class IncidentResolved(Event):
    type: Literal["incident.resolved"] = "incident.resolved"
    incident_id: str = ""
    mttr_seconds: float = 0.0


_EVENT_TYPES: dict[str, type[Event]] = {
    cls.model_fields["type"].default: cls
    for cls in (
        DaemonStarted,
        DaemonStopped,
        DaemonPoll,
        TriageScored,
        JobSpawned,
        JobReaped,
        HealthChecked,
        DegradationAlert,
        PollBackoff,
        RetryScheduled,
        AutoPaused,
        PatrolRan,
        PipelineStarted,
        PipelineCompleted,
        StageStarted,
        StageCompleted,
        StageFailed,
        DeployFailed,
        StageSkipped,
        Backtracked,
        BacktrackBlocked,
        LoopIteration,
        LoopExtension,
        CompletionRejected,
        CircuitBreakerTripped,
        FatalErrorDetected,
        VitalsRecorded,
        IncidentCreated,
        IncidentResolved,
    )
}


def parse_event(data: dict[str, Any]) -> Event:
    """Rebuild a typed event from its serialized form.

    Unknown ``type`` values (for example events written by external tools)
    come back as a plain :class:`Event` with their extra fields preserved.
    """
    kind = str(data.get("type") or "")
    cls = _EVENT_TYPES.get(kind, Event)
    try:
        return cls.model_validate(data)
    except ValidationError:
        return Event.model_validate({**data, "type": kind or "unknown"})


def event_types() -> list[str]:
    """Return every event type with a dedicated model."""
    return sorted(_EVENT_TYPES)


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------

class EventRecorder:
    """Append-only JSONL event sink with size-based archive rotation.

    Parameters
    ----------
    path:
        Location of the active ``events.jsonl`` file.
    max_bytes:
        Size at which the active file is moved into ``archive/``.
    max_archives:
        Number of rotated files to keep.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        max_bytes: int = _DEFAULT_MAX_BYTES,
        max_archives: int = _DEFAULT_MAX_ARCHIVES,
    ) -> None:
        self.path = Path(path)
        self.archive_dir = self.path.parent / "archive"
        self.max_bytes = max(64_000, int(max_bytes))
        self.max_archives = max(1, int(max_archives))
        self._lock = threading.Lock()

    def emit(self, event: Event) -> None:
        """Append *event*; sink failures are logged, never raised."""
        line = json.dumps(event.model_dump(mode="json", exclude_none=True), ensure_ascii=False)
        try:
            with self._lock:
                append_text(self.path, line + "\n")
        except OSError as exc:
            logger.warning("Could not append event %s: %s", event.type, exc)

    def read(
        self,
        *,
        types: Iterable[str] | None = None,
        since: dt.datetime | None = None,
        issue: int | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        """Return events from the active file, oldest first, filtered as requested.

        With *limit*, only the newest *limit* matches are returned.
        """
        if not self.path.is_file():
            return []
        wanted = set(types) if types is not None else None
        out: list[Event] = []
        with locked_path(self.path), self.path.open(encoding="utf-8", errors="replace") as handle:
            for raw_line in handle:
                raw_line = raw_line.strip()
                if not raw_line:
                    continue
                try:
                    data = json.loads(raw_line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(data, dict):
                    continue
                if wanted is not None and data.get("type") not in wanted:
                    continue
                if issue is not None and data.get("issue") != issue:
                    continue
                if since is not None:
                    stamp = parse_iso(data.get("ts"))
                    if stamp is None or stamp < since:
                        continue
                out.append(parse_event(data))
        if limit is not None:
            out = out[-limit:] if limit > 0 else []
        return out

    def recent_completions(self, count: int) -> list[PipelineCompleted]:
        """Return the newest *count* ``pipeline.completed`` events."""
        events = self.read(types=["pipeline.completed"], limit=count)
        return [ev for ev in events if isinstance(ev, PipelineCompleted)]

    def outcomes_for_issue(self, issue: int) -> list[str]:
        """Return ``"success"``/``"failure"`` for every completed run on *issue*, oldest first."""
        events = self.read(types=["pipeline.completed"], issue=issue)
        return [ev.result for ev in events if isinstance(ev, PipelineCompleted)]

    def last_outcome_for_issue(self, issue: int) -> str | None:
        outcomes = self.outcomes_for_issue(issue)
        return outcomes[-1] if outcomes else None

    def size_bytes(self) -> int:
        try:
            return self.path.stat().st_size
        except OSError:
            return 0

    def rotate_if_needed(self) -> bool:
        """Archive the active file once it exceeds ``max_bytes``; return True when rotated."""
        with self._lock, locked_path(self.path):
            if self.size_bytes() < self.max_bytes:
                return False
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            stamp = dt.datetime.now(dt.timezone.utc).strftime("%Y%m%dT%H%M%SZ")
            target = self.archive_dir / f"{self.path.stem}-{stamp}{self.path.suffix}"
            idx = 1
            while target.exists():
                idx += 1
                target = self.archive_dir / f"{self.path.stem}-{stamp}-{idx}{self.path.suffix}"
            self.path.replace(target)
            self.path.touch()
            self._prune_archives()
        logger.info("Rotated event log to %s", target)
        return True

    def _prune_archives(self) -> None:
        files = sorted(
            self.archive_dir.glob(f"{self.path.stem}-*{self.path.suffix}"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for old in files[self.max_archives :]:
            try:
                old.unlink(missing_ok=True)
            except OSError:
                continue


class NullRecorder(EventRecorder):
    """Recorder that drops every event; used when no sink is configured."""

    def __init__(self) -> None:
        super().__init__(Path("events.jsonl"))

    def emit(self, event: Event) -> None:
        logger.debug("Dropping event %s (no recorder configured)", event.type)

    def read(self, **_kwargs: Any) -> list[Event]:
        return []

    def size_bytes(self) -> int:
        return 0

    def rotate_if_needed(self) -> bool:
        return False
