"""Incident watcher: turn bursts of failure events into classified incidents.

The watcher reads the Outcome Recorder, groups unseen failure events into an
:class:`~drydock.schemas.Incident`, classifies severity and root cause, and
for P0/P1 incidents optionally opens a hotfix work item and runs a rollback
command. Incidents are stored one JSON file each under
``<state_dir>/incidents``.
"""

from __future__ import annotations

import datetime as dt
import hashlib
import logging
import shlex
import subprocess
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from drydock.config import FeedConfig, IncidentConfig
from drydock.errors import DrydockError
from drydock.events import EventRecorder, IncidentCreated, IncidentResolved
from drydock.feed import WorkFeed
from drydock.file_io import atomic_write_text, read_json
from drydock.notify import Notifier
from drydock.schemas import Incident, IncidentStatus, Severity, parse_iso, utc_now_iso

logger = logging.getLogger(__name__)

_FAILURE_MARKERS = ("failed", "error", "timeout")
_P0_TYPES = frozenset({"deploy.failed", "pipeline.critical_error"})
_REGRESSION_TYPES = frozenset({"test.regression", "stage.failed"})
_P2_TYPES = frozenset({"stage.timeout", "health_check.failed"})
_SEVERITY_ORDER = {Severity.P0: 0, Severity.P1: 1, Severity.P2: 2, Severity.P3: 3}


def is_failure_event(event_type: str) -> bool:
    return any(marker in (event_type or "") for marker in _FAILURE_MARKERS)


def classify_severity(event_type: str, impact: int, *, impact_threshold: int = 5) -> Severity:
    """Map one failure type plus its impact (affected jobs) to a severity."""
    if event_type in _P0_TYPES:
        return Severity.P0
    if event_type in _REGRESSION_TYPES:
        return Severity.P0 if impact > impact_threshold else Severity.P1
    if event_type in _P2_TYPES:
        return Severity.P2
    return Severity.P3


def classify_root_cause(text: str, patterns: dict[str, list[str]]) -> str:
    """Return the first category whose keywords appear in *text*, else ``unknown``."""
    lowered = (text or "").lower()
    for category, keywords in patterns.items():
        if any(keyword.lower() in lowered for keyword in keywords):
            return category
    return "unknown"


def event_key(event: dict[str, Any]) -> str:
    return f"{event.get('type', '')}|{event.get('ts', '')}|{event.get('job_id', '')}|{event.get('issue', '')}"


def failure_fingerprint(events: list[dict[str, Any]]) -> str:
    digest = hashlib.sha256("\n".join(sorted(event_key(ev) for ev in events)).encode("utf-8"))
    return digest.hexdigest()[:16]


def impact_of(events: list[dict[str, Any]]) -> int:
    """Number of distinct jobs touched by a burst (event count when none are tagged)."""
    affected = {ev.get("issue") or ev.get("job_id") for ev in events if ev.get("issue") or ev.get("job_id")}
    return len(affected) if affected else len(events)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class IncidentStore:
    """One atomically written JSON document per incident."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def path_for(self, incident_id: str) -> Path:
        return self.directory / f"{incident_id}.json"

    def new_id(self, now: float | None = None) -> str:
        base = f"inc-{int(now if now is not None else time.time())}"
        candidate, suffix = base, 1
        while self.path_for(candidate).exists():
            suffix += 1
            candidate = f"{base}-{suffix}"
        return candidate

    def save(self, incident: Incident) -> None:
        atomic_write_text(self.path_for(incident.id), incident.model_dump_json(indent=2))

    def load(self, incident_id: str) -> Incident | None:
        data = read_json(self.path_for(incident_id), default=None)
        if not isinstance(data, dict):
            return None
        try:
            return Incident.model_validate(data)
        except ValidationError as exc:
            logger.warning("Skipping invalid incident record %s: %s", incident_id, exc)
            return None

    def list(self) -> list[Incident]:
        """Return every stored incident, newest first."""
        if not self.directory.is_dir():
            return []
        incidents = [
            incident
            for path in self.directory.glob("inc-*.json")
            if (incident := self.load(path.stem)) is not None
        ]
        return sorted(incidents, key=lambda inc: inc.created_at, reverse=True)


# ---------------------------------------------------------------------------
# Watcher
# ---------------------------------------------------------------------------


class IncidentWatcher:
    """Classify failure bursts and drive optional auto-remediation.

    Parameters
    ----------
    config:
        Window, severity threshold, root-cause keywords and remediation flags.
    recorder:
        Event source (and sink for ``incident.*`` events).
    store:
        Incident persistence.
    feed:
        Work feed used to open hotfix items. Hotfix creation is skipped
        without one.
    feed_config:
        Labels applied to hotfix items.
    enqueue:
        Callback ``(issue, title)`` that queues a hotfix item with the
        scheduler.
    notifier:
        Optional webhook notifier for new incidents.
    """

    def __init__(
        self,
        config: IncidentConfig,
        *,
        recorder: EventRecorder,
        store: IncidentStore,
        feed: WorkFeed | None = None,
        feed_config: FeedConfig | None = None,
        enqueue: Callable[[int, str], None] | None = None,
        notifier: Notifier | None = None,
        cwd: str | Path | None = None,
    ) -> None:
        self.config = config
        self.recorder = recorder
        self.store = store
        self.feed = feed
        self.feed_config = feed_config or FeedConfig()
        self.enqueue = enqueue
        self.notifier = notifier
        self.cwd = Path(cwd) if cwd else None
        self._seen: set[str] = {
            event_key(ev) for incident in store.list() for ev in incident.failure_events
        }

    def recent_failures(self, *, now: dt.datetime | None = None) -> list[dict[str, Any]]:
        """Return failure events from the last ``window_seconds``, oldest first."""
        current = now or dt.datetime.now(dt.timezone.utc)
        since = current - dt.timedelta(seconds=self.config.window_seconds)
        return [
            ev.model_dump(mode="json", exclude_none=True)
            for ev in self.recorder.read(since=since)
            if is_failure_event(ev.type)
        ]

    def check(self, *, now: dt.datetime | None = None) -> Incident | None:
        """Create an incident from failures not covered by an earlier one."""
        failures = self.recent_failures(now=now)
        self._seen.intersection_update(event_key(ev) for ev in failures)
        fresh = [ev for ev in failures if event_key(ev) not in self._seen]
        if not fresh:
            return None

        impact = impact_of(fresh)
        severity = min(
            (
                classify_severity(str(ev.get("type", "")), impact, impact_threshold=self.config.impact_threshold)
                for ev in fresh
            ),
            key=_SEVERITY_ORDER.__getitem__,
        )
        evidence = "\n".join(
            " ".join(str(ev.get(key, "")) for key in ("type", "error", "reason", "message", "stage"))
            for ev in fresh
        )
        root_cause = classify_root_cause(evidence, self.config.root_cause_patterns)
        created = utc_now_iso()
        incident = Incident(
            id=self.store.new_id(),
            created_at=created,
            severity=severity,
            root_cause=root_cause,
            failure_events=fresh,
            timeline=[{"ts": ev.get("ts", ""), "event": ev.get("type", ""), "issue": ev.get("issue")} for ev in fresh]
            + [{"ts": created, "event": "incident.created", "severity": severity.value}],
            fingerprint=failure_fingerprint(fresh),
        )
        self.store.save(incident)
        self._seen.update(event_key(ev) for ev in fresh)
        logger.warning(
            "Incident %s created (severity %s, root cause %s, %d failure(s), impact %d)",
            incident.id,
            severity.value,
            root_cause,
            len(fresh),
            impact,
        )
        self.recorder.emit(
            IncidentCreated(incident_id=incident.id, severity=severity.value, root_cause=root_cause)
        )
        if self.notifier is not None:
            self.notifier.incident(incident.id, severity.value, root_cause)
        if severity in {Severity.P0, Severity.P1} and self.config.auto_response_enabled:
            self.remediate(incident)
        return incident

    # -- remediation -----------------------------------------------------

    def _hotfix_wanted(self, severity: Severity) -> bool:
        if severity == Severity.P0:
            return self.config.p0_auto_hotfix
        if severity == Severity.P1:
            return self.config.p1_auto_hotfix
        return False

    def create_hotfix(self, incident: Incident) -> int | None:
        """Open a hotfix item for *incident* and queue it; return its id."""
        if self.feed is None:
            logger.warning("No work feed configured; skipping hotfix for %s", incident.id)
            return None
        title = f"[HOTFIX] {incident.severity.value}: {incident.root_cause}"
        body = "\n".join(
            [
                f"**Incident ID:** {incident.id}",
                f"**Severity:** {incident.severity.value}",
                f"**Root Cause:** {incident.root_cause}",
                "",
                "## Timeline",
                f"See `drydock incident report {incident.id}`.",
                "",
                "This issue was opened automatically by the drydock incident watcher.",
            ]
        )
        labels = [self.feed_config.hotfix_label, self.feed_config.watch_label]
        try:
            issue = self.feed.create_item(title, body, labels)
        except DrydockError as exc:
            logger.warning("Could not open hotfix item for %s: %s", incident.id, exc)
            return None
        if self.enqueue is not None:
            self.enqueue(issue, title)
        return issue

    def rollback(self, incident: Incident) -> bool:
        """Run the configured rollback command; return True when it exits 0."""
        argv = shlex.split(self.config.rollback_cmd or "")
        if not argv:
            logger.warning("Auto-rollback enabled but no rollback_cmd configured")
            return False
        logger.warning("Running rollback for %s: %s", incident.id, " ".join(argv))
        try:
            proc = subprocess.run(argv, cwd=self.cwd, capture_output=True, text=True, timeout=600)
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.error("Rollback for %s failed to run: %s", incident.id, exc)
            return False
        if proc.returncode != 0:
            logger.error("Rollback for %s exited %s: %s", incident.id, proc.returncode, proc.stderr.strip()[:500])
        return proc.returncode == 0

    def remediate(self, incident: Incident) -> Incident:
        remediation: dict[str, Any] = {}
        if self.config.auto_rollback_enabled:
            remediation["rollback_ok"] = self.rollback(incident)
            incident.timeline.append({"ts": utc_now_iso(), "event": "rollback", "ok": remediation["rollback_ok"]})
        if self._hotfix_wanted(incident.severity):
            issue = self.create_hotfix(incident)
            if issue is not None:
                remediation["hotfix_issue"] = issue
                incident.timeline.append({"ts": utc_now_iso(), "event": "hotfix_created", "issue": issue})
        if remediation:
            incident.remediation = remediation
            self.store.save(incident)
        return incident

    # -- lifecycle -------------------------------------------------------

    def watch(
        self,
        *,
        interval: int | None = None,
        stop_event: threading.Event | None = None,
        max_cycles: int | None = None,
    ) -> int:
        """Check for incidents every *interval* seconds; return how many were created."""
        period = max(1, int(interval or self.config.watch_interval))
        stop = stop_event or threading.Event()
        created = cycles = 0
        logger.info("Watching for incidents every %ss", period)
        while not stop.is_set():
            if self.check() is not None:
                created += 1
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            stop.wait(period)
        return created

    def resolve(self, incident_id: str, note: str = "") -> Incident:
        incident = self.store.load(incident_id)
        if incident is None:
            raise DrydockError(f"Incident not found: {incident_id}")
        if incident.status == IncidentStatus.RESOLVED:
            return incident
        resolved_at = dt.datetime.now(dt.timezone.utc)
        started = parse_iso(incident.created_at) or resolved_at
        incident.status = IncidentStatus.RESOLVED
        incident.resolved_at = resolved_at.isoformat()
        incident.mttr_seconds = max(0.0, (resolved_at - started).total_seconds())
        incident.timeline.append({"ts": incident.resolved_at, "event": "resolved", "note": note})
        if note:
            incident.remediation = {**(incident.remediation or {}), "note": note}
        self.store.save(incident)
        self.recorder.emit(IncidentResolved(incident_id=incident.id, mttr_seconds=incident.mttr_seconds))
        logger.info("Incident %s resolved (MTTR %.0fs)", incident.id, incident.mttr_seconds)
        return incident

    def report(self, incident_id: str) -> Path:
        """Write ``<id>-postmortem.md`` next to the incident record and return its path."""
        incident = self.store.load(incident_id)
        if incident is None:
            raise DrydockError(f"Incident not found: {incident_id}")
        path = self.store.directory / f"{incident.id}-postmortem.md"
        atomic_write_text(path, render_report(incident))
        return path

    def stats(self) -> dict[str, Any]:
        incidents = self.store.list()
        by_severity = {sev.value: 0 for sev in Severity}
        mttrs: list[float] = []
        for incident in incidents:
            by_severity[incident.severity.value] += 1
            if incident.status == IncidentStatus.RESOLVED and incident.mttr_seconds is not None:
                mttrs.append(incident.mttr_seconds)
        return {
            "total": len(incidents),
            "open": sum(1 for inc in incidents if inc.status == IncidentStatus.OPEN),
            "resolved": len(mttrs),
            "by_severity": by_severity,
            "mttr_seconds": round(sum(mttrs) / len(mttrs), 1) if mttrs else 0.0,
        }


def render_report(incident: Incident) -> str:
    """Render the post-incident report as markdown."""
    lines = [
        "# Post-Incident Report",
        f"**Incident ID:** {incident.id}",
        f"**Generated:** {utc_now_iso()}",
        "",
        "## Summary",
        f"Root cause: {incident.root_cause} ({len(incident.failure_events)} failure event(s))",
        "",
        "## Timeline",
    ]
    for entry in incident.timeline:
        detail = ", ".join(f"{k}={v}" for k, v in entry.items() if k not in {"ts", "event"} and v is not None)
        lines.append(f"- {entry.get('ts', '')}: {entry.get('event', '')}" + (f" ({detail})" if detail else ""))
    lines += [
        "",
        "## Impact",
        f"- Severity: {incident.severity.value}",
        f"- Status: {incident.status.value}",
        f"- Affected jobs: {impact_of(incident.failure_events)}",
        "",
        "## Resolution",
    ]
    if incident.remediation:
        lines += [f"- {key}: {value}" for key, value in incident.remediation.items()]
    else:
        lines.append("Pending")
    if incident.mttr_seconds is not None:
        lines.append(f"- MTTR: {incident.mttr_seconds:.0f}s")
    lines += [
        "",
        "## Prevention",
        "1. Monitor for similar patterns",
        "2. Add alerting thresholds",
        "3. Improve automated detection",
        "",
    ]
    return "\n".join(lines)
