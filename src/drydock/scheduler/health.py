"""Health sweep, degradation analysis and poll backoff."""

from __future__ import annotations

import datetime as dt
import logging
import shutil
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from drydock.config import SchedulerConfig
from drydock.events import PipelineCompleted
from drydock.schemas import Job, seconds_since

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


# ---------------------------------------------------------------------------
# Poll backoff
# ---------------------------------------------------------------------------


class PollBackoff:
    """Exponential backoff for feed polling errors: 30s, 60s, 120s, ... capped.

    ``delay`` is 0 while polls succeed.
    """

    def __init__(self, base: int = 30, cap: int = 300) -> None:
        self.base = base
        self.cap = cap
        self.delay = 0
        self.failures = 0

    def failure(self) -> int:
        """Record a failed poll and return the seconds to wait before the next one."""
        self.failures += 1
        self.delay = self.base if self.delay == 0 else min(self.cap, self.delay * 2)
        return self.delay

    def success(self) -> None:
        if self.delay:
            logger.info("Feed polling recovered after %d failure(s)", self.failures)
        self.delay = 0
        self.failures = 0


# ---------------------------------------------------------------------------
# Degradation
# ---------------------------------------------------------------------------


@dataclass
class DegradationReport:
    window: int
    samples: int
    cfr_percent: float = 0.0
    success_percent: float = 0.0
    alerts: list[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.alerts)


def analyze_degradation(
    completions: Sequence[PipelineCompleted],
    *,
    window: int = 5,
    cfr_threshold: float = 30.0,
    success_threshold: float = 50.0,
) -> DegradationReport:
    """Compare the last *window* completions against the CFR and success thresholds.

    Fewer than *window* samples never alert.
    """
    recent = list(completions)[-window:] if window > 0 else []
    report = DegradationReport(window=window, samples=len(recent))
    if not recent or len(recent) < window:
        return report
    failures = sum(1 for ev in recent if ev.result == "failure")
    report.cfr_percent = round(failures * 100.0 / len(recent), 1)
    report.success_percent = round(100.0 - report.cfr_percent, 1)
    if report.cfr_percent > cfr_threshold:
        report.alerts.append(f"CFR {report.cfr_percent:g}% exceeds threshold {cfr_threshold:g}%")
    if report.success_percent < success_threshold:
        report.alerts.append(f"Success rate {report.success_percent:g}% below threshold {success_threshold:g}%")
    for alert in report.alerts:
        logger.warning("DEGRADATION: %s", alert)
    return report


# ---------------------------------------------------------------------------
# Health sweep
# ---------------------------------------------------------------------------


def free_disk_bytes(path: Path) -> int | None:
    """Free bytes on the filesystem holding *path* (nearest existing parent)."""
    probe = path
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    try:
        return shutil.disk_usage(probe).free
    except OSError as exc:
        logger.debug("Could not read disk usage for %s: %s", probe, exc)
        return None


@dataclass
class HealthFindings:
    stale_jobs: list[int] = field(default_factory=list)
    over_limit_jobs: list[int] = field(default_factory=list)
    disk_free_bytes: int | None = None
    disk_low: bool = False
    disk_critical: bool = False
    events_bytes: int = 0
    events_large: bool = False
    details: list[str] = field(default_factory=list)

    @property
    def jobs_to_kill(self) -> list[int]:
        return sorted(set(self.stale_jobs) | set(self.over_limit_jobs))

    @property
    def count(self) -> int:
        return len(self.details)


def _idle_seconds(job: Job, now: dt.datetime) -> float:
    """Seconds since the job last wrote to its log, falling back to its start time."""
    elapsed = seconds_since(job.started_at, now=now) or 0.0
    if job.log_path:
        try:
            mtime = Path(job.log_path).stat().st_mtime
        except OSError:
            return elapsed
        return min(elapsed, max(0.0, now.timestamp() - mtime))
    return elapsed


def sweep(
    jobs: Sequence[Job],
    config: SchedulerConfig,
    *,
    state_dir: Path,
    events_bytes: int = 0,
    now: dt.datetime | None = None,
) -> HealthFindings:
    """Inspect running jobs, disk space and the event log; nothing is changed here.

    A job is stale when it has produced no log output for ``stale_timeout``
    seconds and over the limit once it has run ``job_hard_limit`` seconds.
    """
    current = now or dt.datetime.now(dt.timezone.utc)
    findings = HealthFindings()

    for job in jobs:
        elapsed = seconds_since(job.started_at, now=current) or 0.0
        if config.job_hard_limit > 0 and elapsed > config.job_hard_limit:
            findings.over_limit_jobs.append(job.issue)
            findings.details.append(f"issue #{job.issue} exceeded hard limit ({int(elapsed)}s)")
            continue
        idle = _idle_seconds(job, current)
        if config.stale_timeout > 0 and idle > config.stale_timeout:
            findings.stale_jobs.append(job.issue)
            findings.details.append(f"issue #{job.issue} stale (no output for {int(idle)}s)")

    free = free_disk_bytes(state_dir)
    findings.disk_free_bytes = free
    if free is not None:
        if free < config.disk_critical_bytes:
            findings.disk_critical = True
            findings.details.append(f"critical disk space: {free // _MB}MB free")
        elif free < config.disk_warn_bytes:
            findings.disk_low = True
            findings.details.append(f"low disk space: {free // _MB}MB free")

    findings.events_bytes = events_bytes
    if events_bytes > config.events_warn_bytes:
        findings.events_large = True
        findings.details.append(f"events file large ({events_bytes // _MB}MB)")

    for detail in findings.details:
        logger.warning("Health: %s", detail)
    return findings
