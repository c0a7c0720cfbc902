"""Durable job registry and queue for the scheduler.

The registry is one JSON document (``daemon-state.json``) rewritten by atomic
replace after every mutation. Each mutation re-reads the file first, so an
item queued by another process (the incident watcher, say) between two
scheduler updates is kept.
"""

from __future__ import annotations

import datetime as dt
import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from drydock.file_io import atomic_write_json, atomic_write_text, interprocess_locked_path, read_json
from drydock.schemas import Job, parse_iso, utc_now_iso

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class CompletedJob(BaseModel):
    issue: int
    title: str = ""
    result: str = "failure"
    exit_code: int = -1
    duration_seconds: float = 0.0
    template: str = ""
    finished_at: str = Field(default_factory=utc_now_iso)


class FailureRecord(BaseModel):
    issue: int
    failure_class: str = "unknown"
    ts: str = Field(default_factory=utc_now_iso)


class DaemonState(BaseModel):
    """Everything the scheduler needs to survive a restart."""

    version: int = STATE_VERSION
    pid: int = 0
    started_at: str | None = None
    last_poll: str | None = None
    active_jobs: list[Job] = Field(default_factory=list)
    queued: list[int] = Field(default_factory=list)
    completed: list[CompletedJob] = Field(default_factory=list)
    retry_counts: dict[str, int] = Field(default_factory=dict)
    retry_not_before: dict[str, float] = Field(default_factory=dict)
    failure_history: list[FailureRecord] = Field(default_factory=list)
    titles: dict[str, str] = Field(default_factory=dict)
    consecutive_failures: int = 0

    def active_issues(self) -> set[int]:
        return {job.issue for job in self.active_jobs}

    def is_inflight(self, issue: int) -> bool:
        """True when *issue* is running or waiting in the queue."""
        return issue in self.active_issues() or issue in self.queued

    def find_active(self, issue: int) -> Job | None:
        for job in self.active_jobs:
            if job.issue == issue:
                return job
        return None


class StateStore:
    """Atomic load/modify/save access to :class:`DaemonState`.

    Parameters
    ----------
    path:
        Location of ``daemon-state.json``.
    max_completed:
        Completed-job records kept (oldest dropped first).
    max_failure_history:
        Failure-class records kept for consecutive-failure tracking.
    """

    def __init__(self, path: str | Path, *, max_completed: int = 500, max_failure_history: int = 100) -> None:
        self.path = Path(path)
        self.max_completed = max_completed
        self.max_failure_history = max_failure_history

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> DaemonState:
        """Return the stored state; a missing or corrupt file yields a fresh one."""
        raw = read_json(self.path)
        if raw is None:
            return DaemonState()
        try:
            return DaemonState.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Daemon state %s is invalid; starting fresh: %s", self.path, exc)
            return DaemonState()

    def save(self, state: DaemonState) -> None:
        state.completed = state.completed[-self.max_completed :]
        state.failure_history = state.failure_history[-self.max_failure_history :]
        atomic_write_text(self.path, state.model_dump_json(indent=2) + "\n")

    @contextmanager
    def transaction(self) -> Iterator[DaemonState]:
        """Yield the current state and save it when the block exits cleanly.

        The read-modify-write holds an inter-process lock on the file.
        """
        with interprocess_locked_path(self.path):
            state = self.load()
            yield state
            self.save(state)

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def is_inflight(self, issue: int) -> bool:
        return self.load().is_inflight(issue)

    def enqueue(self, issue: int, title: str = "", *, not_before: float | None = None) -> bool:
        """Queue *issue* unless it is already active or queued; return whether it was added."""
        with self.transaction() as state:
            if title:
                state.titles[str(issue)] = title
            if not_before is not None:
                state.retry_not_before[str(issue)] = not_before
            if state.is_inflight(issue):
                return False
            state.queued.append(issue)
        logger.info("Queued issue #%s", issue)
        return True

    def dequeue(self, *, now: float | None = None) -> int | None:
        """Pop the first queued issue whose retry delay has passed."""
        current = time.time() if now is None else now
        with self.transaction() as state:
            for issue in list(state.queued):
                ready_at = state.retry_not_before.get(str(issue), 0.0)
                if ready_at > current:
                    continue
                state.queued.remove(issue)
                state.retry_not_before.pop(str(issue), None)
                return issue
        return None

    def queued(self) -> list[int]:
        return list(self.load().queued)

    def title_for(self, issue: int) -> str:
        return self.load().titles.get(str(issue), "")

    # ------------------------------------------------------------------
    # Active jobs
    # ------------------------------------------------------------------

    def active_jobs(self) -> list[Job]:
        return list(self.load().active_jobs)

    def active_count(self) -> int:
        return len(self.load().active_jobs)

    def add_active(self, job: Job) -> None:
        with self.transaction() as state:
            state.active_jobs = [j for j in state.active_jobs if j.issue != job.issue]
            state.active_jobs.append(job)
            if job.title:
                state.titles[str(job.issue)] = job.title

    def remove_active(self, issue: int) -> Job | None:
        with self.transaction() as state:
            job = state.find_active(issue)
            if job is not None:
                state.active_jobs.remove(job)
        return job

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def record_completion(self, job: Job, *, result: str, exit_code: int, duration_seconds: float) -> None:
        with self.transaction() as state:
            state.completed.append(
                CompletedJob(
                    issue=job.issue,
                    title=job.title,
                    result=result,
                    exit_code=exit_code,
                    duration_seconds=round(duration_seconds, 1),
                    template=job.template,
                )
            )

    def record_failure(self, issue: int, failure_class: str) -> int:
        """Append a failure and return the run of consecutive same-class failures."""
        with self.transaction() as state:
            state.failure_history.append(FailureRecord(issue=issue, failure_class=failure_class))
            run = 0
            for record in reversed(state.failure_history):
                if record.failure_class != failure_class:
                    break
                run += 1
            state.consecutive_failures = run
        return run

    def reset_failures(self) -> None:
        with self.transaction() as state:
            state.consecutive_failures = 0

    def retry_count(self, issue: int) -> int:
        return self.load().retry_counts.get(str(issue), 0)

    def increment_retry(self, issue: int) -> int:
        with self.transaction() as state:
            count = state.retry_counts.get(str(issue), 0) + 1
            state.retry_counts[str(issue)] = count
        return count

    def clear_retry(self, issue: int) -> None:
        with self.transaction() as state:
            state.retry_counts.pop(str(issue), None)
            state.retry_not_before.pop(str(issue), None)

    # ------------------------------------------------------------------
    # Daemon lifecycle
    # ------------------------------------------------------------------

    def mark_started(self, pid: int) -> None:
        with self.transaction() as state:
            state.pid = pid
            state.started_at = utc_now_iso()

    def mark_polled(self) -> None:
        with self.transaction() as state:
            state.last_poll = utc_now_iso()


# ---------------------------------------------------------------------------
# Pause flag
# ---------------------------------------------------------------------------


def write_pause(path: Path, reason: str, *, minutes: int | None = None) -> dict[str, str | None]:
    """Write the pause flag; ``minutes=None`` pauses until the flag is removed."""
    now = dt.datetime.now(dt.timezone.utc)
    resume_after = None
    if minutes is not None:
        resume_after = (now + dt.timedelta(minutes=minutes)).strftime("%Y-%m-%dT%H:%M:%SZ")
    payload = {
        "reason": reason,
        "paused_at": now.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "resume_after": resume_after,
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    atomic_write_json(path, payload)
    logger.warning("Scheduler paused (%s)%s", reason, f" until {resume_after}" if resume_after else "")
    return payload


def read_pause(path: Path) -> dict[str, str | None] | None:
    if not path.exists():
        return None
    data = read_json(path, default={})
    return data if isinstance(data, dict) else {}


def pause_active(path: Path, *, now: dt.datetime | None = None) -> bool:
    """True while the pause flag is present; an expired flag is removed."""
    flag = read_pause(path)
    if flag is None:
        return False
    resume_after = parse_iso(flag.get("resume_after"))
    current = now or dt.datetime.now(dt.timezone.utc)
    if resume_after is not None and current >= resume_after:
        path.unlink(missing_ok=True)
        logger.info("Pause expired (%s); resuming", flag.get("reason", "unknown"))
        return False
    return True
