"""Scheduler poll loop: triage, spawn, reap, health sweeps and patrol.

One coordinating loop supervises up to ``max_parallel`` pipeline processes.
Spawning is fire-and-forget; reaping polls liveness each cycle. Every step of
a cycle is guarded so that one failing step is logged and the loop carries
on. Shutdown is cooperative: the loop checks the shutdown flag every second.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from drydock.config import DrydockConfig
from drydock.errors import DrydockError, FeedError, WorkspaceError
from drydock.events import (
    AutoPaused,
    DaemonPoll,
    DaemonStarted,
    DaemonStopped,
    DegradationAlert,
    EventRecorder,
    HealthChecked,
    JobReaped,
    JobSpawned,
    PatrolRan,
    PollBackoff as PollBackoffEvent,
    RetryScheduled,
)
from drydock.feed import WorkFeed
from drydock.file_io import cleanup_stale_temp_files, read_tail
from drydock.notify import Notifier
from drydock.pipeline.checkpoint import CheckpointStore
from drydock.pipeline.engine import SUCCESS_LOG_LINE
from drydock.pipeline.stages import Stage
from drydock.runner_common import pid_alive, terminate_pid, terminate_process
from drydock.scheduler.failures import auto_pause_minutes, classify_failure, decide_retry
from drydock.scheduler.health import PollBackoff, analyze_degradation, free_disk_bytes, sweep
from drydock.scheduler.lock import DaemonLock, read_pid, running_pid
from drydock.scheduler.state import StateStore, pause_active, read_pause, write_pause
from drydock.schemas import Job, WorkItem, seconds_since
from drydock.triage import TriageScorer
from drydock.vitals import VitalsStore
from drydock.workspace import Workspace, WorkspaceManager

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"
VITALS_MAX_AGE_SECONDS = 7 * 86400
_LOG_TAIL_LINES = 200


def exit_code_from_log(path: str | Path) -> int:
    """Outcome of a job whose process we cannot wait on: 0 when its log reports success."""
    for line in reversed(read_tail(Path(path), _LOG_TAIL_LINES)):
        if SUCCESS_LOG_LINE in line:
            return 0
    return 1


def build_child_command(
    config: DrydockConfig,
    issue: int,
    workspace: Workspace,
    template: str,
    *,
    config_path: str | Path | None = None,
    resume: bool = False,
) -> list[str]:
    cmd = [config.scheduler.python_executable, "-m", "drydock"]
    if config_path:
        cmd.extend(["--config", str(config_path)])
    cmd.extend(["pipeline", "run", "--issue", str(issue), "--workspace", str(workspace.path), "--template", template])
    if resume:
        cmd.append("--resume")
    return cmd


class Scheduler:
    """Feed-driven job scheduler.

    Parameters
    ----------
    config:
        Full configuration; the scheduler reads ``scheduler``, ``feed`` and
        the state-directory paths, and hands the rest to child pipelines
        through *config_path*.
    feed:
        Work feed polled for candidates and written back to on outcomes.
        Without one only queued items (e.g. incident hotfixes) are run.
    recorder / notifier / store / workspaces / triage:
        Collaborators; defaults are built from *config*.
    config_path:
        Passed to child pipelines as ``--config``.
    popen:
        Process launcher (``subprocess.Popen`` signature).
    """

    def __init__(
        self,
        config: DrydockConfig,
        *,
        feed: WorkFeed | None = None,
        recorder: EventRecorder | None = None,
        notifier: Notifier | None = None,
        store: StateStore | None = None,
        workspaces: WorkspaceManager | None = None,
        triage: TriageScorer | None = None,
        config_path: str | Path | None = None,
        popen: Callable[..., Any] = subprocess.Popen,
    ) -> None:
        self.config = config
        self.settings = config.scheduler
        self.feed = feed
        self.recorder = recorder or EventRecorder(config.events_path)
        self.notifier = notifier or Notifier(config.notify)
        self.store = store or StateStore(
            config.daemon_state_path,
            max_completed=self.settings.max_completed,
            max_failure_history=self.settings.max_failure_history,
        )
        self.workspaces = workspaces or WorkspaceManager(
            config.repo_path,
            config.worktrees_dir,
            base_ref=config.pipeline.base_branch,
        )
        self.triage = triage or TriageScorer(
            config.triage,
            recorder=self.recorder,
            is_open=feed.is_open if feed is not None else None,
        )
        self.config_path = Path(config_path).resolve() if config_path else None
        self.popen = popen
        self.backoff = PollBackoff(self.settings.backoff_base, self.settings.backoff_max)
        self.cycle = 0
        self.last_patrol = 0.0
        self._degraded = False
        self._procs: dict[int, Any] = {}
        self._stop = threading.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def shutdown_requested(self) -> bool:
        return self._stop.is_set() or self.config.shutdown_flag_path.exists()

    def request_shutdown(self, *_args: object) -> None:
        logger.info("Shutdown requested")
        self._stop.set()

    def run(self) -> int:
        """Hold the singleton lock and run the poll loop until shutdown."""
        self.config.logs_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(self.config.logs_dir / "daemon.log", encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)
        lock = DaemonLock(self.config.lock_path, self.config.pid_path)
        try:
            with lock:
                self._install_signal_handlers()
                self.startup()
                reason = "shutdown_flag"
                try:
                    self.loop()
                except KeyboardInterrupt:
                    reason = "interrupted"
                finally:
                    self.shutdown(reason)
        finally:
            logging.getLogger().removeHandler(handler)
            handler.close()
        return 0

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        signal.signal(signal.SIGINT, self.request_shutdown)
        signal.signal(signal.SIGTERM, self.request_shutdown)

    def startup(self) -> None:
        self.config.shutdown_flag_path.unlink(missing_ok=True)
        self.store.mark_started(os.getpid())
        orphans = self.store.active_jobs()
        if orphans:
            logger.info("Recovering %d job(s) from a previous run", len(orphans))
            self.reap()
        self.recorder.emit(DaemonStarted(pid=os.getpid(), max_parallel=self.settings.max_parallel))
        logger.info(
            "Scheduler started (pid=%s, max_parallel=%d, poll_interval=%ds, watch_label=%s)",
            os.getpid(),
            self.settings.max_parallel,
            self.settings.poll_interval,
            self.config.feed.watch_label,
        )

    def loop(self) -> None:
        while not self.shutdown_requested():
            self.run_cycle()
            interval = self.backoff.delay or self.settings.poll_interval
            self._sleep(interval)
        logger.info("Shutdown flag detected; leaving poll loop")

    def _sleep(self, seconds: float) -> None:
        """Sleep in one-second steps so a shutdown request is noticed promptly."""
        deadline = time.monotonic() + seconds
        while not self.shutdown_requested():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._stop.wait(min(1.0, remaining))

    def shutdown(self, reason: str = "shutdown_flag") -> None:
        """Stop children, put their issues back in the queue, and remove the flag."""
        for job in self.store.active_jobs():
            self._terminate(job, reason="shutdown")
            self.store.remove_active(job.issue)
            self.store.enqueue(job.issue, job.title)
        self._procs.clear()
        self.config.shutdown_flag_path.unlink(missing_ok=True)
        self.recorder.emit(DaemonStopped(reason=reason))
        logger.info("Scheduler stopped (%s)", reason)

    def _terminate(self, job: Job, *, reason: str) -> None:
        proc = self._procs.pop(job.issue, None)
        grace = self.settings.child_grace_seconds
        if proc is not None:
            terminate_process(proc, process_name=f"pipeline #{job.issue}", reason=reason, grace_seconds=grace)
        elif job.pid:
            terminate_pid(job.pid, grace_seconds=grace)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self) -> None:
        self.cycle += 1
        self._guarded("poll", self.poll)
        self._guarded("reap", self.reap)
        self._guarded("health check", self.health_check)
        if self.settings.degradation_every > 0 and self.cycle % self.settings.degradation_every == 0:
            self._guarded("degradation check", self.check_degradation)
        if self.settings.cleanup_every > 0 and self.cycle % self.settings.cleanup_every == 0:
            self._guarded("event rotation", self.recorder.rotate_if_needed)
        if self.settings.patrol_enabled and self._idle() and time.time() - self.last_patrol >= self.settings.patrol_interval:
            self._guarded("patrol", self.patrol)

    def _guarded(self, name: str, step: Callable[[], object]) -> None:
        try:
            step()
        except Exception as exc:
            logger.exception("Scheduler %s failed; continuing: %s", name, exc)

    def _idle(self) -> bool:
        state = self.store.load()
        return not state.active_jobs and not state.queued

    # ------------------------------------------------------------------
    # Poll
    # ------------------------------------------------------------------

    def poll(self) -> None:
        if pause_active(self.config.pause_flag_path):
            flag = read_pause(self.config.pause_flag_path) or {}
            logger.info("Scheduler paused (%s); skipping poll", flag.get("reason", "manual"))
            return
        spawned = queued = 0
        candidates: list[WorkItem] = []
        if self.feed is not None:
            try:
                candidates = self.feed.list_candidates()
            except FeedError as exc:
                delay = self.backoff.failure()
                logger.warning("Feed poll failed; backing off %ds: %s", delay, exc)
                self.recorder.emit(PollBackoffEvent(seconds=delay, error=str(exc)[:300]))
                return
            self.backoff.success()

        failed_label = self.config.feed.failed_label.strip().lower()
        for item in self.triage.rank(candidates):
            if self.store.is_inflight(item.id) or failed_label in item.label_set():
                continue
            if self.store.active_count() < self.settings.max_parallel:
                if spawned and self.settings.stagger_delay > 0:
                    self._sleep(self.settings.stagger_delay)
                    if self.shutdown_requested():
                        break
                if self.spawn(item) is not None:
                    spawned += 1
            elif self.store.enqueue(item.id, item.title):
                queued += 1

        spawned += self.drain_queue()
        self.store.mark_polled()
        self.recorder.emit(DaemonPoll(candidates=len(candidates), spawned=spawned, queued=queued))

    def drain_queue(self) -> int:
        """Spawn queued items while there is capacity; return how many started."""
        started = 0
        while self.store.active_count() < self.settings.max_parallel and not self.shutdown_requested():
            issue = self.store.dequeue()
            if issue is None:
                break
            item = self._item_for(issue)
            if self.spawn(item) is not None:
                started += 1
            else:
                break
        return started

    def _item_for(self, issue: int) -> WorkItem:
        if self.feed is not None:
            try:
                return self.feed.get_item(issue)
            except FeedError as exc:
                logger.warning("Could not fetch #%s from the feed: %s", issue, exc)
        return WorkItem(id=issue, title=self.store.title_for(issue))

    # ------------------------------------------------------------------
    # Spawn
    # ------------------------------------------------------------------

    def spawn(self, item: WorkItem) -> Job | None:
        """Allocate a workspace and launch a pipeline process for *item*."""
        free = free_disk_bytes(self.config.state_dir)
        if free is not None and free < self.settings.disk_critical_bytes:
            logger.error("Refusing to spawn #%s: only %dMB free", item.id, free // (1024 * 1024))
            self.store.enqueue(item.id, item.title)
            return None
        try:
            workspace = self.workspaces.allocate_for_issue(item.id)
        except WorkspaceError as exc:
            logger.error("Could not allocate workspace for #%s: %s", item.id, exc)
            self._requeue(item)
            return None

        retry_count = self.store.retry_count(item.id)
        template = self.triage.select_template(item, retry_count=retry_count)
        resume = CheckpointStore(workspace.runtime_dir).load(Stage.BUILD.value) is not None
        cmd = build_child_command(
            self.config,
            item.id,
            workspace,
            template,
            config_path=self.config_path,
            resume=resume,
        )
        self.config.logs_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.config.logs_dir / f"issue-{item.id}.log"
        try:
            with log_path.open("a", encoding="utf-8") as log_handle:
                proc = self.popen(
                    cmd,
                    cwd=str(self.config.repo_path),
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )
        except OSError as exc:
            logger.error("Could not launch pipeline for #%s: %s", item.id, exc)
            self._requeue(item)
            return None
        self._procs[item.id] = proc
        job = Job(
            issue=item.id,
            title=item.title,
            pid=proc.pid,
            workspace=str(workspace.path),
            branch=workspace.branch,
            template=template,
            log_path=str(log_path),
            retry_count=retry_count,
        )
        self.store.add_active(job)
        logger.info("Spawned #%s (%s) as PID %s [template=%s%s]", item.id, item.title, proc.pid, template, ", resume" if resume else "")
        self.recorder.emit(
            JobSpawned(
                job_id=job.job_id,
                issue=item.id,
                pid=proc.pid,
                workspace=str(workspace.path),
                template=template,
                title=item.title,
            )
        )
        self.notifier.job_started(item.id, item.title, template)
        return job

    def _requeue(self, item: WorkItem) -> None:
        """Put *item* back in the queue, held for one poll interval."""
        self.store.enqueue(item.id, item.title, not_before=time.time() + self.settings.poll_interval)

    # ------------------------------------------------------------------
    # Reap
    # ------------------------------------------------------------------

    def _exit_code(self, job: Job) -> int | None:
        """Exit code of a finished job, ``None`` while it is still running."""
        proc = self._procs.get(job.issue)
        if proc is not None:
            code = proc.poll()
            if code is None:
                return None
            self._procs.pop(job.issue, None)
            return int(code)
        if pid_alive(job.pid):
            return None
        return exit_code_from_log(job.log_path) if job.log_path else 1

    def reap(self) -> int:
        """Collect finished jobs; return how many were reaped."""
        reaped = 0
        for job in self.store.active_jobs():
            exit_code = self._exit_code(job)
            if exit_code is None:
                continue
            reaped += 1
            duration = seconds_since(job.started_at) or 0.0
            result = "success" if exit_code == 0 else "failure"
            self.store.remove_active(job.issue)
            self.store.record_completion(job, result=result, exit_code=exit_code, duration_seconds=duration)
            self.recorder.emit(
                JobReaped(
                    job_id=job.job_id,
                    issue=job.issue,
                    result=result,
                    exit_code=exit_code,
                    duration_seconds=round(duration, 1),
                )
            )
            if exit_code == 0:
                self._on_success(job, duration)
            else:
                self._on_failure(job, exit_code)
        if reaped:
            self.drain_queue()
        return reaped

    def _release(self, job: Job) -> None:
        workspace = Workspace(name=Path(job.workspace).name, path=Path(job.workspace), branch=job.branch)
        try:
            self.workspaces.release(workspace)
        except DrydockError as exc:
            logger.warning("Could not release workspace for #%s: %s", job.issue, exc)

    def _feed_call(self, action: str, fn: Callable[..., object], *args: object) -> None:
        if self.feed is None:
            return
        try:
            fn(*args)
        except FeedError as exc:
            logger.warning("Feed %s failed: %s", action, exc)

    def _on_success(self, job: Job, duration: float) -> None:
        logger.info("Pipeline for #%s succeeded (%.0fs)", job.issue, duration)
        self.store.reset_failures()
        self.store.clear_retry(job.issue)
        if self.feed is not None:
            feed_cfg = self.config.feed
            self._feed_call("label", self.feed.add_label, job.issue, feed_cfg.done_label)
            self._feed_call("comment", self.feed.comment, job.issue, f"drydock finished this item on branch `{job.branch}` in {int(duration)}s.")
            self._feed_call("unlabel", self.feed.remove_label, job.issue, feed_cfg.watch_label)
        self.notifier.job_succeeded(job.issue, job.title, duration)
        self._release(job)

    def _on_failure(self, job: Job, exit_code: int) -> None:
        tail = read_tail(Path(job.log_path), _LOG_TAIL_LINES) if job.log_path else []
        checkpoint = CheckpointStore(Path(job.workspace) / ".drydock").load(Stage.BUILD.value)
        failure_class = classify_failure(tail, checkpoint=checkpoint)
        logger.warning("Pipeline for #%s failed (exit %s, class %s)", job.issue, exit_code, failure_class.value)

        consecutive = self.store.record_failure(job.issue, failure_class.value)
        minutes = auto_pause_minutes(consecutive, after=self.settings.auto_pause_after)
        if minutes:
            write_pause(self.config.pause_flag_path, f"consecutive_{failure_class.value}", minutes=minutes)
            self.recorder.emit(
                AutoPaused(issue=job.issue, minutes=minutes, consecutive_failures=consecutive, reason=failure_class.value)
            )

        decision = decide_retry(failure_class, self.store.retry_count(job.issue))
        if decision.retry:
            self.store.increment_retry(job.issue)
            self.store.enqueue(job.issue, job.title, not_before=time.time() + decision.delay_seconds)
            logger.info(
                "Retry %d/%d for #%s in %ds (%s)",
                decision.attempt,
                decision.max_retries,
                job.issue,
                decision.delay_seconds,
                failure_class.value,
            )
            self.recorder.emit(
                RetryScheduled(
                    job_id=job.job_id,
                    issue=job.issue,
                    failure_class=failure_class.value,
                    retry_count=decision.attempt,
                    delay_seconds=decision.delay_seconds,
                )
            )
            if self.feed is not None:
                self._feed_call(
                    "comment",
                    self.feed.comment,
                    job.issue,
                    f"drydock run failed ({failure_class.value}); retry {decision.attempt}/{decision.max_retries} scheduled.",
                )
            return

        logger.error("Giving up on #%s after %d retr%s (%s)", job.issue, decision.attempt, "y" if decision.attempt == 1 else "ies", failure_class.value)
        if self.feed is not None:
            self._feed_call("label", self.feed.add_label, job.issue, self.config.feed.failed_label)
            self._feed_call("unlabel", self.feed.remove_label, job.issue, self.config.feed.watch_label)
            self._feed_call("comment", self.feed.comment, job.issue, f"drydock could not complete this item ({failure_class.value}). See `{job.log_path}`.")
        self.notifier.job_failed(job.issue, job.title, failure_class.value)
        self.store.clear_retry(job.issue)
        self._release(job)

    # ------------------------------------------------------------------
    # Health, degradation, patrol
    # ------------------------------------------------------------------

    def health_check(self) -> None:
        findings = sweep(
            self.store.active_jobs(),
            self.settings,
            state_dir=self.config.state_dir,
            events_bytes=self.recorder.size_bytes(),
        )
        active = {job.issue: job for job in self.store.active_jobs()}
        for issue in findings.jobs_to_kill:
            job = active.get(issue)
            if job is not None:
                logger.warning("Killing #%s (PID %s)", issue, job.pid)
                self._terminate(job, reason="health sweep")
        flag = read_pause(self.config.pause_flag_path)
        disk_paused = flag is not None and flag.get("reason") == "disk_low"
        if findings.disk_critical and (flag is None or disk_paused):
            write_pause(self.config.pause_flag_path, "disk_low", minutes=self.settings.disk_pause_minutes)
        elif disk_paused and not findings.disk_critical:
            logger.info("Disk space recovered; lifting disk_low pause")
            self.config.pause_flag_path.unlink(missing_ok=True)
        if findings.count:
            self.recorder.emit(HealthChecked(findings=findings.count, details=findings.details))

    def check_degradation(self) -> None:
        report = analyze_degradation(
            self.recorder.recent_completions(self.settings.degradation_window),
            window=self.settings.degradation_window,
            cfr_threshold=self.settings.cfr_threshold,
            success_threshold=self.settings.success_threshold,
        )
        if not report.degraded:
            self._degraded = False
            return
        if self._degraded:
            logger.debug("Still degraded (CFR %.0f%%); alert already sent", report.cfr_percent)
            return
        self._degraded = True
        self.recorder.emit(
            DegradationAlert(
                cfr_percent=report.cfr_percent,
                success_percent=report.success_percent,
                window=report.window,
                reasons=report.alerts,
            )
        )
        self.notifier.degradation(report.alerts)

    def patrol(self) -> list[str]:
        """Low-priority maintenance, run only while the scheduler is idle."""
        self.last_patrol = time.time()
        logger.info("No active work; running patrol")
        actions: list[str] = []
        state = self.store.load()
        keep = state.active_issues() | set(state.queued)
        pruned = self.workspaces.prune_orphans(keep)
        if pruned:
            actions.append(f"pruned {len(pruned)} orphaned workspace(s)")
        expired = 0
        for path in self.workspaces.issue_workspaces().values():
            expired += CheckpointStore(
                path / ".drydock",
                max_age_hours=self.config.pipeline.checkpoint_max_age_hours,
            ).expire()
        if expired:
            actions.append(f"expired {expired} checkpoint(s)")
        if self.recorder.rotate_if_needed():
            actions.append("rotated event log")
        removed = VitalsStore(self.config.vitals_dir).prune(max_age_seconds=VITALS_MAX_AGE_SECONDS)
        if removed:
            actions.append(f"removed {removed} stale vitals file(s)")
        temps = cleanup_stale_temp_files(self.config.state_dir)
        if temps:
            actions.append(f"removed {temps} stale temp file(s)")
        self.recorder.emit(PatrolRan(actions=actions))
        return actions


# ---------------------------------------------------------------------------
# Control commands
# ---------------------------------------------------------------------------


def start_background(config: DrydockConfig, *, config_path: str | Path | None = None) -> int:
    """Launch the scheduler as a detached ``daemon start --foreground`` process."""
    existing = running_pid(config.pid_path)
    if existing:
        raise DrydockError(f"Scheduler already running (PID {existing})")
    config.logs_dir.mkdir(parents=True, exist_ok=True)
    cmd = [config.scheduler.python_executable or sys.executable, "-m", "drydock"]
    if config_path:
        cmd.extend(["--config", str(Path(config_path).resolve())])
    cmd.extend(["daemon", "start", "--foreground"])
    with (config.logs_dir / "daemon.out").open("a", encoding="utf-8") as out:
        proc = subprocess.Popen(
            cmd,
            cwd=str(config.repo_path),
            stdout=out,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            start_new_session=True,
        )
    logger.info("Scheduler starting in the background (PID %s)", proc.pid)
    return proc.pid


def stop_daemon(config: DrydockConfig, *, timeout: float | None = None) -> bool:
    """Ask a running scheduler to stop; escalate to SIGTERM then SIGKILL.

    Returns False when no scheduler was running.
    """
    pid = running_pid(config.pid_path)
    if pid is None:
        config.pid_path.unlink(missing_ok=True)
        return False
    config.shutdown_flag_path.parent.mkdir(parents=True, exist_ok=True)
    config.shutdown_flag_path.touch()
    wait = config.scheduler.stop_timeout if timeout is None else timeout
    deadline = time.monotonic() + wait
    logger.info("Waiting up to %ss for scheduler PID %s to stop", wait, pid)
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            return True
        time.sleep(0.5)
    logger.warning("Scheduler PID %s did not stop; sending SIGTERM", pid)
    if not terminate_pid(pid, grace_seconds=2.0):
        logger.error("Scheduler PID %s is still alive after SIGKILL", pid)
    config.shutdown_flag_path.unlink(missing_ok=True)
    return True


def daemon_status(config: DrydockConfig) -> dict[str, Any]:
    """Liveness plus a summary of the durable registry."""
    state = StateStore(config.daemon_state_path).load()
    pid = read_pid(config.pid_path)
    completed = state.completed
    return {
        "running": bool(pid and pid_alive(pid)),
        "pid": pid,
        "started_at": state.started_at,
        "last_poll": state.last_poll,
        "paused": read_pause(config.pause_flag_path),
        "active": [
            {"issue": j.issue, "title": j.title, "pid": j.pid, "template": j.template, "started_at": j.started_at}
            for j in state.active_jobs
        ],
        "queued": list(state.queued),
        "completed": len(completed),
        "succeeded": sum(1 for c in completed if c.result == "success"),
        "failed": sum(1 for c in completed if c.result != "success"),
        "consecutive_failures": state.consecutive_failures,
    }
