"""Tests for the scheduler poll loop: spawn, reap, retries, health and shutdown."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any

import pytest

import drydock.scheduler.daemon as daemon_module
import drydock.scheduler.health as health_module
from drydock.config import DrydockConfig, FeedConfig, SchedulerConfig
from drydock.errors import FeedError, WorkspaceError
from drydock.events import EventRecorder, PipelineCompleted
from drydock.feed import WorkFeed
from drydock.pipeline.engine import SUCCESS_LOG_LINE
from drydock.schemas import Job, WorkItem
from drydock.scheduler.daemon import (
    Scheduler,
    build_child_command,
    daemon_status,
    exit_code_from_log,
    stop_daemon,
)
from drydock.scheduler.state import read_pause, write_pause
from drydock.workspace import Workspace

pytestmark = pytest.mark.unit

_PLENTY = 50 * 1024 * 1024 * 1024


class FakeFeed(WorkFeed):
    def __init__(self, items: list[WorkItem] | None = None) -> None:
        self.items = {item.id: item for item in items or []}
        self.labels_added: list[tuple[int, str]] = []
        self.labels_removed: list[tuple[int, str]] = []
        self.comments: list[tuple[int, str]] = []
        self.fail_polls = False

    def list_candidates(self) -> list[WorkItem]:
        if self.fail_polls:
            raise FeedError("GitHub API returned HTTP 502")
        return [item.model_copy() for item in self.items.values() if "ready-to-build" in item.labels]

    def get_item(self, item_id: int) -> WorkItem:
        if item_id not in self.items:
            raise FeedError(f"issue #{item_id} not found", status=404)
        return self.items[item_id].model_copy()

    def is_open(self, item_id: int) -> bool:
        return item_id in self.items

    def add_label(self, item_id: int, label: str) -> None:
        self.labels_added.append((item_id, label))
        if item_id in self.items and label not in self.items[item_id].labels:
            self.items[item_id].labels.append(label)

    def remove_label(self, item_id: int, label: str) -> None:
        self.labels_removed.append((item_id, label))
        if item_id in self.items and label in self.items[item_id].labels:
            self.items[item_id].labels.remove(label)

    def comment(self, item_id: int, body: str) -> None:
        self.comments.append((item_id, body))

    def close(self, item_id: int) -> None:
        self.items.pop(item_id, None)

    def create_item(self, title: str, body: str, labels: list[str]) -> int:
        number = max(self.items, default=0) + 1
        self.items[number] = WorkItem(id=number, title=title, body=body, labels=labels)
        return number


class FakeProc:
    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.returncode: int | None = None

    def poll(self) -> int | None:
        return self.returncode

    def wait(self, timeout: float | None = None) -> int:
        if self.returncode is None:
            self.returncode = -15
        return self.returncode


class FakePopen:
    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.procs: list[FakeProc] = []

    def __call__(self, cmd: list[str], **_kwargs: Any) -> FakeProc:
        self.calls.append(list(cmd))
        proc = FakeProc(pid=40_000 + len(self.procs))
        self.procs.append(proc)
        return proc


class FakeWorkspaces:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.released: list[Path] = []

    def allocate_for_issue(self, issue: int) -> Workspace:
        path = self.root / f"daemon-issue-{issue}"
        path.mkdir(parents=True, exist_ok=True)
        return Workspace(name=path.name, path=path, branch=f"drydock/issue-{issue}")

    def release(self, workspace: Workspace, *, remove_branch: bool = False) -> None:
        self.released.append(workspace.path)

    def issue_workspaces(self) -> dict[int, Path]:
        return {}

    def prune_orphans(self, active_issues: Any) -> list[int]:
        return []


@pytest.fixture(autouse=True)
def _plenty_of_disk(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(daemon_module, "free_disk_bytes", lambda _p: _PLENTY)
    monkeypatch.setattr(health_module, "free_disk_bytes", lambda _p: _PLENTY)


@pytest.fixture()
def config(tmp_path: Path) -> DrydockConfig:
    repo = tmp_path / "repo"
    repo.mkdir()
    return DrydockConfig(
        state_dir=tmp_path / "state",
        repo_path=repo,
        scheduler=SchedulerConfig(max_parallel=2, stagger_delay=0, python_executable="python"),
        feed=FeedConfig(repo="acme/widgets"),
    )


def _items(*ids: int) -> list[WorkItem]:
    return [WorkItem(id=i, title=f"Item {i}", labels=["ready-to-build"]) for i in ids]


def _scheduler(config: DrydockConfig, feed: FakeFeed | None, tmp_path: Path) -> tuple[Scheduler, FakePopen, FakeWorkspaces]:
    popen = FakePopen()
    workspaces = FakeWorkspaces(tmp_path / "worktrees")
    scheduler = Scheduler(
        config,
        feed=feed,
        recorder=EventRecorder(config.events_path),
        workspaces=workspaces,  # type: ignore[arg-type]
        popen=popen,
    )
    return scheduler, popen, workspaces


def _finish(scheduler: Scheduler, popen: FakePopen, issue: int, code: int, log: str = "") -> None:
    job = next(j for j in scheduler.store.active_jobs() if j.issue == issue)
    if log:
        Path(job.log_path).write_text(log, encoding="utf-8")
    proc = next(p for p in popen.procs if p.pid == job.pid)
    proc.returncode = code


class TestPoll:
    def test_spawns_up_to_capacity_and_queues_the_rest(self, config: DrydockConfig, tmp_path: Path) -> None:
        scheduler, popen, _ = _scheduler(config, FakeFeed(_items(1, 2, 3)), tmp_path)

        scheduler.poll()

        assert len(popen.calls) == 2
        assert scheduler.store.active_count() == 2
        assert len(scheduler.store.queued()) == 1
        cmd = popen.calls[0]
        assert cmd[:3] == ["python", "-m", "drydock"]
        assert "pipeline" in cmd and "--issue" in cmd and "--workspace" in cmd
        polls = scheduler.recorder.read(types=["daemon.poll"])
        assert polls[-1].spawned == 2 and polls[-1].queued == 1

    def test_inflight_items_are_not_spawned_twice(self, config: DrydockConfig, tmp_path: Path) -> None:
        scheduler, popen, _ = _scheduler(config, FakeFeed(_items(1, 2, 3)), tmp_path)

        scheduler.poll()
        scheduler.poll()

        assert len(popen.calls) == 2
        assert len(scheduler.store.queued()) == 1

    def test_feed_error_backs_off(self, config: DrydockConfig, tmp_path: Path) -> None:
        feed = FakeFeed(_items(1))
        feed.fail_polls = True
        scheduler, popen, _ = _scheduler(config, feed, tmp_path)

        scheduler.poll()
        scheduler.poll()

        assert popen.calls == []
        assert scheduler.backoff.delay == 60
        assert [ev.seconds for ev in scheduler.recorder.read(types=["daemon.backoff"])] == [30, 60]

        feed.fail_polls = False
        scheduler.poll()
        assert scheduler.backoff.delay == 0

    def test_paused_scheduler_does_not_poll(self, config: DrydockConfig, tmp_path: Path) -> None:
        scheduler, popen, _ = _scheduler(config, FakeFeed(_items(1)), tmp_path)
        write_pause(config.pause_flag_path, "manual")

        scheduler.poll()

        assert popen.calls == []

    def test_without_feed_only_queue_is_drained(self, config: DrydockConfig, tmp_path: Path) -> None:
        scheduler, popen, _ = _scheduler(config, None, tmp_path)
        scheduler.store.enqueue(9, "Hotfix: crash loop")

        scheduler.poll()

        assert len(popen.calls) == 1
        assert scheduler.store.active_jobs()[0].title == "Hotfix: crash loop"

    def test_spawn_refused_when_disk_critical(
        self,
        config: DrydockConfig,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        scheduler, popen, _ = _scheduler(config, FakeFeed(), tmp_path)
        monkeypatch.setattr(daemon_module, "free_disk_bytes", lambda _p: 10 * 1024 * 1024)

        assert scheduler.spawn(WorkItem(id=5, title="Big")) is None
        assert popen.calls == []
        assert scheduler.store.queued() == [5]

    def test_items_labelled_failed_are_skipped(self, config: DrydockConfig, tmp_path: Path) -> None:
        item = WorkItem(id=3, title="Broken", labels=["ready-to-build", "drydock:failed"])
        scheduler, popen, _ = _scheduler(config, FakeFeed([item]), tmp_path)

        scheduler.poll()

        assert popen.calls == []
        assert scheduler.store.queued() == []

    def test_workspace_failure_requeues_item(
        self,
        config: DrydockConfig,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        scheduler, popen, workspaces = _scheduler(config, None, tmp_path)
        scheduler.store.enqueue(9, "Hotfix: crash loop")

        def refuse(issue: int) -> Workspace:
            raise WorkspaceError(f"Could not create workspace for issue {issue}")

        monkeypatch.setattr(workspaces, "allocate_for_issue", refuse)

        scheduler.poll()

        state = scheduler.store.load()
        assert popen.calls == []
        assert state.queued == [9]
        assert state.retry_not_before["9"] > time.time()
        assert scheduler.store.dequeue() is None

    def test_launch_failure_requeues_item(self, config: DrydockConfig, tmp_path: Path) -> None:
        scheduler, _, _ = _scheduler(config, None, tmp_path)

        def broken_popen(cmd: list[str], **_kwargs: Any) -> FakeProc:
            raise OSError("No such file or directory: 'python'")

        scheduler.popen = broken_popen

        assert scheduler.spawn(WorkItem(id=4, title="Retry me")) is None
        assert scheduler.store.queued() == [4]
        assert scheduler.store.active_count() == 0


class TestReap:
    def test_success_writes_back_and_releases(self, config: DrydockConfig, tmp_path: Path) -> None:
        feed = FakeFeed(_items(1))
        scheduler, popen, workspaces = _scheduler(config, feed, tmp_path)
        scheduler.poll()
        _finish(scheduler, popen, 1, 0, f"{SUCCESS_LOG_LINE}\n")

        assert scheduler.reap() == 1

        assert scheduler.store.active_count() == 0
        assert (1, "drydock:done") in feed.labels_added
        assert (1, "ready-to-build") in feed.labels_removed
        assert workspaces.released == [tmp_path / "worktrees" / "daemon-issue-1"]
        completed = scheduler.store.load().completed
        assert completed[-1].result == "success"
        reaped = scheduler.recorder.read(types=["daemon.reap"])
        assert reaped[-1].result == "success"

    def test_retryable_failure_is_requeued_with_delay(self, config: DrydockConfig, tmp_path: Path) -> None:
        feed = FakeFeed(_items(1))
        scheduler, popen, workspaces = _scheduler(config, feed, tmp_path)
        scheduler.poll()
        _finish(scheduler, popen, 1, 1, "2 tests failed\n")

        scheduler.reap()

        state = scheduler.store.load()
        assert state.queued == [1]
        assert state.retry_counts["1"] == 1
        assert state.retry_not_before["1"] > time.time()
        assert workspaces.released == []
        retries = scheduler.recorder.read(types=["daemon.retry"])
        assert retries[-1].failure_class == "build_failure"
        assert retries[-1].delay_seconds == 30
        # Still waiting out the retry delay.
        assert len(popen.calls) == 1

    def test_non_retryable_failure_is_labelled_failed(self, config: DrydockConfig, tmp_path: Path) -> None:
        feed = FakeFeed(_items(1))
        scheduler, popen, workspaces = _scheduler(config, feed, tmp_path)
        scheduler.poll()
        _finish(scheduler, popen, 1, 1, "Error: 401 unauthorized\n")

        scheduler.reap()

        assert (1, "drydock:failed") in feed.labels_added
        assert scheduler.store.queued() == []
        assert len(workspaces.released) == 1

    def test_final_failure_stops_reprocessing(self, config: DrydockConfig, tmp_path: Path) -> None:
        feed = FakeFeed(_items(1))
        scheduler, popen, _ = _scheduler(config, feed, tmp_path)
        scheduler.poll()
        _finish(scheduler, popen, 1, 1, "Error: 401 unauthorized\n")
        scheduler.reap()

        scheduler.poll()

        assert (1, "ready-to-build") in feed.labels_removed
        assert len(popen.calls) == 1
        assert scheduler.store.active_count() == 0

    def test_consecutive_failures_auto_pause(self, config: DrydockConfig, tmp_path: Path) -> None:
        scheduler, popen, _ = _scheduler(config, FakeFeed(_items(1)), tmp_path)
        scheduler.store.record_failure(7, "auth_error")
        scheduler.store.record_failure(8, "auth_error")
        scheduler.poll()
        _finish(scheduler, popen, 1, 1, "not logged in\n")

        scheduler.reap()

        flag = read_pause(config.pause_flag_path)
        assert flag is not None and flag["reason"] == "consecutive_auth_error"
        paused = scheduler.recorder.read(types=["daemon.auto_pause"])
        assert paused[-1].minutes == 5

    def test_inherited_job_is_judged_from_its_log(
        self,
        config: DrydockConfig,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        scheduler, _, _ = _scheduler(config, FakeFeed(_items(4)), tmp_path)
        log = tmp_path / "issue-4.log"
        log.write_text(f"12:00:00  INFO  drydock.pipeline.engine  {SUCCESS_LOG_LINE}\n", encoding="utf-8")
        scheduler.store.add_active(
            Job(issue=4, pid=31337, workspace=str(tmp_path / "ws4"), log_path=str(log))
        )
        monkeypatch.setattr(daemon_module, "pid_alive", lambda _pid: False)

        assert scheduler.reap() == 1
        assert scheduler.store.load().completed[-1].result == "success"

    def test_running_jobs_are_left_alone(self, config: DrydockConfig, tmp_path: Path) -> None:
        scheduler, _, _ = _scheduler(config, FakeFeed(_items(1)), tmp_path)
        scheduler.poll()

        assert scheduler.reap() == 0
        assert scheduler.store.active_count() == 1


class TestMaintenance:
    def test_health_check_kills_over_limit_jobs(
        self,
        config: DrydockConfig,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        killed: list[int] = []
        monkeypatch.setattr(daemon_module, "terminate_pid", lambda pid, **_kw: killed.append(pid) or True)
        scheduler, _, _ = _scheduler(config, FakeFeed(), tmp_path)
        scheduler.store.add_active(Job(issue=6, pid=5555, started_at="2020-01-01T00:00:00+00:00"))

        scheduler.health_check()

        assert killed == [5555]
        assert scheduler.recorder.read(types=["daemon.health"])[-1].findings == 1

    def test_degradation_alert_is_recorded(self, config: DrydockConfig, tmp_path: Path) -> None:
        scheduler, _, _ = _scheduler(config, FakeFeed(), tmp_path)
        for issue in range(5):
            scheduler.recorder.emit(PipelineCompleted(issue=issue, result="failure"))

        scheduler.check_degradation()

        alerts = scheduler.recorder.read(types=["daemon.alert"])
        assert alerts and alerts[-1].cfr_percent == 100.0

    def test_critical_disk_pause_expires_and_lifts_on_recovery(
        self,
        config: DrydockConfig,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        scheduler, _, _ = _scheduler(config, FakeFeed(), tmp_path)
        monkeypatch.setattr(health_module, "free_disk_bytes", lambda _p: 10 * 1024 * 1024)

        scheduler.health_check()

        flag = read_pause(config.pause_flag_path)
        assert flag is not None and flag["reason"] == "disk_low"
        assert flag["resume_after"] is not None

        monkeypatch.setattr(health_module, "free_disk_bytes", lambda _p: _PLENTY)
        scheduler.health_check()

        assert read_pause(config.pause_flag_path) is None

    def test_critical_disk_keeps_manual_pause(
        self,
        config: DrydockConfig,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        scheduler, _, _ = _scheduler(config, FakeFeed(), tmp_path)
        write_pause(config.pause_flag_path, "manual")
        monkeypatch.setattr(health_module, "free_disk_bytes", lambda _p: 10 * 1024 * 1024)

        scheduler.health_check()

        assert read_pause(config.pause_flag_path)["reason"] == "manual"

    def test_degradation_alerts_once_per_episode(self, config: DrydockConfig, tmp_path: Path) -> None:
        scheduler, _, _ = _scheduler(config, FakeFeed(), tmp_path)
        for issue in range(5):
            scheduler.recorder.emit(PipelineCompleted(issue=issue, result="failure"))

        scheduler.check_degradation()
        scheduler.check_degradation()
        assert len(scheduler.recorder.read(types=["daemon.alert"])) == 1

        for issue in range(5, 10):
            scheduler.recorder.emit(PipelineCompleted(issue=issue, result="success"))
        scheduler.check_degradation()
        for issue in range(10, 15):
            scheduler.recorder.emit(PipelineCompleted(issue=issue, result="failure"))
        scheduler.check_degradation()

        assert len(scheduler.recorder.read(types=["daemon.alert"])) == 2

    def test_patrol_records_actions(self, config: DrydockConfig, tmp_path: Path) -> None:
        scheduler, _, _ = _scheduler(config, FakeFeed(), tmp_path)

        scheduler.patrol()

        assert scheduler.recorder.read(types=["daemon.patrol"])
        assert scheduler.last_patrol > 0

    def test_failing_step_does_not_stop_cycle(
        self,
        config: DrydockConfig,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        scheduler, _, _ = _scheduler(config, FakeFeed(), tmp_path)
        calls: list[str] = []

        def boom() -> None:
            raise RuntimeError("poll exploded")

        monkeypatch.setattr(scheduler, "poll", boom)
        monkeypatch.setattr(scheduler, "reap", lambda: calls.append("reap"))
        monkeypatch.setattr(scheduler, "health_check", lambda: calls.append("health"))

        scheduler.run_cycle()

        assert calls == ["reap", "health"]


class TestShutdown:
    def test_shutdown_requeues_running_jobs(
        self,
        config: DrydockConfig,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        stopped: list[str] = []
        monkeypatch.setattr(
            daemon_module,
            "terminate_process",
            lambda proc, **kw: stopped.append(kw["process_name"]),
        )
        scheduler, _, _ = _scheduler(config, FakeFeed(_items(1, 2)), tmp_path)
        scheduler.poll()
        config.shutdown_flag_path.parent.mkdir(parents=True, exist_ok=True)
        config.shutdown_flag_path.touch()
        assert scheduler.shutdown_requested()

        scheduler.shutdown()

        assert sorted(stopped) == ["pipeline #1", "pipeline #2"]
        assert scheduler.store.active_count() == 0
        assert sorted(scheduler.store.queued()) == [1, 2]
        assert not config.shutdown_flag_path.exists()
        assert scheduler.recorder.read(types=["daemon.stopped"])

    def test_stop_daemon_without_running_scheduler(self, config: DrydockConfig) -> None:
        assert stop_daemon(config) is False

    def test_status_summarises_registry(self, config: DrydockConfig, tmp_path: Path) -> None:
        scheduler, _, _ = _scheduler(config, FakeFeed(_items(1, 2, 3)), tmp_path)
        scheduler.poll()

        status = daemon_status(config)

        assert status["running"] is False
        assert len(status["active"]) == 2
        assert len(status["queued"]) == 1


class TestHelpers:
    def test_exit_code_from_log(self, tmp_path: Path) -> None:
        ok = tmp_path / "ok.log"
        bad = tmp_path / "bad.log"
        ok.write_text(f"noise\n{SUCCESS_LOG_LINE}\n", encoding="utf-8")
        bad.write_text("Traceback (most recent call last):\n", encoding="utf-8")

        assert exit_code_from_log(ok) == 0
        assert exit_code_from_log(bad) == 1
        assert exit_code_from_log(tmp_path / "missing.log") == 1

    def test_child_command_puts_global_options_first(self, config: DrydockConfig, tmp_path: Path) -> None:
        ws = Workspace(name="daemon-issue-3", path=tmp_path / "ws", branch="drydock/issue-3")

        cmd = build_child_command(config, 3, ws, "fast", config_path="/etc/drydock.yaml", resume=True)

        assert cmd.index("--config") < cmd.index("pipeline")
        assert cmd[-1] == "--resume"
        assert cmd[cmd.index("--template") + 1] == "fast"
