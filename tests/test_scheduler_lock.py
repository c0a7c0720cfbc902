"""Tests for the scheduler singleton lock."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from drydock.errors import LockError
from drydock.scheduler.lock import DaemonLock, read_pid, running_pid

pytestmark = pytest.mark.unit


def test_acquire_writes_pid_and_release_removes_it(tmp_path: Path) -> None:
    lock = DaemonLock(tmp_path / "daemon.lock", tmp_path / "daemon.pid")

    with lock:
        assert lock.held
        assert read_pid(tmp_path / "daemon.pid") == os.getpid()

    assert not lock.held
    assert not (tmp_path / "daemon.pid").exists()


def test_second_instance_is_refused(tmp_path: Path) -> None:
    first = DaemonLock(tmp_path / "daemon.lock", tmp_path / "daemon.pid")
    second = DaemonLock(tmp_path / "daemon.lock", tmp_path / "daemon.pid")
    first.acquire()
    try:
        with pytest.raises(LockError, match="Another scheduler is running"):
            second.acquire()
    finally:
        first.release()


def test_lock_file_survives_release_for_the_next_instance(tmp_path: Path) -> None:
    lock_path = tmp_path / "daemon.lock"
    first = DaemonLock(lock_path, tmp_path / "daemon.pid")
    first.acquire()
    first.release()

    assert lock_path.exists()
    with DaemonLock(lock_path, tmp_path / "daemon.pid") as second:
        assert second.held
        assert read_pid(tmp_path / "daemon.pid") == os.getpid()
    assert list(tmp_path.glob("*.tmp")) == []


def test_stale_pid_record_is_replaced(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    pid_path = tmp_path / "daemon.pid"
    pid_path.write_text("999999\n", encoding="utf-8")
    monkeypatch.setattr("drydock.scheduler.lock.pid_alive", lambda pid: pid == os.getpid())

    with DaemonLock(tmp_path / "daemon.lock", pid_path):
        assert read_pid(pid_path) == os.getpid()


def test_running_pid_ignores_dead_process(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    pid_path = tmp_path / "daemon.pid"
    pid_path.write_text("4242\n", encoding="utf-8")
    monkeypatch.setattr("drydock.scheduler.lock.pid_alive", lambda _pid: False)

    assert running_pid(pid_path) is None


def test_read_pid_handles_garbage(tmp_path: Path) -> None:
    pid_path = tmp_path / "daemon.pid"
    pid_path.write_text("not-a-pid", encoding="utf-8")

    assert read_pid(pid_path) is None
    assert read_pid(tmp_path / "missing.pid") is None
