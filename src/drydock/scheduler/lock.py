"""Singleton enforcement for the scheduler process."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import IO

from drydock.errors import LockError
from drydock.file_io import atomic_write_text
from drydock.runner_common import pid_alive

logger = logging.getLogger(__name__)

try:
    import fcntl
except ImportError:  # Windows
    fcntl = None  # type: ignore[assignment]


def read_pid(path: Path) -> int | None:
    try:
        raw = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return int(raw) if raw.isdigit() else None


class DaemonLock:
    """Exclusive scheduler lock: ``flock`` on the lock file plus a PID record.

    Where ``flock`` is unavailable the PID record alone decides: a record
    naming a live process blocks start-up, a stale one is replaced.

    Parameters
    ----------
    lock_path:
        File held with an exclusive ``flock`` for the scheduler's lifetime.
    pid_path:
        File holding the scheduler's PID, read by ``daemon stop/status``.
    """

    def __init__(self, lock_path: str | Path, pid_path: str | Path) -> None:
        self.lock_path = Path(lock_path)
        self.pid_path = Path(pid_path)
        self._handle: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        """Take the lock or raise :class:`LockError` naming the running instance."""
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        existing = read_pid(self.pid_path)
        if fcntl is not None:
            handle = self.lock_path.open("a+", encoding="utf-8")
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError as exc:
                handle.close()
                raise LockError(f"Another scheduler is running (PID {existing or 'unknown'})") from exc
            self._handle = handle
        elif existing and existing != os.getpid() and pid_alive(existing):
            raise LockError(f"Another scheduler is running (PID {existing})")

        if existing and existing != os.getpid() and not pid_alive(existing):
            logger.warning("Removing stale PID record for %s", existing)
        atomic_write_text(self.pid_path, f"{os.getpid()}\n")
        if fcntl is None:
            self._handle = self.pid_path.open("r", encoding="utf-8")
        logger.debug("Acquired scheduler lock %s", self.lock_path)

    def release(self) -> None:
        if self._handle is None:
            return
        if fcntl is not None:
            try:
                fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
            except OSError as exc:
                logger.debug("Could not unlock %s: %s", self.lock_path, exc)
        self._handle.close()
        self._handle = None
        if read_pid(self.pid_path) == os.getpid():
            self.pid_path.unlink(missing_ok=True)

    def __enter__(self) -> DaemonLock:
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


def running_pid(pid_path: str | Path) -> int | None:
    """PID of the live scheduler recorded in *pid_path*, or ``None``."""
    pid = read_pid(Path(pid_path))
    if pid and pid_alive(pid):
        return pid
    return None
