"""Text and JSON I/O helpers with per-path locking and atomic replacement.

Every durable document drydock owns (job registry, checkpoints, vitals
history, incidents) is written through :func:`atomic_write_text` so that a
crash mid-write leaves either the previous or the new content on disk, never
a truncated file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Any

try:
    import fcntl
except ImportError:  # Windows
    fcntl = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

_ATOMIC_REPLACE_MAX_RETRIES = 8
_ATOMIC_REPLACE_RETRY_SECONDS = 0.01

_PATH_LOCKS_GUARD = threading.Lock()
_PATH_LOCKS: dict[str, threading.RLock] = {}
_FLOCK_DEPTH: dict[str, int] = {}

def _path_lock_key(path: Path) -> str:
    return str(path.resolve())


def _path_lock(path: Path) -> threading.RLock:
    key = _path_lock_key(path)
    with _PATH_LOCKS_GUARD:
        lock = _PATH_LOCKS.get(key)
        if lock is None:
            lock = threading.RLock()
            _PATH_LOCKS[key] = lock
    return lock


@contextmanager
def locked_path(path: Path) -> Iterator[None]:
    """Serialize file access within this process using a per-path lock."""
    lock = _path_lock(path)
    with lock:
        yield


@contextmanager
def interprocess_locked_path(path: Path) -> Iterator[None]:
    """Serialize access to *path* across processes as well as threads.

    Holds :func:`locked_path` plus an exclusive ``flock`` on the sidecar
    ``<name>.lock``. Re-entrant for the thread that already holds it.
    Without ``fcntl`` (Windows) only the in-process lock applies.
    """
    key = _path_lock_key(path)
    with locked_path(path):
        depth = _FLOCK_DEPTH.get(key, 0)
        if depth or fcntl is None:
            _FLOCK_DEPTH[key] = depth + 1
            try:
                yield
            finally:
                _FLOCK_DEPTH[key] = depth
            return
        sidecar = path.with_name(path.name + ".lock")
        sidecar.parent.mkdir(parents=True, exist_ok=True)
        with sidecar.open("a+", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            _FLOCK_DEPTH[key] = 1
            try:
                yield
            finally:
                _FLOCK_DEPTH[key] = 0
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def _replace_file_with_retry(src: Path, dst: Path) -> None:
    last_error: OSError | None = None
    for attempt in range(_ATOMIC_REPLACE_MAX_RETRIES):
        try:
            src.replace(dst)
            return
        except PermissionError as exc:
            last_error = exc
        except OSError as exc:
            if exc.errno != 13:
                raise
            last_error = exc
        if attempt < _ATOMIC_REPLACE_MAX_RETRIES - 1:
            time.sleep(_ATOMIC_REPLACE_RETRY_SECONDS * (attempt + 1))
    if last_error is not None:
        raise last_error


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write *content* to a temp file beside *path*, fsync it, then rename over *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        with locked_path(path):
            _replace_file_with_retry(tmp_path, path)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


def atomic_write_json(path: Path, payload: Any, *, indent: int = 2) -> None:
    """Serialize *payload* as JSON and write it atomically."""
    atomic_write_text(path, json.dumps(payload, indent=indent, ensure_ascii=False) + "\n")


def read_json(path: Path, default: Any = None) -> Any:
    """Return parsed JSON from *path*, or *default* when missing, empty or corrupt."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    except OSError as exc:
        logger.warning("Could not read %s: %s", path, exc)
        return default
    if not raw.strip():
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring unparseable JSON in %s: %s", path, exc)
        return default


def append_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Append text under a per-path lock."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with locked_path(path), path.open("a", encoding=encoding) as handle:
        handle.write(content)


def read_tail(path: Path, max_lines: int = 100) -> list[str]:
    """Return up to the last *max_lines* lines of a text file (empty when missing)."""
    if not path.is_file():
        return []
    try:
        with path.open("rb") as handle:
            handle.seek(0, os.SEEK_END)
            size = handle.tell()
            chunk = min(size, max(4096, max_lines * 400))
            handle.seek(size - chunk)
            data = handle.read()
    except OSError as exc:
        logger.warning("Could not read tail of %s: %s", path, exc)
        return []
    text = data.decode("utf-8", errors="replace")
    return text.splitlines()[-max_lines:]


def cleanup_stale_temp_files(directory: Path, *, max_age_seconds: float = 3600.0) -> int:
    """Remove ``*.tmp`` leftovers from interrupted atomic writes; return the count."""
    if not directory.is_dir():
        return 0
    removed = 0
    cutoff = time.time() - max_age_seconds
    for candidate in directory.glob("*.tmp"):
        try:
            if candidate.stat().st_mtime < cutoff:
                candidate.unlink()
                removed += 1
        except OSError:
            continue
    return removed
