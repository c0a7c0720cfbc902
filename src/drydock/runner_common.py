"""Subprocess plumbing shared by agent runners and the scheduler.

Covers streaming JSONL execution with an inactivity timeout and cooperative
cancellation, plus graceful-then-forced termination of child processes and
process groups.
"""

from __future__ import annotations

import errno
import logging
import math
import os
import queue
import shutil
import signal
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from drydock.schemas import AgentEvent

logger = logging.getLogger(__name__)

_MAX_CAPTURED_EVENTS = 20_000
_MAX_CAPTURED_STDOUT_LINES = 20_000
_MAX_CAPTURED_STDERR_LINES = 10_000
_ARGV_TOO_LONG_SUBSTRINGS = ("argument list too long", "command line is too long")


def process_isolation_kwargs() -> dict[str, object]:
    """Return Popen kwargs that put the child in its own session/process group.

    Signals aimed at the scheduler (Ctrl+C in a terminal) then do not reach
    the agents it supervises, and the whole child tree can be signalled at
    once through its process group.
    """
    return {"start_new_session": True}


def resolve_binary(name: str) -> str:
    """Resolve a binary name to a full executable path when possible."""
    expanded = os.path.expandvars(os.path.expanduser(str(name or "").strip()))
    if len(expanded) >= 2 and expanded[0] == expanded[-1] and expanded[0] in {"'", '"'}:
        expanded = expanded[1:-1].strip()
    if not expanded:
        return ""
    return shutil.which(expanded) or expanded


def coerce_int(value: Any) -> int:
    """Best-effort integer coercion for loosely typed CLI payloads."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    if isinstance(value, str):
        cleaned = value.strip().replace(",", "")
        if not cleaned:
            return 0
        try:
            return int(cleaned)
        except ValueError:
            try:
                return int(float(cleaned))
            except (TypeError, ValueError, OverflowError):
                return 0
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return 0


def coerce_float(value: Any) -> float:
    """Best-effort float coercion; non-finite or invalid input becomes 0.0."""
    try:
        result = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    return result if math.isfinite(result) else 0.0


def is_argv_too_long_error(exc: BaseException) -> bool:
    """Return True when *exc* says the command line exceeded OS limits."""
    if getattr(exc, "errno", None) == errno.E2BIG:
        return True
    message = str(exc or "").lower()
    return any(token in message for token in _ARGV_TOO_LONG_SUBSTRINGS)


@dataclass(slots=True)
class StreamExecutionResult:
    """Captured output and metadata from a runner subprocess."""

    events: list[AgentEvent]
    raw_lines: list[str]
    stderr_lines: list[str]
    exit_code: int
    timed_out: bool
    cancelled: bool = False

    @property
    def stderr_text(self) -> str:
        return "\n".join(self.stderr_lines).strip()


def execute_streaming_json_command(
    *,
    cmd: list[str],
    cwd: Path,
    env: dict[str, str],
    timeout_seconds: int,
    parse_stdout_line: Callable[[str], AgentEvent | None],
    process_name: str,
    stdin_text: str | None = None,
    cancel_event: threading.Event | None = None,
) -> StreamExecutionResult:
    """Run *cmd*, parsing stdout JSONL as it arrives.

    The child is killed when it produces no output for *timeout_seconds*
    (``0`` disables the timeout) or when *cancel_event* is set.
    """
    proc = subprocess.Popen(
        cmd,
        cwd=cwd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
        text=True,
        encoding="utf-8",
        errors="replace",
        env=env,
        **process_isolation_kwargs(),
    )
    if proc.stdout is None or proc.stderr is None:
        raise RuntimeError(f"{process_name} subprocess pipes are unexpectedly unavailable")

    events: deque[AgentEvent] = deque(maxlen=_MAX_CAPTURED_EVENTS)
    raw_lines: deque[str] = deque(maxlen=_MAX_CAPTURED_STDOUT_LINES)
    stderr_lines: deque[str] = deque(maxlen=_MAX_CAPTURED_STDERR_LINES)
    stream_queue: queue.Queue[tuple[str, str | object]] = queue.Queue()
    done_sentinel = object()

    def _pump_stream(stream_name: str, stream: Any) -> None:
        try:
            for line in stream:
                stream_queue.put((stream_name, line.rstrip("\n\r")))
        finally:
            stream_queue.put((stream_name, done_sentinel))

    def _pump_stdin(stream: Any, text: str) -> None:
        try:
            stream.write(text if text.endswith("\n") else text + "\n")
            stream.flush()
        except OSError:
            logger.debug("%s stdin write failed", process_name)
        finally:
            with suppress(OSError):
                stream.close()

    def _collect(stream_name: str, line: str) -> None:
        if stream_name != "stdout":
            stderr_lines.append(line)
            return
        raw_lines.append(line)
        try:
            event = parse_stdout_line(line)
        except Exception:
            logger.warning("Failed to parse %s stdout line; keeping raw output", process_name)
            return
        if event is not None:
            events.append(event)

    threads = [
        threading.Thread(target=_pump_stream, args=("stdout", proc.stdout), daemon=True),
        threading.Thread(target=_pump_stream, args=("stderr", proc.stderr), daemon=True),
    ]
    if stdin_text is not None and proc.stdin is not None:
        threads.append(threading.Thread(target=_pump_stdin, args=(proc.stdin, stdin_text), daemon=True))
    for thread in threads:
        thread.start()

    inactivity_timeout = timeout_seconds if timeout_seconds > 0 else None
    last_activity = time.monotonic()
    closed_streams: set[str] = set()
    timed_out = False
    cancelled = False

    try:
        while len(closed_streams) < 2:
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                terminate_process(proc, process_name=process_name, reason="stop request")
                break
            idle = time.monotonic() - last_activity
            if inactivity_timeout is not None and idle >= inactivity_timeout:
                timed_out = True
                terminate_process(proc, process_name=process_name, reason="inactivity timeout")
                break
            wait_seconds = 0.25
            if inactivity_timeout is not None:
                wait_seconds = max(0.05, min(0.5, inactivity_timeout - idle))
            try:
                stream_name, payload = stream_queue.get(timeout=wait_seconds)
            except queue.Empty:
                if proc.poll() is not None and not any(t.is_alive() for t in threads[:2]):
                    break
                continue
            if payload is done_sentinel:
                closed_streams.add(stream_name)
                continue
            last_activity = time.monotonic()
            if payload:
                _collect(stream_name, str(payload))

        try:
            proc.wait(timeout=5.0)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait(timeout=5.0)

        while True:
            try:
                stream_name, payload = stream_queue.get_nowait()
            except queue.Empty:
                break
            if payload is not done_sentinel and payload:
                _collect(stream_name, str(payload))

        return StreamExecutionResult(
            events=list(events),
            raw_lines=list(raw_lines),
            stderr_lines=list(stderr_lines),
            exit_code=proc.returncode if proc.returncode is not None else -1,
            timed_out=timed_out,
            cancelled=cancelled,
        )
    finally:
        for thread in threads:
            thread.join(timeout=1.0)
        for stream in (proc.stdin, proc.stdout, proc.stderr):
            if stream is not None and not stream.closed:
                with suppress(OSError):
                    stream.close()


# ---------------------------------------------------------------------------
# Termination
# ---------------------------------------------------------------------------


def _signal_group(pid: int, sig: int) -> bool:
    """Signal the process group led by *pid*, falling back to the pid alone."""
    if pid <= 0:
        return False
    try:
        os.killpg(os.getpgid(pid), sig)
        return True
    except (ProcessLookupError, PermissionError, OSError):
        pass
    try:
        os.kill(pid, sig)
        return True
    except (ProcessLookupError, PermissionError, OSError):
        return False


def terminate_process(
    proc: subprocess.Popen[Any],
    *,
    process_name: str,
    reason: str,
    grace_seconds: float = 1.5,
) -> None:
    """SIGTERM the child's process group, then SIGKILL if it outlives *grace_seconds*."""
    if proc.poll() is not None:
        return
    _signal_group(proc.pid, signal.SIGTERM)
    try:
        proc.wait(timeout=max(0.1, grace_seconds))
        return
    except subprocess.TimeoutExpired:
        logger.warning("%s did not exit after SIGTERM during %s; forcing kill.", process_name, reason)
    _signal_group(proc.pid, signal.SIGKILL)
    try:
        proc.wait(timeout=5.0)
    except subprocess.TimeoutExpired:
        logger.warning("%s ignored SIGKILL during %s.", process_name, reason)


def pid_alive(pid: int) -> bool:
    """Return True when a process with *pid* exists (non-blocking liveness check)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def terminate_pid(pid: int, *, grace_seconds: float = 5.0, poll_interval: float = 0.2) -> bool:
    """Terminate a process we may not own a Popen handle for.

    Sends SIGTERM to its process group, waits up to *grace_seconds*, then
    SIGKILLs survivors. Returns True when the process is gone afterwards.
    """
    if not pid_alive(pid):
        return True
    _signal_group(pid, signal.SIGTERM)
    deadline = time.monotonic() + max(0.0, grace_seconds)
    while time.monotonic() < deadline:
        _reap_if_child(pid)
        if not pid_alive(pid):
            return True
        time.sleep(poll_interval)
    logger.warning("PID %s survived SIGTERM for %.1fs; sending SIGKILL", pid, grace_seconds)
    _signal_group(pid, signal.SIGKILL)
    time.sleep(poll_interval)
    _reap_if_child(pid)
    return not pid_alive(pid)


def _reap_if_child(pid: int) -> None:
    with suppress(ChildProcessError, OSError):
        os.waitpid(pid, os.WNOHANG)
