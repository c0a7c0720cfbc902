"""Interface to the Claude Code CLI (``claude``)."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any

from drydock.agent_runner import AgentRunner, register_agent
from drydock.runner_common import (
    coerce_float,
    coerce_int,
    execute_streaming_json_command,
    is_argv_too_long_error,
    resolve_binary,
)
from drydock.schemas import AgentEvent, EventKind, RunResult, UsageInfo

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT = 1800  # 30 minutes of inactivity
_PROMPT_ARG_LIMIT = 60000


def prompt_fingerprint(prompt: str) -> tuple[int, str]:
    """Return ``(length, short sha256)`` so prompts can be logged without their text."""
    text = prompt or ""
    return len(text), hashlib.sha256(text.encode("utf-8", errors="replace")).hexdigest()[:12]


class ClaudeCodeRunner(AgentRunner):
    """Spawn ``claude -p`` and parse its stream-json output.

    Claude Code's non-interactive mode emits one JSON object per line with
    ``--output-format stream-json``; the final ``result`` object carries the
    summary text, token usage and the session's ``total_cost_usd``.

    Parameters
    ----------
    claude_binary:
        Path or name of the Claude Code CLI binary.
    timeout:
        Maximum seconds without stdout/stderr activity before the child
        process is killed. ``0`` disables the timeout.
    env_overrides:
        Extra environment variables forwarded to the child process.
    max_turns:
        Maximum agent turns (``--max-turns``).  ``0`` means unlimited.
    model:
        Override the model Claude Code uses (``--model``).  Leave blank
        for the default.
    """

    name = "Claude Code"

    def __init__(
        self,
        claude_binary: str = "claude",
        timeout: int = DEFAULT_TIMEOUT,
        env_overrides: dict[str, str] | None = None,
        max_turns: int = 0,
        model: str = "",
    ) -> None:
        self.claude_binary = claude_binary
        self.timeout = max(0, coerce_int(timeout))
        self.env_overrides = env_overrides or {}
        self.max_turns = max(0, coerce_int(max_turns))
        self.model = (model or "").strip()
        self._cancel_event = threading.Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        repo_path: str | Path,
        prompt: str,
        *,
        full_auto: bool = False,
        extra_args: list[str] | None = None,
    ) -> RunResult:
        """Execute a single Claude Code invocation and return results."""
        repo_path = Path(repo_path).resolve()
        if not repo_path.is_dir():
            return RunResult(
                success=False,
                exit_code=-1,
                errors=[f"repo_path does not exist: {repo_path}"],
            )
        self._cancel_event.clear()

        use_stdin = len(prompt) >= _PROMPT_ARG_LIMIT
        length, digest = prompt_fingerprint(prompt)
        logger.info(
            "Running Claude Code CLI (cwd=%s, prompt_transport=%s, prompt_len=%s, prompt_sha256=%s)",
            repo_path,
            "stdin" if use_stdin else "argv",
            length,
            digest,
        )

        start = time.monotonic()
        try:
            result = self._execute_prompt(repo_path, prompt, use_stdin, full_auto, extra_args)
        except OSError as exc:
            if use_stdin or not is_argv_too_long_error(exc):
                return RunResult(
                    success=False,
                    exit_code=-1,
                    errors=[f"Failed to execute claude: {exc}"],
                    duration_seconds=time.monotonic() - start,
                )
            logger.warning("Prompt exceeded argv limits; retrying Claude Code via stdin")
            try:
                result = self._execute_prompt(repo_path, prompt, True, full_auto, extra_args)
            except OSError as retry_exc:
                return RunResult(
                    success=False,
                    exit_code=-1,
                    errors=[f"Failed to execute claude: {retry_exc}"],
                    duration_seconds=time.monotonic() - start,
                )
        result.duration_seconds = time.monotonic() - start
        return result

    def stop(self) -> None:
        """Request cancellation of the active Claude subprocess, if any."""
        self._cancel_event.set()

    # ------------------------------------------------------------------
    # Command building
    # ------------------------------------------------------------------

    def _build_command(
        self,
        prompt: str | None,
        *,
        full_auto: bool,
        extra_args: list[str] | None,
    ) -> list[str]:
        cmd = [resolve_binary(self.claude_binary), "-p"]
        if prompt is not None:
            cmd.append(prompt)
        cmd.extend(["--output-format", "stream-json", "--verbose"])

        if full_auto:
            cmd.append("--dangerously-skip-permissions")

        if self.max_turns > 0:
            cmd.extend(["--max-turns", str(self.max_turns)])

        has_model_override = any(
            (arg or "").strip().lower() in {"--model", "-m"}
            or (arg or "").strip().lower().startswith("--model=")
            for arg in extra_args or []
        )
        if self.model and not has_model_override:
            cmd.extend(["--model", self.model])

        if extra_args:
            cmd.extend(extra_args)
        return cmd

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute_prompt(
        self,
        cwd: Path,
        prompt: str,
        use_stdin: bool,
        full_auto: bool,
        extra_args: list[str] | None,
    ) -> RunResult:
        cmd = self._build_command(
            None if use_stdin else prompt,
            full_auto=full_auto,
            extra_args=extra_args,
        )
        execution = execute_streaming_json_command(
            cmd=cmd,
            cwd=cwd,
            env={**os.environ, **self.env_overrides},
            timeout_seconds=self.timeout,
            parse_stdout_line=self._parse_line,
            process_name="Claude Code",
            stdin_text=prompt if use_stdin else None,
            cancel_event=self._cancel_event,
        )
        stderr_text = execution.stderr_text
        stderr_errors = [stderr_text] if stderr_text else []

        if execution.cancelled:
            return RunResult(
                success=False,
                exit_code=-1,
                events=execution.events,
                raw_output=execution.raw_lines,
                errors=["Execution cancelled by stop request", *stderr_errors],
                cancelled=True,
            )

        if execution.timed_out:
            return RunResult(
                success=False,
                exit_code=-1,
                events=execution.events,
                raw_output=execution.raw_lines,
                errors=[
                    f"Claude Code process timed out after {self.timeout}s with no output activity",
                    *stderr_errors,
                ],
                timed_out=True,
            )

        return self._aggregate(
            execution.events,
            execution.exit_code,
            stderr_text,
            execution.raw_lines,
        )

    @staticmethod
    def _parse_line(line: str) -> AgentEvent | None:
        """Parse one line of Claude Code stream-json output.

        Lines look like::

            {"type": "system", ...}
            {"type": "assistant", "message": {...}, "session_id": "..."}
            {"type": "result", "result": "...", "total_cost_usd": 0.12}
        """
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Non-JSON line from claude: %s", line[:200])
            return None
        if not isinstance(data, dict):
            return None

        kind = _classify_claude_event(data)
        return AgentEvent(kind=kind, raw=data, text=_extract_claude_text(data, kind))

    @staticmethod
    def _aggregate(
        events: list[AgentEvent],
        exit_code: int,
        stderr: str,
        raw_lines: list[str],
    ) -> RunResult:
        """Combine parsed events into a single RunResult."""
        errors: list[str] = [stderr] if stderr else []
        file_changes: list[dict[str, Any]] = []
        command_execs: list[dict[str, Any]] = []
        usage = UsageInfo()
        final_message = ""

        for ev in events:
            if ev.kind == EventKind.ERROR:
                errors.append(ev.text or json.dumps(ev.raw))
            elif ev.kind == EventKind.FILE_CHANGE:
                file_changes.append(ev.raw)
            elif ev.kind == EventKind.COMMAND_EXEC:
                command_execs.append(ev.raw)
            elif ev.kind == EventKind.TURN_COMPLETED:
                usage = _extract_claude_usage(ev.raw)
                if ev.raw.get("is_error") and ev.text:
                    errors.append(ev.text)
            if ev.kind in {EventKind.AGENT_MESSAGE, EventKind.TURN_COMPLETED} and ev.text:
                final_message = ev.text

        if not final_message and raw_lines:
            for line in reversed(raw_lines):
                try:
                    json.loads(line)
                except json.JSONDecodeError:
                    final_message = line
                    break

        if exit_code != 0 and not errors:
            inferred = _infer_claude_error(events)
            if inferred:
                errors.append(inferred)
            elif final_message:
                errors.append(final_message[:500])
            else:
                errors.append(
                    f"Claude Code exited with status {exit_code} but produced no explicit error output"
                )

        return RunResult(
            success=exit_code == 0,
            exit_code=exit_code,
            final_message=final_message,
            events=events,
            file_changes=file_changes,
            command_executions=command_execs,
            usage=usage,
            errors=errors,
            raw_output=raw_lines,
        )


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------

_FILE_TOOL_HINTS = ("write", "edit", "file", "create")
_COMMAND_TOOL_HINTS = ("bash", "command", "exec", "terminal")


def _classify_claude_event(data: dict[str, Any]) -> EventKind:
    """Map a raw Claude Code JSON event to an :class:`EventKind`."""
    etype = str(data.get("type") or "").lower().strip()

    if etype == "result":
        return EventKind.TURN_COMPLETED
    if etype == "system":
        return EventKind.UNKNOWN
    if etype == "error" or (etype not in {"assistant", "user"} and "error" in data):
        return EventKind.ERROR
    if etype != "assistant":
        return EventKind.UNKNOWN

    message = data.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    for block in content if isinstance(content, list) else []:
        if not isinstance(block, dict) or block.get("type") != "tool_use":
            continue
        tool_name = str(block.get("name") or "").lower()
        if any(hint in tool_name for hint in _FILE_TOOL_HINTS):
            return EventKind.FILE_CHANGE
        if any(hint in tool_name for hint in _COMMAND_TOOL_HINTS):
            return EventKind.COMMAND_EXEC
    return EventKind.AGENT_MESSAGE


def _extract_claude_text(data: dict[str, Any], kind: EventKind) -> str | None:
    """Pull human-readable text from a Claude Code event."""
    etype = data.get("type")
    if etype == "result":
        result = data.get("result")
        if isinstance(result, str):
            return result
        if isinstance(result, dict):
            return result.get("text") or result.get("content") or None
        return None

    if etype == "assistant":
        message = data.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str):
            return content
        texts: list[str] = []
        for block in content if isinstance(content, list) else []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text":
                texts.append(str(block.get("text") or ""))
            elif block.get("type") == "tool_use":
                tool_input = block.get("input")
                if not isinstance(tool_input, dict):
                    continue
                target = tool_input.get("file_path") or tool_input.get("path") or ""
                command = str(tool_input.get("command") or "")
                if target:
                    texts.append(f"[{block.get('name', 'tool')}: {target}]")
                elif command:
                    texts.append(f"[{block.get('name', 'tool')}: {command[:100]}]")
        return "\n".join(texts).strip() or None

    if kind == EventKind.ERROR:
        for key in ("error", "message", "text"):
            value = data.get(key)
            if isinstance(value, str):
                return value
            if isinstance(value, dict):
                return value.get("message") or value.get("text") or None
    return None


def _extract_claude_usage(data: dict[str, Any]) -> UsageInfo:
    """Extract token usage and session cost from a Claude Code result event."""
    usage_raw = data.get("usage")
    if not isinstance(usage_raw, dict):
        result = data.get("result")
        nested = result.get("usage") if isinstance(result, dict) else None
        usage_raw = nested if isinstance(nested, dict) else {}

    input_tokens = max(0, coerce_int(usage_raw.get("input_tokens")))
    output_tokens = max(0, coerce_int(usage_raw.get("output_tokens")))
    cache_read = max(0, coerce_int(usage_raw.get("cache_read_input_tokens")))
    cache_creation = max(0, coerce_int(usage_raw.get("cache_creation_input_tokens")))

    total_tokens = max(0, coerce_int(usage_raw.get("total_tokens")))
    if total_tokens <= 0:
        total_tokens = input_tokens + output_tokens + cache_read + cache_creation

    cost = data.get("total_cost_usd", data.get("cost_usd"))
    return UsageInfo(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total_tokens,
        cost_usd=max(0.0, coerce_float(cost)),
        model=data.get("model") or usage_raw.get("model"),
    )


def _infer_claude_error(events: list[AgentEvent]) -> str | None:
    """Extract a useful error string from Claude stream-json events."""
    for ev in reversed(events):
        candidates: list[Any] = [ev.raw.get(key) for key in ("error", "message", "reason", "detail")]
        result = ev.raw.get("result")
        if isinstance(result, dict):
            candidates.append(result.get("error"))
        for value in candidates:
            if isinstance(value, dict):
                value = value.get("message") or value.get("text") or value.get("detail")
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


register_agent("claude_code", ClaudeCodeRunner)
