"""Control tags and fatal-error signals read from agent output."""

from __future__ import annotations

import re
from collections.abc import Iterable

from drydock.schemas import RunResult

COMPLETION_TAG = "LOOP_COMPLETE"
"""Tag an agent prints when it believes the goal is fully done."""

DOD_PASS_TAG = "DOD_PASS"
"""Answer an agent gives when every definition-of-done item is satisfied."""

_COMPLETION_RE = re.compile(r"\bLOOP[\s_-]*COMPLETE\b", re.IGNORECASE)
_DOD_PASS_RE = re.compile(r"\bDOD[\s_-]*PASS\b", re.IGNORECASE)

FATAL_PATTERNS: tuple[str, ...] = (
    r"invalid api key",
    r"authentication[_ ]error",
    r"api key (?:has )?expired",
    r"rate[ _-]?limit",
    r"overloaded",
    r"billing",
    r"could not resolve host",
    r"connection refused",
    r"missing api key",
)
_FATAL_RE = re.compile("|".join(f"(?:{p})" for p in FATAL_PATTERNS), re.IGNORECASE)

_MIN_OUTPUT_LINES = 3


def contains_completion_signal(text: str) -> bool:
    """Return True when *text* carries the loop-completion tag."""
    if not text:
        return False
    return bool(_COMPLETION_RE.search(text))


def contains_dod_pass(text: str) -> bool:
    if not text:
        return False
    return bool(_DOD_PASS_RE.search(text))


def completion_instruction() -> str:
    """Return prompt guidance for signalling that the work is finished."""
    return (
        f"When the goal is fully implemented, tested and committed, output "
        f"`{COMPLETION_TAG}` on its own line. The claim is verified against the "
        "quality gates before it is accepted."
    )


def rejection_notice(failed_gates: Iterable[str]) -> str:
    """Return the notice prepended to the next prompt after a rejected completion."""
    reasons = [str(reason).strip() for reason in failed_gates if str(reason).strip()]
    lines = [
        f"Your previous `{COMPLETION_TAG}` claim was rejected because these checks failed:",
        *[f"- {reason}" for reason in reasons],
        "Fix every item above before claiming completion again.",
    ]
    return "\n".join(lines)


def match_fatal_pattern(text: str) -> str | None:
    """Return the first fatal upstream pattern found in *text*, if any."""
    if not text:
        return None
    match = _FATAL_RE.search(text)
    return match.group(0) if match else None


def detect_fatal_error(result: RunResult) -> str | None:
    """Classify an agent run as a fatal upstream failure.

    Returns a short reason when the output names an auth, rate-limit or
    network failure, or when the run exited non-zero while printing almost
    nothing (the CLI never reached the model). ``None`` otherwise.
    """
    if result.cancelled or result.timed_out:
        return None
    text = result.output_text()
    pattern = match_fatal_pattern(text)
    if pattern:
        return f"fatal upstream error: {pattern}"
    if result.exit_code != 0:
        meaningful = [line for line in "\n".join(result.raw_output + result.errors).splitlines() if line.strip()]
        if len(meaningful) < _MIN_OUTPUT_LINES:
            return f"agent exited with status {result.exit_code} and produced almost no output"
    return None
