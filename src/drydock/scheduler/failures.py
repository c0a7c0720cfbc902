"""Failure classification and retry policy for finished jobs."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from drydock.pipeline.checkpoint import Checkpoint

logger = logging.getLogger(__name__)


class FailureClass(str, Enum):
    AUTH_ERROR = "auth_error"
    API_ERROR = "api_error"
    INVALID_ISSUE = "invalid_issue"
    CONTEXT_EXHAUSTION = "context_exhaustion"
    BUILD_FAILURE = "build_failure"
    UNKNOWN = "unknown"


_AUTH_RE = re.compile(
    r"not logged in|unauthorized|auth.*fail|401 |invalid.*token|api key.*invalid|authentication required",
    re.IGNORECASE,
)
_API_RE = re.compile(
    r"rate limit|429 |503 |502 |overloaded|timeout|ETIMEDOUT|ECONNRESET|socket hang up|service unavailable",
    re.IGNORECASE,
)
_INVALID_RE = re.compile(
    r"issue not found|404 |no body|could not resolve|issue.*does not exist",
    re.IGNORECASE,
)
_BUILD_RE = re.compile(
    r"test.*fail|FAIL|build.*error|compile.*error|lint.*fail|exit code [1-9]|circuit_breaker|max_iterations",
    re.IGNORECASE,
)

MAX_RETRIES: dict[FailureClass, int] = {
    FailureClass.AUTH_ERROR: 0,
    FailureClass.INVALID_ISSUE: 0,
    FailureClass.API_ERROR: 4,
    FailureClass.CONTEXT_EXHAUSTION: 2,
    FailureClass.BUILD_FAILURE: 2,
    FailureClass.UNKNOWN: 2,
}

RETRY_BASE_SECONDS = 30
API_RETRY_BASE_SECONDS = 300
RETRY_CAP_SECONDS = 3600

AUTO_PAUSE_BASE_MINUTES = 5
AUTO_PAUSE_CAP_MINUTES = 480


def classify_failure(log_tail: Iterable[str], *, checkpoint: Checkpoint | None = None) -> FailureClass:
    """Classify a failed job from the tail of its log.

    Auth, API and invalid-issue patterns are checked first. A build
    checkpoint showing iterations without passing tests means the agent ran
    out of road (context exhaustion) rather than hitting a plain build error.
    """
    text = "\n".join(log_tail)
    if _AUTH_RE.search(text):
        return FailureClass.AUTH_ERROR
    if _API_RE.search(text):
        return FailureClass.API_ERROR
    if _INVALID_RE.search(text):
        return FailureClass.INVALID_ISSUE
    if checkpoint is not None and checkpoint.iteration > 0 and not checkpoint.tests_passing:
        return FailureClass.CONTEXT_EXHAUSTION
    if _BUILD_RE.search(text):
        return FailureClass.BUILD_FAILURE
    return FailureClass.UNKNOWN


def retry_delay(failure_class: FailureClass, attempt: int) -> int:
    """Backoff before retry *attempt* (1-based): ``base * 2^(attempt-1)``, capped at one hour."""
    base = API_RETRY_BASE_SECONDS if failure_class == FailureClass.API_ERROR else RETRY_BASE_SECONDS
    return min(RETRY_CAP_SECONDS, base * (2 ** max(0, attempt - 1)))


@dataclass(frozen=True)
class RetryDecision:
    failure_class: FailureClass
    retry: bool
    attempt: int = 0
    max_retries: int = 0
    delay_seconds: int = 0


def decide_retry(failure_class: FailureClass, retry_count: int) -> RetryDecision:
    """Decide whether a job that has already been retried *retry_count* times runs again."""
    limit = MAX_RETRIES.get(failure_class, MAX_RETRIES[FailureClass.UNKNOWN])
    if retry_count >= limit:
        return RetryDecision(failure_class, retry=False, attempt=retry_count, max_retries=limit)
    attempt = retry_count + 1
    return RetryDecision(
        failure_class,
        retry=True,
        attempt=attempt,
        max_retries=limit,
        delay_seconds=retry_delay(failure_class, attempt),
    )


def auto_pause_minutes(consecutive: int, *, after: int = 3) -> int:
    """Pause length after *consecutive* same-class failures; 0 below the threshold."""
    if consecutive < after:
        return 0
    return min(AUTO_PAUSE_CAP_MINUTES, AUTO_PAUSE_BASE_MINUTES * (2 ** (consecutive - after)))
