"""Tests for completion tags and fatal-error detection."""

from __future__ import annotations

import pytest

from drydock.agent_signals import (
    COMPLETION_TAG,
    completion_instruction,
    contains_completion_signal,
    contains_dod_pass,
    detect_fatal_error,
    match_fatal_pattern,
    rejection_notice,
)
from drydock.schemas import RunResult

pytestmark = pytest.mark.unit


class TestCompletionSignal:
    @pytest.mark.parametrize("text", ["LOOP_COMPLETE", "done\nloop complete\n", "Loop-Complete."])
    def test_variants_match(self, text: str) -> None:
        assert contains_completion_signal(text)

    def test_absent(self) -> None:
        assert not contains_completion_signal("")
        assert not contains_completion_signal("the loop is not complete yet")

    def test_dod_pass(self) -> None:
        assert contains_dod_pass("All checked.\nDOD_PASS")
        assert not contains_dod_pass("DOD_FAIL: docs missing")

    def test_instruction_names_tag(self) -> None:
        assert COMPLETION_TAG in completion_instruction()


def test_rejection_notice_lists_reasons() -> None:
    notice = rejection_notice(["tests failing (failed)", "  ", "2 TODO markers"])

    assert notice.splitlines() == [
        "Your previous `LOOP_COMPLETE` claim was rejected because these checks failed:",
        "- tests failing (failed)",
        "- 2 TODO markers",
        "Fix every item above before claiming completion again.",
    ]


class TestFatalErrors:
    @pytest.mark.parametrize(
        "text",
        ["Invalid API key provided", "429: rate-limit reached", "Could not resolve host: api", "billing issue"],
    )
    def test_patterns(self, text: str) -> None:
        assert match_fatal_pattern(text) is not None

    def test_fatal_text_in_output(self) -> None:
        result = RunResult(success=False, exit_code=1, errors=["authentication_error: bad token"])

        assert detect_fatal_error(result) == "fatal upstream error: authentication_error"

    def test_silent_nonzero_exit_is_fatal(self) -> None:
        result = RunResult(success=False, exit_code=127, raw_output=["claude: not found"])

        assert "almost no output" in detect_fatal_error(result)

    def test_noisy_nonzero_exit_is_not_fatal(self) -> None:
        result = RunResult(success=False, exit_code=1, raw_output=["a", "b", "c", "d"])

        assert detect_fatal_error(result) is None

    def test_timeouts_and_cancellation_are_not_fatal(self) -> None:
        assert detect_fatal_error(RunResult(exit_code=-1, timed_out=True)) is None
        assert detect_fatal_error(RunResult(exit_code=-1, cancelled=True)) is None

    def test_clean_run(self) -> None:
        assert detect_fatal_error(RunResult(success=True, exit_code=0, final_message="ok")) is None
