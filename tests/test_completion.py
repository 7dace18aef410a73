from __future__ import annotations

import logging

import allure
import pytest

from auto_resume.config import CompletionSettings
from auto_resume.orchestrator.completion import (
    CompletionDetector,
    CompletionState,
    context_patterns,
    fresh_output,
)
from tests.doubles import FakeClock, PromptSession, ScriptedSession

pytestmark = [
    allure.epic("Workflow Execution"),
    allure.feature("Completion Detection"),
]


def _detector(
    session: ScriptedSession,
    clock: FakeClock,
    **overrides,
) -> CompletionDetector:
    return CompletionDetector(
        session,
        CompletionSettings(**overrides),
        clock=clock,
        sleeper=clock.sleep,
    )


def test_matching_pattern_completes_immediately(clock: FakeClock) -> None:
    session = ScriptedSession(["Working...\nCreated pull request #12"])
    session.send("/dev 12")

    result = _detector(session, clock).wait_for_completion("develop")

    assert result.state == CompletionState.COMPLETED
    assert result.matched_text is not None
    assert "pull request" in result.matched_text.lower()
    assert clock.sleeps == []


def test_failure_signal_wins_over_completion_pattern(clock: FakeClock) -> None:
    session = ScriptedSession(["Review complete\nError: connection refused"])
    session.send("/review PR-1")

    result = _detector(session, clock).wait_for_completion("review")

    assert result.state == CompletionState.FAILED
    assert result.failure_signal == "connection refused"


def test_no_match_times_out_after_phase_deadline(clock: FakeClock) -> None:
    session = ScriptedSession(["still thinking"])
    session.send("/dev 7")

    result = _detector(session, clock, poll_interval_seconds=4).wait_for_completion(
        "develop",
        timeout=10,
    )

    assert result.state == CompletionState.TIMED_OUT
    assert clock.sleeps == [4, 4, 2]
    assert "step timed out after 10s" in result.output


def test_missing_capture_assumes_completion_loudly(
    clock: FakeClock,
    caplog: pytest.LogCaptureFixture,
) -> None:
    session = ScriptedSession(capture_unavailable=True)

    with caplog.at_level(logging.WARNING):
        result = _detector(session, clock).wait_for_completion("clear")

    assert result.state == CompletionState.COMPLETED
    assert result.assumed
    assert result.elapsed_seconds == pytest.approx(30)
    assert "assuming completion" in caplog.text


def test_missing_capture_times_out_when_assumption_disabled(clock: FakeClock) -> None:
    session = ScriptedSession(supports_capture=False)

    result = _detector(session, clock, assume_completion_on_timeout=False).wait_for_completion(
        "clear",
    )

    assert result.state == CompletionState.TIMED_OUT
    assert not result.assumed


def test_dead_session_fails_fast(clock: FakeClock) -> None:
    session = ScriptedSession(alive=False)

    result = _detector(session, clock).wait_for_completion("generic")

    assert result.state == CompletionState.FAILED
    assert result.failure_signal == "session not found"


def test_stop_request_interrupts_the_wait(clock: FakeClock) -> None:
    session = ScriptedSession()
    detector = CompletionDetector(
        session,
        CompletionSettings(),
        clock=clock,
        sleeper=clock.sleep,
        stop_requested=lambda: clock.now > 1_010,
    )

    result = detector.wait_for_completion("develop")

    assert result.state == CompletionState.INTERRUPTED
    assert clock.sleeps == [5, 5, 5]


def test_output_from_before_the_send_is_ignored(clock: FakeClock) -> None:
    session = ScriptedSession(["Previous task complete", "thinking"])
    session.send("/first")
    baseline = session.capture_output()
    session.send("/second")

    result = _detector(session, clock, poll_interval_seconds=60).wait_for_completion(
        "generic",
        timeout=60,
        baseline=baseline,
    )

    assert result.state == CompletionState.TIMED_OUT


def test_fresh_output_survives_repeated_identical_lines() -> None:
    baseline = "Error: connection refused"
    current = "Error: connection refused\nError: connection refused"

    assert fresh_output(baseline, current) == "Error: connection refused"
    assert fresh_output("", "anything") == "anything"
    assert fresh_output("a\nb", "b\nc\nd") == "c\nd"


def test_fresh_output_skips_the_rewritten_prompt_line() -> None:
    baseline = "Usage limit reached. Try again at 3pm.\n> "
    current = "Usage limit reached. Try again at 3pm.\n> /dev 42\nworking on it\n> "

    assert fresh_output(baseline, current) == "working on it\n>"


def test_fresh_output_follows_a_partly_scrolled_anchor() -> None:
    baseline = "one\ntwo\nthree\n> "
    current = "three\n> /dev 1\nfour"

    assert fresh_output(baseline, current) == "four"


def test_fresh_output_never_returns_old_lines_when_anchor_was_redrawn() -> None:
    baseline = "Error: connection refused   \n\u2502 status bar\n> "
    current = "Error: connection refused\n\u2503 status bar\n> /dev 3\nStep done"

    assert fresh_output(baseline, current) == "Step done"


def test_stale_usage_limit_message_does_not_fail_the_retry(clock: FakeClock) -> None:
    session = PromptSession(["Claude usage limit reached. Try again at 3pm"])
    session.send("/dev 42")
    baseline = session.capture_output()
    session.outputs.append("Implemented issue 42 and created pull request #9")
    session.send("/dev 42")

    result = _detector(session, clock).wait_for_completion("develop", baseline=baseline)

    assert result.state == CompletionState.COMPLETED
    assert result.failure_signal is None
    assert "usage limit" not in result.output.lower()


def test_context_patterns_follow_the_phase() -> None:
    context = {"issue_id": "42", "pr_ref": "PR-42"}

    assert context_patterns("develop", context) == [r"issue.*42.*complete", r"42.*implemented"]
    assert context_patterns("review", context)[0].startswith("PR\\-42")
    assert context_patterns("clear", context) == []
    assert context_patterns("develop", None) == []


def test_context_pattern_completes_a_step(clock: FakeClock) -> None:
    session = ScriptedSession(["Issue 42 is now closed upstream"])
    session.send("/dev merge-pr 42")
    detector = _detector(
        session,
        clock,
        phase_patterns={"merge": "never-matches", "generic": "never-matches"},
    )

    result = detector.wait_for_completion("merge", {"issue_id": "42"})

    assert result.state == CompletionState.COMPLETED
