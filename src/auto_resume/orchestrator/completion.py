"""Detect when the external session has finished a workflow step."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum

from auto_resume.config import CompletionSettings
from auto_resume.orchestrator.backend.base import (
    CaptureUnavailableError,
    SessionBackend,
    SessionError,
)
from auto_resume.orchestrator.failure_classifier import detect_failure_signal

logger = logging.getLogger(__name__)

_ANCHOR_LINES = 5


class CompletionState(str, Enum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


@dataclass(slots=True)
class CompletionResult:
    """Outcome of waiting for one step."""

    state: CompletionState
    elapsed_seconds: float
    matched_text: str | None = None
    assumed: bool = False
    output: str = ""
    failure_signal: str | None = None

    @property
    def completed(self) -> bool:
        return self.state == CompletionState.COMPLETED


def context_patterns(phase: str, context: Mapping[str, str] | None) -> list[str]:
    """Extra patterns tied to the issue or PR the step works on."""

    if not context:
        return []
    issue_id = context.get("issue_id")
    pr_ref = context.get("pr_ref")
    if phase == "develop" and issue_id:
        issue = re.escape(issue_id)
        return [rf"issue.*{issue}.*complete", rf"{issue}.*implemented"]
    if phase == "review" and pr_ref:
        ref = re.escape(pr_ref)
        return [rf"{ref}.*review", rf"reviewed.*{ref}"]
    if phase == "merge" and issue_id:
        issue = re.escape(issue_id)
        return [rf"issue.*{issue}.*closed", rf"closed.*{issue}"]
    return []


def fresh_output(baseline: str, current: str) -> str:
    """Return the part of `current` that appeared after `baseline` was captured.

    The last baseline line is usually the prompt, and typing the command
    rewrites it, so it is left out of the anchor. The lines above it are
    located inside the current capture and everything after them is new,
    minus the re-used prompt line. Scrolling only moves old lines up, which
    bounds where the anchor can be found; an anchor that has partly scrolled
    off is matched by its surviving tail.
    """

    base_lines = _content_lines(baseline)
    if not base_lines:
        return current
    prompt = base_lines[-1]
    body = base_lines[:-1]
    anchor = body[-_ANCHOR_LINES:]
    lines = _content_lines(current)
    size = len(anchor)
    for start in range(min(len(lines), len(body)) - size, -1, -1):
        if lines[start : start + size] == anchor:
            return _after_prompt(lines[start + size :], prompt)
    for kept in range(size - 1, 0, -1):
        if lines[:kept] == anchor[-kept:]:
            return _after_prompt(lines[kept:], prompt)
    if lines and lines[0].startswith(prompt):
        return "\n".join(lines[1:])
    if len(lines) > len(base_lines):
        return _after_prompt(lines[len(body) :], prompt)
    # Pane cleared or scrolled past everything in the baseline.
    return "\n".join(lines)


def _content_lines(text: str) -> list[str]:
    lines = [line.rstrip() for line in text.splitlines()]
    while lines and not lines[-1]:
        lines.pop()
    return lines


def _after_prompt(lines: list[str], prompt: str) -> str:
    if lines and lines[0].startswith(prompt):
        lines = lines[1:]
    return "\n".join(lines)


class CompletionDetector:
    """Poll captured session output for phase completion patterns."""

    def __init__(
        self,
        session: SessionBackend,
        settings: CompletionSettings,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleeper: Callable[[float], None] = time.sleep,
        stop_requested: Callable[[], bool] = lambda: False,
    ) -> None:
        self.session = session
        self.settings = settings
        self._clock = clock
        self._sleep = sleeper
        self._stop_requested = stop_requested

    def compile_patterns(
        self,
        phase: str,
        context: Mapping[str, str] | None = None,
    ) -> list[re.Pattern[str]]:
        sources = [self.settings.pattern_for(phase), *context_patterns(phase, context)]
        return [re.compile(source, re.IGNORECASE) for source in sources]

    def wait_for_completion(  # noqa: C901, PLR0911
        self,
        phase: str,
        context: Mapping[str, str] | None = None,
        timeout: float | None = None,
        *,
        baseline: str = "",
    ) -> CompletionResult:
        """Block until the step completes, fails, times out or a stop is requested."""

        limit = timeout if timeout is not None else self.settings.timeout_for(phase)
        patterns = self.compile_patterns(phase, context)
        started = self._clock()
        deadline = started + limit
        capture_available = self.session.supports_capture
        last_output = ""

        while True:
            if self._stop_requested():
                return CompletionResult(
                    state=CompletionState.INTERRUPTED,
                    elapsed_seconds=self._clock() - started,
                    output=last_output,
                )

            if capture_available:
                try:
                    captured = self.session.capture_output()
                except CaptureUnavailableError as error:
                    logger.warning("Output capture unavailable (%s); timeout-only detection", error)
                    capture_available = False
                except SessionError as error:
                    logger.debug("Capture failed: %s", error)
                else:
                    last_output = fresh_output(baseline, captured)
                    signal = detect_failure_signal(last_output)
                    if signal is not None:
                        return CompletionResult(
                            state=CompletionState.FAILED,
                            elapsed_seconds=self._clock() - started,
                            output=last_output,
                            failure_signal=signal,
                        )
                    for pattern in patterns:
                        match = pattern.search(last_output)
                        if match is not None:
                            return CompletionResult(
                                state=CompletionState.COMPLETED,
                                elapsed_seconds=self._clock() - started,
                                matched_text=match.group(0),
                                output=last_output,
                            )

            if not self.session.is_alive():
                return CompletionResult(
                    state=CompletionState.FAILED,
                    elapsed_seconds=self._clock() - started,
                    output=f"{last_output}\nsession not found".strip(),
                    failure_signal="session not found",
                )

            now = self._clock()
            if now >= deadline:
                break
            self._sleep(min(self.settings.poll_interval_seconds, deadline - now))

        elapsed = self._clock() - started
        if not capture_available and self.settings.assume_completion_on_timeout:
            logger.warning(
                "Phase %s: no output capture; assuming completion after %.0fs timeout",
                phase,
                limit,
            )
            return CompletionResult(
                state=CompletionState.COMPLETED,
                elapsed_seconds=elapsed,
                assumed=True,
                output=last_output,
            )
        return CompletionResult(
            state=CompletionState.TIMED_OUT,
            elapsed_seconds=elapsed,
            output=f"{last_output}\nstep timed out after {limit:.0f}s".strip(),
        )
