"""Deterministic classification of session failure text for the recovery policy."""

from __future__ import annotations

import re
from dataclasses import dataclass

from auto_resume.orchestrator.models import ErrorKind

FAILURE_CLASSIFIER_VERSION = 1

_NETWORK_PATTERNS: tuple[str, ...] = (
    "connection refused",
    "network error",
    "connection reset",
    "could not resolve host",
    "network is unreachable",
)
_SESSION_PATTERNS: tuple[str, ...] = (
    "session not found",
    "no active session",
    "can't find session",
    "no server running",
)
_AUTH_PATTERNS: tuple[str, ...] = (
    "authentication failed",
    "unauthorized",
    "permission denied",
    "invalid api key",
)
_SYNTAX_PATTERNS: tuple[str, ...] = (
    "command not found",
    "invalid command",
    "syntax error",
    "unknown command",
)
_USAGE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "usage limit",
    "quota exceeded",
    "limit reached",
    "too many requests",
    "please try again later",
    "request limit exceeded",
    "blocked until",
    "try again at",
    "available again at",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
)

# Signals that a step failed even though the session is still responsive.
_FAILURE_SIGNAL_PATTERNS: tuple[str, ...] = (
    *_NETWORK_PATTERNS,
    *_SESSION_PATTERNS,
    *_USAGE_LIMIT_PATTERNS,
)
# Fatal kinds count only when a line reports them ("Error: ...", "bash: x: ..."),
# not when the agent's own tool output merely mentions them.
_REPORTED_FAILURE_SIGNALS: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (pattern, re.compile(rf"\s*(?:[\w .-]{{1,24}}:\s*)*{re.escape(pattern)}"))
    for pattern in (*_AUTH_PATTERNS, *_SYNTAX_PATTERNS)
)

_RULES: tuple[tuple[ErrorKind, tuple[str, ...]], ...] = (
    (ErrorKind.NETWORK, _NETWORK_PATTERNS),
    (ErrorKind.SESSION, _SESSION_PATTERNS),
    (ErrorKind.AUTH, _AUTH_PATTERNS),
    (ErrorKind.SYNTAX, _SYNTAX_PATTERNS),
    (ErrorKind.USAGE_LIMIT, _USAGE_LIMIT_PATTERNS),
    (ErrorKind.TIMEOUT, _TIMEOUT_PATTERNS),
)

TROUBLESHOOTING_HINTS: dict[ErrorKind, str] = {
    ErrorKind.NETWORK: "Check network connectivity and proxy settings.",
    ErrorKind.SESSION: "Check that the tmux session exists (tmux list-sessions).",
    ErrorKind.AUTH: "Re-authenticate the CLI agent; retries will not help.",
    ErrorKind.SYNTAX: "Verify the workflow step command; it was rejected by the session.",
    ErrorKind.USAGE_LIMIT: "Usage limit reached; the workflow waits for the reset time.",
    ErrorKind.TIMEOUT: "The step did not finish in time; consider raising the phase timeout.",
    ErrorKind.GENERIC: "Inspect the captured session output for details.",
}


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: ErrorKind
    matched_rule: str
    matched_pattern: str | None

    @property
    def recoverable(self) -> bool:
        return self.kind not in {ErrorKind.AUTH, ErrorKind.SYNTAX}

    def to_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "error_type": self.kind.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(raw_output: str) -> FailureClassification:
    """Map raw session output to an error kind; first matching rule wins."""

    haystack = raw_output.lower()
    for kind, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                kind=kind,
                matched_rule=kind.value,
                matched_pattern=pattern,
            )
    return FailureClassification(
        kind=ErrorKind.GENERIC,
        matched_rule="fallback_generic",
        matched_pattern=None,
    )


def detect_failure_signal(output: str) -> str | None:
    """Return the failure marker found in fresh session output, if any."""

    lowered = output.lower()
    signal = _first_match(lowered, _FAILURE_SIGNAL_PATTERNS)
    if signal is not None:
        return signal
    for line in lowered.splitlines():
        for pattern, reported in _REPORTED_FAILURE_SIGNALS:
            if reported.match(line):
                return pattern
    return None


def troubleshooting_hint(kind: ErrorKind) -> str:
    return TROUBLESHOOTING_HINTS[kind]


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
