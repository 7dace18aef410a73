from __future__ import annotations

import random
from datetime import UTC, datetime

import allure
import pytest

from auto_resume.config import RetrySettings
from auto_resume.orchestrator.common import utc_now
from auto_resume.orchestrator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_failure,
    detect_failure_signal,
    troubleshooting_hint,
)
from auto_resume.orchestrator.models import (
    ErrorKind,
    RecoveryAction,
    Step,
    Task,
    TaskKind,
    TaskStatus,
)
from auto_resume.orchestrator.recovery import (
    RecoveryController,
    base_backoff_delay,
    parse_reset_time,
)

pytestmark = [
    allure.epic("Queue Engine"),
    allure.feature("Failure Classification & Recovery"),
]

_TEN_AM = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)
_FOUR_PM = datetime(2026, 3, 2, 16, 0, tzinfo=UTC)


def _workflow() -> Task:
    now = utc_now()
    return Task(
        task_id="wf-1",
        kind=TaskKind.WORKFLOW,
        status=TaskStatus.IN_PROGRESS,
        created_at=now,
        updated_at=now,
        workflow_type="custom",
        steps=[Step(phase="develop", command="/dev 1")],
    )


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


@pytest.mark.parametrize(
    ("output", "kind"),
    [
        ("curl: (7) Connection refused", ErrorKind.NETWORK),
        ("can't find session: claude-auto-resume", ErrorKind.SESSION),
        ("Error: Authentication failed for this account", ErrorKind.AUTH),
        ("bash: /dve: command not found", ErrorKind.SYNTAX),
        ("Claude usage limit reached. Try again at 3pm", ErrorKind.USAGE_LIMIT),
        ("HTTP 429 Too Many Requests", ErrorKind.USAGE_LIMIT),
        ("request timed out", ErrorKind.TIMEOUT),
        ("something odd happened", ErrorKind.GENERIC),
    ],
)
def test_classifier_maps_output_to_error_kind(output: str, kind: ErrorKind) -> None:
    assert classify_failure(output).kind == kind


def test_classifier_checks_network_before_timeout() -> None:
    classified = classify_failure("connection reset after timeout")

    assert classified.kind == ErrorKind.NETWORK
    assert classified.matched_pattern == "connection reset"
    assert classified.to_details()["matched_rule"] == "network"


def test_auth_and_syntax_are_not_recoverable() -> None:
    assert not classify_failure("unauthorized").recoverable
    assert not classify_failure("syntax error near token").recoverable
    assert classify_failure("rate limit").recoverable


def test_timeouts_are_not_a_failure_signal_in_live_output() -> None:
    assert detect_failure_signal("waiting for timeout configuration") is None
    assert detect_failure_signal("fatal: Could not resolve host github.com") == (
        "could not resolve host"
    )


@pytest.mark.parametrize(
    ("output", "signal"),
    [
        ("Error: authentication failed", "authentication failed"),
        ("bash: foo: command not found", "command not found"),
        ("Unknown command: /deploy", "unknown command"),
        ("ls: cannot open directory '/root': Permission denied", None),
        ("I fixed the permission denied error in the upload handler", None),
        ("  \u23bf  zsh: command not found: pnpm", None),
    ],
)
def test_fatal_signals_need_a_reported_error_line(output: str, signal: str | None) -> None:
    assert detect_failure_signal(output) == signal


def test_usage_limit_signal_is_not_overridden_by_tool_output() -> None:
    output = (
        "Running tests\n"
        "permission denied: .cache\n"
        "Claude usage limit reached. Try again at 3pm"
    )

    signal = detect_failure_signal(output)

    assert signal == "usage limit"
    assert classify_failure(signal).kind == ErrorKind.USAGE_LIMIT


def test_every_error_kind_has_a_hint() -> None:
    for kind in ErrorKind:
        assert troubleshooting_hint(kind)


def test_base_backoff_is_linear_tripled_for_timeouts_and_capped() -> None:
    assert base_backoff_delay(0, ErrorKind.NETWORK, base_delay=5, max_delay=300) == 5
    assert base_backoff_delay(2, ErrorKind.NETWORK, base_delay=5, max_delay=300) == 15
    assert base_backoff_delay(1, ErrorKind.TIMEOUT, base_delay=5, max_delay=300) == 30
    assert base_backoff_delay(100, ErrorKind.GENERIC, base_delay=5, max_delay=300) == 300


def test_jittered_backoff_stays_within_bounds() -> None:
    controller = RecoveryController(
        RetrySettings(base_delay_seconds=5, jitter_seconds=3),
        rng=random.Random(7),
    )
    for retry_count in range(3):
        base = 5 * (retry_count + 1)
        for _ in range(200):
            delay = controller.backoff_delay(retry_count, ErrorKind.NETWORK)
            assert base - 3 <= delay <= base + 3
            assert delay >= 1


def test_backoff_never_drops_below_one_second() -> None:
    controller = RecoveryController(
        RetrySettings(base_delay_seconds=0.5, jitter_seconds=5),
        rng=random.Random(1),
    )

    assert all(controller.backoff_delay(0, ErrorKind.GENERIC) >= 1 for _ in range(100))


@pytest.mark.parametrize(
    ("now", "expected_seconds"),
    [(_TEN_AM, 5 * 3600), (_FOUR_PM, 23 * 3600)],
)
def test_reset_time_is_same_day_or_next_day(now: datetime, expected_seconds: int) -> None:
    target = parse_reset_time("blocked until 3pm today", now)

    assert target is not None
    assert abs((target - now).total_seconds() - expected_seconds) <= 60


@pytest.mark.parametrize(
    ("message", "hour", "minute"),
    [
        ("Usage limit reached. Try again at 3:30 PM.", 15, 30),
        ("resets at 11 a.m.", 11, 0),
        ("limit lifts at 12am", 0, 0),
        ("available again at 12pm", 12, 0),
        ("blocked until 15:45", 15, 45),
    ],
)
def test_reset_time_formats(message: str, hour: int, minute: int) -> None:
    target = parse_reset_time(message, datetime(2026, 3, 2, 9, 0, tzinfo=UTC))

    assert target is not None
    assert (target.hour, target.minute) == (hour, minute)


def test_reset_time_absent_returns_none() -> None:
    assert parse_reset_time("usage limit reached", _TEN_AM) is None


def test_cooldown_falls_back_to_default_without_a_time() -> None:
    controller = RecoveryController(RetrySettings(default_cooldown_seconds=300))

    assert controller.cooldown_delay("rate limit exceeded", now=_TEN_AM) == 300


def test_cooldown_adds_buffer_and_is_capped() -> None:
    controller = RecoveryController(
        RetrySettings(cooldown_buffer_seconds=60, max_cooldown_seconds=3600),
    )

    assert controller.cooldown_delay("try again at 10:30", now=_TEN_AM) == 1800 + 60
    assert controller.cooldown_delay("try again at 3pm", now=_TEN_AM) == 3600


def test_auth_failure_is_fatal_without_consuming_retries() -> None:
    task = _workflow()
    controller = RecoveryController(RetrySettings())

    decision = controller.handle_failure(task, 0, ErrorKind.AUTH, "authentication failed")

    assert decision.action == RecoveryAction.FATAL
    assert task.steps[0].retry_count == 0
    assert task.workflow_retry_count == 0
    assert task.error_history[0].kind == ErrorKind.AUTH
    assert task.last_error is not None
    assert task.last_error["error_type"] == "auth"


def test_retries_until_limit_then_fatal() -> None:
    task = _workflow()
    controller = RecoveryController(RetrySettings(max_retries=3, jitter_seconds=0))

    actions = [
        controller.handle_failure(task, 0, ErrorKind.NETWORK, "connection refused").action
        for _ in range(4)
    ]

    assert actions == [RecoveryAction.RETRY] * 3 + [RecoveryAction.FATAL]
    assert task.steps[0].retry_count == 3
    assert [record.retry_count for record in task.error_history] == [0, 1, 2, 3]
    assert [record.delay_seconds for record in task.error_history[:3]] == [5, 10, 15]


def test_usage_limit_cooldown_leaves_step_counter_alone() -> None:
    task = _workflow()
    controller = RecoveryController(RetrySettings(), local_now=lambda: _TEN_AM)

    decision = controller.handle_failure(
        task,
        0,
        ErrorKind.USAGE_LIMIT,
        "Usage limit reached. Try again at 3pm",
    )

    assert decision.action == RecoveryAction.COOLDOWN
    assert decision.delay_seconds == 5 * 3600
    assert task.steps[0].retry_count == 0
    assert task.workflow_retry_count == 1


def test_workflow_retry_ceiling_bounds_cooldowns() -> None:
    task = _workflow()
    controller = RecoveryController(RetrySettings(max_workflow_retries=2))

    actions = [
        controller.handle_failure(task, 0, ErrorKind.USAGE_LIMIT, "rate limit", now=_TEN_AM).action
        for _ in range(3)
    ]

    assert actions == [RecoveryAction.COOLDOWN, RecoveryAction.COOLDOWN, RecoveryAction.FATAL]


def test_error_snippet_is_truncated() -> None:
    task = _workflow()
    controller = RecoveryController(RetrySettings())

    controller.handle_failure(task, 0, ErrorKind.GENERIC, "x" * 2_000)

    assert len(task.error_history[0].output) == 500
