"""Retry, cooldown and fatal decisions for classified step failures."""

from __future__ import annotations

import logging
import random
import re
from collections.abc import Callable
from datetime import datetime, timedelta

from auto_resume.config import RetrySettings
from auto_resume.orchestrator.common import utc_now
from auto_resume.orchestrator.failure_classifier import troubleshooting_hint
from auto_resume.orchestrator.models import (
    ErrorKind,
    ErrorRecord,
    RecoveryAction,
    RecoveryDecision,
    Task,
)

logger = logging.getLogger(__name__)

ERROR_SNIPPET_CHARS = 500
_NON_RETRYABLE = frozenset({ErrorKind.AUTH, ErrorKind.SYNTAX})

_TIME_12H = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*([ap])\.?\s*m\b\.?", re.IGNORECASE)
_TIME_24H = re.compile(
    r"\b(?:until|at|after|by|resets?)\s+(\d{1,2}):(\d{2})\b",
    re.IGNORECASE,
)


def base_backoff_delay(
    retry_count: int,
    kind: ErrorKind,
    *,
    base_delay: float,
    max_delay: float,
    timeout_multiplier: float = 3.0,
) -> float:
    """Delay before jitter: linear in the retry number, longer after timeouts."""

    delay = base_delay * (retry_count + 1)
    if kind == ErrorKind.TIMEOUT:
        delay *= timeout_multiplier
    return min(delay, max_delay)


def parse_reset_time(text: str, now: datetime) -> datetime | None:
    """Find the wall-clock time a usage limit resets at, relative to `now`.

    Understands `3pm`, `3:30 PM`, `3 p.m.` and `until 15:00`. A time that
    is not after `now` means the same time tomorrow.
    """

    clock = _extract_clock_time(text)
    if clock is None:
        return None
    hour, minute = clock
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    elif "tomorrow" in text.lower():
        target += timedelta(days=1)
    return target


def _extract_clock_time(text: str) -> tuple[int, int] | None:
    for match in _TIME_12H.finditer(text):
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        if not 1 <= hour <= 12 or minute > 59:  # noqa: PLR2004
            continue
        meridiem = match.group(3).lower()
        if meridiem == "p" and hour != 12:  # noqa: PLR2004
            hour += 12
        elif meridiem == "a" and hour == 12:  # noqa: PLR2004
            hour = 0
        return hour, minute
    for match in _TIME_24H.finditer(text):
        hour = int(match.group(1))
        minute = int(match.group(2))
        if hour > 23 or minute > 59:  # noqa: PLR2004
            continue
        return hour, minute
    return None


class RecoveryController:
    """Turns a classified failure into Retry, Cooldown or Fatal.

    Per-step (or per simple task) retries are bounded by `max_retries`.
    Every retry and every cooldown also consumes one unit of the task-wide
    `workflow_retry_count`, bounded by `max_workflow_retries`.
    """

    def __init__(
        self,
        settings: RetrySettings,
        *,
        rng: random.Random | None = None,
        local_now: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self._random = rng or random.Random()  # noqa: S311
        self._local_now = local_now or (lambda: datetime.now().astimezone())

    def backoff_delay(self, retry_count: int, kind: ErrorKind) -> float:
        delay = base_backoff_delay(
            retry_count,
            kind,
            base_delay=self.settings.base_delay_seconds,
            max_delay=self.settings.max_delay_seconds,
            timeout_multiplier=self.settings.timeout_multiplier,
        )
        jitter = self.settings.jitter_seconds
        if jitter > 0:
            delay += self._random.uniform(-jitter, jitter)
        return max(1.0, delay)

    def cooldown_delay(self, raw_output: str, *, now: datetime | None = None) -> float:
        """Seconds to wait for a usage limit to reset."""

        moment = now or self._local_now()
        target = parse_reset_time(raw_output, moment)
        if target is None:
            logger.info(
                "No reset time in usage-limit message; using default cooldown %ss",
                self.settings.default_cooldown_seconds,
            )
            return self.settings.default_cooldown_seconds
        wait = (target - moment).total_seconds() + self.settings.cooldown_buffer_seconds
        return max(1.0, min(wait, self.settings.max_cooldown_seconds))

    def handle_failure(  # noqa: PLR0913
        self,
        task: Task,
        step_index: int | None,
        kind: ErrorKind,
        raw_output: str,
        *,
        now: datetime | None = None,
    ) -> RecoveryDecision:
        """Decide what happens next and record the outcome on the task.

        Mutates `task`: appends to `error_history`, sets `last_error` and
        bumps the retry counters the decision consumes.
        """

        step = task.steps[step_index] if step_index is not None else None
        retry_count = step.retry_count if step is not None else task.retry_count
        decision = self._decide(task, retry_count, kind, raw_output, now=now)

        if decision.action == RecoveryAction.RETRY:
            if step is not None:
                step.retry_count += 1
            else:
                task.retry_count += 1
        if decision.action in {RecoveryAction.RETRY, RecoveryAction.COOLDOWN}:
            task.workflow_retry_count += 1

        timestamp = utc_now()
        record = ErrorRecord(
            kind=kind,
            output=raw_output[-ERROR_SNIPPET_CHARS:],
            timestamp=timestamp,
            retry_count=retry_count,
            action=decision.action,
            step_index=step_index,
            delay_seconds=decision.delay_seconds if decision.delay_seconds else None,
        )
        task.error_history.append(record)
        task.last_error = record.to_dict()
        task.updated_at = timestamp

        logger.warning(
            "[%s] %s failure on step %s: %s (%s)",
            task.task_id,
            kind.value,
            step_index,
            decision.action.value,
            decision.reason,
        )
        logger.info("[%s] Hint: %s", task.task_id, troubleshooting_hint(kind))
        return decision

    def _decide(
        self,
        task: Task,
        retry_count: int,
        kind: ErrorKind,
        raw_output: str,
        *,
        now: datetime | None,
    ) -> RecoveryDecision:
        if kind in _NON_RETRYABLE:
            return RecoveryDecision(
                action=RecoveryAction.FATAL,
                kind=kind,
                reason=f"{kind.value} errors are not retried",
            )

        if task.workflow_retry_count >= self.settings.max_workflow_retries:
            return RecoveryDecision(
                action=RecoveryAction.FATAL,
                kind=kind,
                reason=(
                    f"overall retry ceiling reached"
                    f" ({task.workflow_retry_count}/{self.settings.max_workflow_retries})"
                ),
            )

        if kind == ErrorKind.USAGE_LIMIT:
            delay = self.cooldown_delay(raw_output, now=now)
            return RecoveryDecision(
                action=RecoveryAction.COOLDOWN,
                kind=kind,
                delay_seconds=delay,
                reason=f"cooldown {delay:.0f}s",
            )

        if retry_count >= self.settings.max_retries:
            return RecoveryDecision(
                action=RecoveryAction.FATAL,
                kind=kind,
                reason=f"retries exhausted ({retry_count}/{self.settings.max_retries})",
            )

        delay = self.backoff_delay(retry_count, kind)
        return RecoveryDecision(
            action=RecoveryAction.RETRY,
            kind=kind,
            delay_seconds=delay,
            reason=f"retry {retry_count + 1}/{self.settings.max_retries} in {delay:.1f}s",
        )
