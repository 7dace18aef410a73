"""Queue dispatcher that runs one task at a time."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from auto_resume.config import Settings
from auto_resume.orchestrator.backend.base import SessionBackend
from auto_resume.orchestrator.executor import ExecutionOutcome, TaskExecutor
from auto_resume.orchestrator.models import TaskKind, TaskStatus
from auto_resume.orchestrator.recovery import RecoveryController
from auto_resume.orchestrator.repository import QueueRepository
from auto_resume.orchestrator.resources import ResourceMonitor

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatcherRunSummary:
    """Aggregate dispatcher counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    paused: int = 0
    retried: int = 0
    cooldowns: int = 0
    idle_polls: int = 0
    throttled: int = 0
    recovered: int = 0

    def add(self, other: DispatcherRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.paused += other.paused
        self.retried += other.retried
        self.cooldowns += other.cooldowns
        self.idle_polls += other.idle_polls
        self.throttled += other.throttled
        self.recovered += other.recovered


class QueueDispatcher:
    """Claims the next pending task and drives it through the executor."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: QueueRepository,
        session: SessionBackend,
        settings: Settings,
        resource_monitor: ResourceMonitor | None = None,
        recovery: RecoveryController | None = None,
        kind: TaskKind | None = None,
        sleeper: Callable[[float], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.session = session
        self.settings = settings
        self.resource_monitor = resource_monitor
        self.kind = kind
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._orphans_checked = False
        self._sleep = sleeper or self._sleep_with_stop
        self.executor = TaskExecutor(
            repository=repository,
            session=session,
            settings=settings,
            recovery=recovery,
            sleeper=self._sleep,
            clock=clock,
            stop_requested=lambda: self._stop_requested,
        )

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self, *, signal_name: str = "manual") -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.warning("Stop requested (%s); finishing current step", signal_name)

    def run_once(self) -> DispatcherRunSummary:
        """Process at most one task from the queue."""

        summary = DispatcherRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        summary.recovered = self._recover_orphans()
        if self._throttle_if_needed():
            summary.throttled = 1

        task = self.repository.claim_next_task(kind=self.kind)
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        outcome = self.executor.execute(task)
        _apply_outcome(summary, outcome)
        return summary

    def execute_task(self, task_id: str) -> ExecutionOutcome:
        """Run one specific task now, as `workflow execute` does."""

        with self._signal_handlers():
            self._recover_orphans()
            task = self.repository.claim_task(task_id)
            return self.executor.execute(task)

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int = 1,
    ) -> DispatcherRunSummary:
        """Run until the queue is idle, `max_tasks` is reached or a stop is requested."""

        aggregate = DispatcherRunSummary()
        consecutive_idle = 0
        if self.resource_monitor is not None:
            self.resource_monitor.start()
        try:
            with self._signal_handlers():
                while True:
                    if self._stop_requested:
                        return aggregate
                    if max_tasks is not None and aggregate.processed >= max_tasks:
                        return aggregate

                    summary = self.run_once()
                    aggregate.add(summary)

                    if summary.processed == 0:
                        consecutive_idle += 1
                        if max_idle_polls and consecutive_idle >= max_idle_polls:
                            return aggregate
                        self._sleep(self.settings.dispatcher.idle_poll_seconds)
                        continue
                    consecutive_idle = 0
        finally:
            if self.resource_monitor is not None:
                self.resource_monitor.stop()

    def _recover_orphans(self) -> int:
        if self._orphans_checked:
            return 0
        self._orphans_checked = True
        return len(self.repository.recover_orphaned_tasks())

    def _throttle_if_needed(self) -> bool:
        if self.resource_monitor is None or not self.resource_monitor.should_throttle():
            return False
        delay = self.settings.resources.throttle_delay_seconds
        logger.warning("Resource usage above threshold; delaying next task by %ss", delay)
        self._sleep(delay)
        return True

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _apply_outcome(summary: DispatcherRunSummary, outcome: ExecutionOutcome) -> None:
    summary.retried += outcome.retries
    summary.cooldowns += outcome.cooldowns
    if outcome.status == TaskStatus.COMPLETED:
        summary.succeeded += 1
    elif outcome.status == TaskStatus.FAILED:
        summary.failed += 1
    elif outcome.status == TaskStatus.PAUSED:
        summary.paused += 1

