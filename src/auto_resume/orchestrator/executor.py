"""Execute claimed tasks step by step against the session backend."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from auto_resume.config import Settings
from auto_resume.orchestrator.backend.base import SessionBackend, SessionError
from auto_resume.orchestrator.checkpoints import capture_checkpoint
from auto_resume.orchestrator.completion import (
    CompletionDetector,
    CompletionResult,
    CompletionState,
)
from auto_resume.orchestrator.failure_classifier import classify_failure
from auto_resume.orchestrator.models import (
    ErrorKind,
    RecoveryAction,
    RecoveryDecision,
    StepStatus,
    Task,
    TaskStatus,
)
from auto_resume.orchestrator.recovery import RecoveryController
from auto_resume.orchestrator.repository import QueueRepository
from auto_resume.orchestrator.state_machine import reset_step, transition_step, transition_task

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExecutionOutcome:
    """What happened to one claimed task."""

    task_id: str
    status: TaskStatus
    steps_completed: int = 0
    retries: int = 0
    cooldowns: int = 0
    interrupted: bool = False
    message: str = ""


@dataclass(slots=True)
class _Unit:
    """The command the session runs for a step or a simple task."""

    index: int | None
    phase: str
    command: str


class _Halted(Exception):
    """Persisted status changed under us (pause or cancel)."""

    def __init__(self, status: TaskStatus) -> None:
        super().__init__(status.value)
        self.status = status


class TaskExecutor:
    """Runs one claimed task to a terminal or paused state.

    The queue lock is taken only for the short state updates; waiting for
    the session happens outside it.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: QueueRepository,
        session: SessionBackend,
        settings: Settings,
        recovery: RecoveryController | None = None,
        sleeper: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        stop_requested: Callable[[], bool] = lambda: False,
    ) -> None:
        self.repository = repository
        self.session = session
        self.settings = settings
        self.recovery = recovery or RecoveryController(settings.retry)
        self._sleep = sleeper
        self._stop_requested = stop_requested
        self.detector = CompletionDetector(
            session,
            settings.completion,
            clock=clock,
            sleeper=sleeper,
            stop_requested=stop_requested,
        )

    def execute(self, task: Task) -> ExecutionOutcome:
        """Execute a task already claimed (status in_progress) by this process."""

        outcome = ExecutionOutcome(task_id=task.task_id, status=task.status)
        if task.is_workflow:
            task = self._persist(task.task_id, _checkpoint_before_execution)
            logger.info(
                "[%s] Executing %s workflow from step %s/%s",
                task.task_id,
                task.workflow_type,
                task.current_step + 1,
                len(task.steps),
            )
        else:
            logger.info("[%s] Executing task", task.task_id)

        try:
            if task.is_workflow:
                self._run_workflow(task, outcome)
            else:
                self._run_unit_until_done(task, _simple_unit(task), outcome)
                if outcome.status == TaskStatus.IN_PROGRESS:
                    outcome.status = self._finish(task.task_id).status
        except _Halted as halted:
            outcome.status = halted.status
            outcome.message = f"stopped: task is {halted.status.value}"
            logger.info("[%s] Execution stopped; task is %s", task.task_id, halted.status.value)
        self.repository.release_worker(task.task_id)
        return outcome

    def _run_workflow(self, task: Task, outcome: ExecutionOutcome) -> None:
        index = task.current_step
        while index < len(task.steps):
            self._check_persisted_status(task.task_id)
            task = self._persist(task.task_id, lambda stored, i=index: _start_step(stored, i))
            step = task.steps[index]
            if step.status == StepStatus.COMPLETED:
                index += 1
                continue

            logger.info(
                "[%s] Step %s/%s (%s): %s",
                task.task_id,
                index + 1,
                len(task.steps),
                step.phase,
                step.description or step.command,
            )
            unit = _Unit(index=index, phase=step.phase, command=step.command)
            self._run_unit_until_done(task, unit, outcome)
            if outcome.status != TaskStatus.IN_PROGRESS:
                return
            outcome.steps_completed += 1
            index += 1
            if index < len(task.steps):
                delay = step.delay_seconds
                self._pause_between_steps(
                    delay if delay is not None else self.settings.completion.step_delay_seconds,
                )

        outcome.status = self._finish(task.task_id).status
        logger.info("[%s] Workflow finished: %s", task.task_id, outcome.status.value)

    def _run_unit_until_done(self, task: Task, unit: _Unit, outcome: ExecutionOutcome) -> None:
        """Run one step (or a simple task) through retries and cooldowns."""

        while True:
            self._check_persisted_status(task.task_id)
            if self._stop_requested():
                outcome.status = self._interrupt(task.task_id, unit).status
                outcome.interrupted = True
                return

            result = self._attempt(task, unit)
            if result.state == CompletionState.INTERRUPTED:
                outcome.status = self._interrupt(task.task_id, unit).status
                outcome.interrupted = True
                return
            if result.completed:
                self._persist(task.task_id, lambda stored: _complete_unit(stored, unit, result))
                return

            decision = self._record_failure(task.task_id, unit, result)
            if decision.action == RecoveryAction.FATAL:
                outcome.status = TaskStatus.FAILED
                outcome.message = decision.reason
                return
            if decision.action == RecoveryAction.COOLDOWN:
                outcome.cooldowns += 1
                logger.warning(
                    "[%s] Usage limit reached; waiting %.0fs before retrying step %s",
                    task.task_id,
                    decision.delay_seconds,
                    unit.index,
                )
            else:
                outcome.retries += 1
            self._sleep(decision.delay_seconds)

    def _attempt(self, task: Task, unit: _Unit) -> CompletionResult:
        baseline = ""
        if self.session.supports_capture:
            try:
                baseline = self.session.capture_output()
            except SessionError as error:
                logger.debug("[%s] Baseline capture failed: %s", task.task_id, error)
        try:
            self.session.send(unit.command)
        except SessionError as error:
            return CompletionResult(
                state=CompletionState.FAILED,
                elapsed_seconds=0.0,
                output=str(error),
            )
        return self.detector.wait_for_completion(
            unit.phase,
            _completion_context(task),
            baseline=baseline,
        )

    def _record_failure(
        self,
        task_id: str,
        unit: _Unit,
        result: CompletionResult,
    ) -> RecoveryDecision:
        if result.state == CompletionState.TIMED_OUT:
            kind = ErrorKind.TIMEOUT
        else:
            classification = classify_failure(result.failure_signal or result.output)
            logger.debug("[%s] Failure classified: %s", task_id, classification.to_details())
            kind = classification.kind

        def _apply(stored: Task) -> RecoveryDecision:
            decision = self.recovery.handle_failure(stored, unit.index, kind, result.output)
            if decision.action == RecoveryAction.COOLDOWN and stored.is_workflow:
                stored.checkpoints.append(capture_checkpoint(stored, reason="usage_limit"))
            if decision.action == RecoveryAction.FATAL:
                _fail_unit(stored, unit)
            return decision

        return self.repository.update_task(task_id, _apply)

    def _interrupt(self, task_id: str, unit: _Unit) -> Task:
        def _pause(stored: Task) -> Task:
            if stored.is_workflow:
                stored.checkpoints.append(capture_checkpoint(stored, reason="interrupted"))
                if unit.index is not None:
                    step = stored.steps[unit.index]
                    if step.status == StepStatus.IN_PROGRESS:
                        reset_step(step, StepStatus.PENDING)
            if stored.status == TaskStatus.IN_PROGRESS:
                transition_task(stored, TaskStatus.PAUSED, reason="interrupted")
            return stored

        task = self.repository.update_task(task_id, _pause)
        logger.warning("[%s] Interrupted; task paused and checkpointed", task_id)
        return task

    def _finish(self, task_id: str) -> Task:
        def _complete(stored: Task) -> Task:
            if stored.status == TaskStatus.IN_PROGRESS:
                transition_task(stored, TaskStatus.COMPLETED, reason="all steps completed")
            return stored

        return self.repository.update_task(task_id, _complete)

    def _check_persisted_status(self, task_id: str) -> None:
        status = self.repository.get_task(task_id).status
        if status != TaskStatus.IN_PROGRESS:
            raise _Halted(status)

    def _pause_between_steps(self, seconds: float) -> None:
        if seconds > 0 and not self._stop_requested():
            self._sleep(seconds)

    def _persist(self, task_id: str, mutate: Callable[[Task], Task]) -> Task:
        return self.repository.update_task(task_id, mutate)


def _checkpoint_before_execution(task: Task) -> Task:
    task.checkpoints.append(capture_checkpoint(task, reason="pre_execution"))
    return task


def _start_step(task: Task, index: int) -> Task:
    task.current_step = index
    step = task.steps[index]
    if step.status == StepStatus.FAILED:
        reset_step(step, StepStatus.PENDING)
    if step.status == StepStatus.PENDING:
        transition_step(step, StepStatus.IN_PROGRESS)
    return task


def _complete_unit(task: Task, unit: _Unit, result: CompletionResult) -> Task:
    if unit.index is None:
        task.results["result"] = "success"
        return task
    step = task.steps[unit.index]
    transition_step(step, StepStatus.COMPLETED)
    step.completion = "assumed" if result.assumed else "pattern"
    task.results[f"step_{unit.index}"] = "success"
    task.current_step = unit.index + 1
    return task


def _fail_unit(task: Task, unit: _Unit) -> None:
    if unit.index is None:
        task.results["result"] = "failed"
    else:
        step = task.steps[unit.index]
        if step.status == StepStatus.IN_PROGRESS:
            transition_step(step, StepStatus.FAILED)
        task.results[f"step_{unit.index}"] = "failed"
    if task.status == TaskStatus.IN_PROGRESS:
        transition_task(task, TaskStatus.FAILED, reason="unrecoverable error")


def _simple_unit(task: Task) -> _Unit:
    command = str(task.payload.get("command") or task.payload.get("description") or "")
    phase = str(task.payload.get("phase") or "generic")
    return _Unit(index=None, phase=phase, command=command)


def _completion_context(task: Task) -> dict[str, str]:
    context: dict[str, str] = {}
    issue_id = task.config.get("issue_id") or task.payload.get("issue_id")
    if issue_id is not None:
        context["issue_id"] = str(issue_id)
        context["pr_ref"] = str(task.config.get("pr_ref") or f"PR-{issue_id}")
    return context
