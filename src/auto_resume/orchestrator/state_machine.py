"""Allowed status transitions for tasks and workflow steps."""

from __future__ import annotations

from datetime import datetime

from auto_resume.orchestrator.common import utc_now
from auto_resume.orchestrator.errors import InvalidTransitionError
from auto_resume.orchestrator.models import StatusChange, Step, StepStatus, Task, TaskStatus

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.FAILED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PAUSED},
    ),
    TaskStatus.FAILED: frozenset({TaskStatus.PAUSED}),
    TaskStatus.PAUSED: frozenset({TaskStatus.PENDING, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
}

STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.IN_PROGRESS}),
    StepStatus.IN_PROGRESS: frozenset({StepStatus.COMPLETED, StepStatus.FAILED}),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.FAILED: frozenset(),
}

RESET_REASONS = frozenset({"resume", "resume_from_step", "restore_checkpoint", "orphan_recovery"})


def can_transition_task(current: TaskStatus, requested: TaskStatus) -> bool:
    return requested in TASK_TRANSITIONS[current]


def transition_task(
    task: Task,
    requested: TaskStatus,
    *,
    reason: str | None = None,
    now: datetime | None = None,
    keep_worker: bool = False,
) -> bool:
    """Move a task along the transition graph.

    Returns False without touching the task when it is already in
    `requested`; raises `InvalidTransitionError` for edges outside the graph.
    Any status other than `in_progress` drops the recorded worker unless
    `keep_worker` is set.
    """

    if task.status == requested:
        return False
    if not can_transition_task(task.status, requested):
        raise InvalidTransitionError(
            subject="task",
            current=task.status.value,
            requested=requested.value,
        )
    _apply_task_status(task, requested, reason=reason, now=now, keep_worker=keep_worker)
    return True


def reset_task(
    task: Task,
    requested: TaskStatus,
    *,
    reason: str,
    now: datetime | None = None,
) -> None:
    """Explicit out-of-graph status reset used by resume and checkpoint restore."""

    if reason not in RESET_REASONS:
        raise InvalidTransitionError(
            subject="task",
            current=task.status.value,
            requested=requested.value,
        )
    if task.status == requested:
        return
    _apply_task_status(task, requested, reason=reason, now=now)
    if requested != TaskStatus.COMPLETED:
        task.completed_at = None


def transition_step(
    step: Step,
    requested: StepStatus,
    *,
    now: datetime | None = None,
) -> bool:
    if step.status == requested:
        return False
    if requested not in STEP_TRANSITIONS[step.status]:
        raise InvalidTransitionError(
            subject="step",
            current=step.status.value,
            requested=requested.value,
        )
    moment = now or utc_now()
    step.status = requested
    if requested == StepStatus.IN_PROGRESS:
        step.started_at = moment
    elif requested == StepStatus.COMPLETED:
        step.completed_at = moment
    elif requested == StepStatus.FAILED:
        step.failed_at = moment
    return True


def reset_step(step: Step, requested: StepStatus) -> None:
    """Force a step to `pending` or `completed` during resume or restore."""

    if requested not in {StepStatus.PENDING, StepStatus.COMPLETED}:
        raise InvalidTransitionError(
            subject="step",
            current=step.status.value,
            requested=requested.value,
        )
    if step.status == requested:
        return
    step.status = requested
    step.failed_at = None
    step.completion = None
    if requested == StepStatus.PENDING:
        step.started_at = None
        step.completed_at = None
        step.retry_count = 0


def _apply_task_status(
    task: Task,
    requested: TaskStatus,
    *,
    reason: str | None,
    now: datetime | None,
    keep_worker: bool = False,
) -> None:
    moment = now or utc_now()
    task.status_history.append(
        StatusChange(from_status=task.status, to_status=requested, at=moment, reason=reason),
    )
    task.status = requested
    task.updated_at = moment
    if requested == TaskStatus.COMPLETED:
        task.completed_at = moment
    if requested != TaskStatus.IN_PROGRESS and not keep_worker:
        task.worker_pid = None
        task.worker_host = None
