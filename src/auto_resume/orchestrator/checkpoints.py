"""Workflow checkpoints and manual resume/restore."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from auto_resume.orchestrator.common import current_host, generate_id, pid_alive, utc_now
from auto_resume.orchestrator.errors import QueueError, WorkflowConfigError
from auto_resume.orchestrator.models import Checkpoint, Step, StepStatus, Task, TaskStatus
from auto_resume.orchestrator.state_machine import reset_step, reset_task, transition_task

if TYPE_CHECKING:
    from auto_resume.orchestrator.repository import QueueRepository

logger = logging.getLogger(__name__)


def capture_checkpoint(task: Task, *, reason: str, now: datetime | None = None) -> Checkpoint:
    """Snapshot the full workflow state.

    The snapshot leaves out the checkpoint list itself, so each checkpoint
    stays the size of one workflow.
    """

    return Checkpoint(
        checkpoint_id=generate_id("checkpoint"),
        workflow_id=task.task_id,
        created_at=now or utc_now(),
        reason=reason,
        workflow_state=task.snapshot(),
    )


class CheckpointManager:
    """Checkpoint creation plus resume-from-step and checkpoint restore."""

    def __init__(self, repository: QueueRepository) -> None:
        self.repository = repository

    def create_checkpoint(self, workflow_id: str, reason: str = "manual") -> str:
        def _append(task: Task) -> str:
            _require_workflow(task)
            checkpoint = capture_checkpoint(task, reason=reason)
            task.checkpoints.append(checkpoint)
            return checkpoint.checkpoint_id

        checkpoint_id = self.repository.update_task(workflow_id, _append)
        logger.info("[%s] Checkpoint %s created (%s)", workflow_id, checkpoint_id, reason)
        return checkpoint_id

    def list_checkpoints(self, workflow_id: str) -> list[Checkpoint]:
        task = self.repository.get_task(workflow_id)
        _require_workflow(task)
        return list(task.checkpoints)

    def resume_from_step(self, workflow_id: str, index: int) -> Task:
        """Rewind or fast-forward a workflow so execution restarts at `index`.

        Steps before `index` become completed, the rest pending, and the
        workflow goes back to pending for the dispatcher.
        """

        def _resume(task: Task) -> Task:
            _require_workflow(task)
            if not 0 <= index < len(task.steps):
                raise ValueError(
                    f"Step index {index} out of range for {workflow_id}"
                    f" (0..{len(task.steps) - 1}).",
                )
            ensure_not_running(task)
            now = utc_now()
            task.checkpoints.append(capture_checkpoint(task, reason="before_resume", now=now))
            for position, step in enumerate(task.steps):
                if position < index:
                    _force_completed(step, now=now)
                    task.results[f"step_{position}"] = "success"
                else:
                    reset_step(step, StepStatus.PENDING)
                    task.results.pop(f"step_{position}", None)
            task.current_step = index
            task.resumed_count += 1
            task.resumed_at = now
            task.manual_resume = True
            task.cancelled_at = None
            task.cancellation_reason = None
            make_pending(task, reason="resume_from_step", now=now)
            return task

        task = self.repository.update_task(workflow_id, _resume)
        logger.info("[%s] Workflow will resume from step %s", workflow_id, index)
        return task

    def restore_checkpoint(self, workflow_id: str, checkpoint_id: str) -> Task:
        """Restore steps, progress pointer and results from a checkpoint."""

        def _restore(task: Task) -> Task:
            _require_workflow(task)
            checkpoint = next(
                (item for item in task.checkpoints if item.checkpoint_id == checkpoint_id),
                None,
            )
            if checkpoint is None:
                raise QueueError(f"Checkpoint not found: {checkpoint_id}")
            ensure_not_running(task)
            now = utc_now()
            snapshot = checkpoint.workflow_state
            task.checkpoints.append(capture_checkpoint(task, reason="before_restore", now=now))
            task.steps = [Step.from_dict(item) for item in snapshot.get("steps", [])]
            task.current_step = int(snapshot.get("current_step", 0))
            task.results = {
                str(key): str(value) for key, value in (snapshot.get("results") or {}).items()
            }
            for step in task.steps[task.current_step :]:
                if step.status != StepStatus.COMPLETED:
                    reset_step(step, StepStatus.PENDING)
            task.resumed_count += 1
            task.resumed_at = now
            task.manual_resume = True
            task.cancelled_at = None
            task.cancellation_reason = None
            make_pending(task, reason="restore_checkpoint", now=now)
            return task

        task = self.repository.update_task(workflow_id, _restore)
        logger.info("[%s] Workflow restored from checkpoint %s", workflow_id, checkpoint_id)
        return task


def make_pending(task: Task, *, reason: str, now: datetime | None = None) -> None:
    """Route any non-running status back to pending through the allowed edges."""

    if task.status == TaskStatus.PENDING:
        return
    if task.status in {TaskStatus.FAILED, TaskStatus.IN_PROGRESS}:
        transition_task(task, TaskStatus.PAUSED, reason=reason, now=now)
    if task.status == TaskStatus.PAUSED:
        transition_task(task, TaskStatus.PENDING, reason=reason, now=now)
        return
    reset_task(task, TaskStatus.PENDING, reason=reason, now=now)


def _require_workflow(task: Task) -> None:
    if not task.is_workflow:
        raise WorkflowConfigError(f"Task {task.task_id} is not a workflow.")


def ensure_not_running(task: Task) -> None:
    """Refuse manual changes while a recorded worker may still drive the task."""

    if task.status != TaskStatus.IN_PROGRESS and task.worker_pid is None:
        return
    if task.worker_host not in {None, current_host()}:
        raise QueueError(f"Task {task.task_id} is executing on {task.worker_host}.")
    if task.worker_pid is None or not pid_alive(task.worker_pid):
        return
    if task.status == TaskStatus.IN_PROGRESS:
        raise QueueError(
            f"Task {task.task_id} is executing in pid {task.worker_pid}; pause it first.",
        )
    raise QueueError(
        f"Task {task.task_id} is {task.status.value} but pid {task.worker_pid}"
        " is still executing it; retry once that worker stops.",
    )


def _force_completed(step: Step, *, now: datetime) -> None:
    if step.status == StepStatus.COMPLETED:
        return
    reset_step(step, StepStatus.COMPLETED)
    step.completed_at = now
    step.completion = "manual"
