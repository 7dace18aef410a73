"""Use-case services for tasks and workflows."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from auto_resume.orchestrator.checkpoints import (
    CheckpointManager,
    capture_checkpoint,
    ensure_not_running,
    make_pending,
)
from auto_resume.orchestrator.common import generate_id, to_iso, utc_now, validate_task_id
from auto_resume.orchestrator.errors import InvalidTransitionError, WorkflowConfigError
from auto_resume.orchestrator.models import (
    Step,
    StepStatus,
    Task,
    TaskKind,
    TaskStatus,
)
from auto_resume.orchestrator.repository import QueueRepository
from auto_resume.orchestrator.state_machine import reset_step, transition_task

if TYPE_CHECKING:
    from auto_resume.orchestrator.resources import ResourceMonitor

logger = logging.getLogger(__name__)

ISSUE_MERGE = "issue-merge"
CUSTOM = "custom"
WORKFLOW_TYPES: tuple[str, ...] = (ISSUE_MERGE, CUSTOM)
CANCELLATION_REASON = "user_cancelled"


@dataclass(slots=True)
class AddTask:
    """High-level command to enqueue a simple task."""

    command: str
    description: str = ""
    priority: int = 100
    phase: str = "generic"
    task_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CreateWorkflow:
    """High-level command to enqueue a multi-step workflow."""

    workflow_type: str
    config: str | dict[str, Any]
    priority: int = 100
    workflow_id: str | None = None


def build_issue_merge_steps(issue_id: str) -> list[Step]:
    return [
        Step(phase="develop", command=f"/dev {issue_id}", description=f"Develop issue {issue_id}"),
        Step(phase="clear", command="/clear", description="Clear session context"),
        Step(
            phase="review",
            command=f"/review PR-{issue_id}",
            description=f"Review pull request for issue {issue_id}",
        ),
        Step(
            phase="merge",
            command=f"/dev merge-pr {issue_id} --focus-main",
            description=f"Merge pull request for issue {issue_id}",
        ),
    ]


def parse_workflow_config(workflow_type: str, raw: str | dict[str, Any]) -> dict[str, Any]:
    """Normalize the CLI/JSON workflow config for `workflow_type`."""

    if workflow_type not in WORKFLOW_TYPES:
        choices = ", ".join(WORKFLOW_TYPES)
        raise WorkflowConfigError(
            f"Unknown workflow type {workflow_type!r}; expected one of: {choices}",
        )

    config: Any = raw
    if isinstance(raw, str):
        text = raw.strip()
        try:
            config = json.loads(text)
        except json.JSONDecodeError:
            if workflow_type != ISSUE_MERGE:
                raise WorkflowConfigError(
                    f"Workflow config must be a JSON object: {text!r}",
                ) from None
            config = {"issue_id": text}
        if isinstance(config, int | str) and workflow_type == ISSUE_MERGE:
            config = {"issue_id": str(config)}
    if not isinstance(config, dict):
        raise WorkflowConfigError("Workflow config must be a JSON object.")

    if workflow_type == ISSUE_MERGE:
        issue_id = str(config.get("issue_id", "")).strip().lstrip("#")
        try:
            validate_task_id(issue_id)
        except ValueError as error:
            raise WorkflowConfigError(f"Invalid issue id for {ISSUE_MERGE}: {error}") from error
        return {**config, "issue_id": issue_id}

    steps = config.get("steps")
    if not isinstance(steps, list) or not steps:
        raise WorkflowConfigError("Custom workflow config requires a non-empty 'steps' list.")
    for position, item in enumerate(steps):
        if not isinstance(item, dict) or not str(item.get("command", "")).strip():
            raise WorkflowConfigError(f"Custom workflow step {position} needs a 'command'.")
        delay = item.get("delay")
        if delay is not None and (not isinstance(delay, int | float) or delay < 0):
            raise WorkflowConfigError(f"Custom workflow step {position} has invalid 'delay'.")
    return config


class WorkflowService:
    """Creates tasks and workflows and applies user lifecycle commands."""

    def __init__(
        self,
        *,
        repository: QueueRepository,
        resource_monitor: ResourceMonitor | None = None,
    ) -> None:
        self.repository = repository
        self.checkpoints = CheckpointManager(repository)
        self.resource_monitor = resource_monitor

    def add_task(self, command: AddTask) -> Task:
        if not command.command.strip():
            raise ValueError("Task command cannot be empty.")
        task_id = validate_task_id(command.task_id) if command.task_id else generate_id("task")
        now = utc_now()
        task = Task(
            task_id=task_id,
            kind=TaskKind.SIMPLE,
            status=TaskStatus.PENDING,
            created_at=now,
            updated_at=now,
            priority=command.priority,
            payload={
                **command.payload,
                "command": command.command,
                "description": command.description or command.command,
                "phase": command.phase,
            },
        )
        return self.repository.add_task(task)

    def create_workflow(self, command: CreateWorkflow) -> Task:
        config = parse_workflow_config(command.workflow_type, command.config)
        if command.workflow_type == ISSUE_MERGE:
            steps = build_issue_merge_steps(config["issue_id"])
        else:
            steps = [
                Step(
                    phase=str(item.get("phase") or "generic"),
                    command=str(item["command"]).strip(),
                    description=str(item.get("description", "")),
                    delay_seconds=float(item["delay"]) if item.get("delay") is not None else None,
                )
                for item in config["steps"]
            ]

        if command.workflow_id:
            workflow_id = validate_task_id(command.workflow_id)
        else:
            workflow_id = generate_id("workflow")
        now = utc_now()
        task = Task(
            task_id=workflow_id,
            kind=TaskKind.WORKFLOW,
            status=TaskStatus.PENDING,
            created_at=now,
            updated_at=now,
            priority=command.priority,
            workflow_type=command.workflow_type,
            config=config,
            steps=steps,
        )
        self.repository.add_task(task)
        logger.info(
            "[%s] Created %s workflow with %s steps",
            workflow_id,
            command.workflow_type,
            len(steps),
        )
        return task

    def pause(self, task_id: str) -> Task:
        def _pause(task: Task) -> Task:
            if task.status == TaskStatus.PAUSED:
                return task
            if task.is_workflow:
                task.checkpoints.append(capture_checkpoint(task, reason="paused"))
            transition_task(task, TaskStatus.PAUSED, reason="user_paused", keep_worker=True)
            return task

        task = self.repository.update_task(task_id, _pause)
        logger.info("[%s] Paused", task_id)
        return task

    def resume(self, task_id: str, step: int | None = None) -> Task:
        """Send a paused or failed task back to the queue.

        With `step`, the workflow is rewound or fast-forwarded to that index.
        """

        if step is not None:
            return self.checkpoints.resume_from_step(task_id, step)

        def _resume(task: Task) -> Task:
            if task.status not in {TaskStatus.PAUSED, TaskStatus.FAILED}:
                raise InvalidTransitionError(
                    subject="task",
                    current=task.status.value,
                    requested=TaskStatus.PENDING.value,
                )
            ensure_not_running(task)
            now = utc_now()
            for index, item in enumerate(task.steps):
                if index >= task.current_step and item.status != StepStatus.COMPLETED:
                    reset_step(item, StepStatus.PENDING)
                    item.retry_count = 0
                    task.results.pop(f"step_{index}", None)
            task.retry_count = 0
            task.workflow_retry_count = 0
            task.resumed_count += 1
            task.resumed_at = now
            task.cancelled_at = None
            task.cancellation_reason = None
            make_pending(task, reason="resume", now=now)
            return task

        task = self.repository.update_task(task_id, _resume)
        logger.info("[%s] Resumed from step %s", task_id, task.current_step)
        return task

    def cancel(self, task_id: str) -> Task:
        def _cancel(task: Task) -> Task:
            if task.status == TaskStatus.FAILED and task.cancelled_at is not None:
                return task
            if task.is_workflow:
                task.checkpoints.append(capture_checkpoint(task, reason="cancelled"))
            transition_task(task, TaskStatus.FAILED, reason=CANCELLATION_REASON, keep_worker=True)
            task.cancelled_at = utc_now()
            task.cancellation_reason = CANCELLATION_REASON
            return task

        task = self.repository.update_task(task_id, _cancel)
        logger.info("[%s] Cancelled", task_id)
        return task

    def get_task(self, task_id: str) -> Task:
        return self.repository.get_task(task_id)

    def workflow_status(self, workflow_id: str) -> dict[str, Any]:
        task = self.repository.get_task(workflow_id)
        return _summary(task)

    def workflow_detailed_status(self, workflow_id: str) -> dict[str, Any]:
        task = self.repository.get_task(workflow_id)
        report = _summary(task)
        now = utc_now()
        estimated = _estimate_completion(task)
        report["timing"] = {
            "created_at": to_iso(task.created_at),
            "updated_at": to_iso(task.updated_at),
            "completed_at": to_iso(task.completed_at),
            "elapsed_seconds": round(
                ((task.completed_at or now) - task.created_at).total_seconds(),
                1,
            ),
            "estimated_completion": to_iso(now + estimated) if estimated is not None else None,
        }
        if task.current_step < len(task.steps):
            current = task.steps[task.current_step]
            report["current_step_info"] = {
                "index": task.current_step,
                "phase": current.phase,
                "command": current.command,
                "description": current.description,
                "status": current.status.value,
                "retry_count": current.retry_count,
            }
        report["steps"] = [
            {"index": index, "phase": item.phase, "status": item.status.value}
            for index, item in enumerate(task.steps)
        ]
        report["errors"] = {
            "count": len(task.error_history),
            "last_error": task.last_error,
            "workflow_retry_count": task.workflow_retry_count,
        }
        report["checkpoint_count"] = len(task.checkpoints)
        report["resumed_count"] = task.resumed_count
        if task.cancelled_at is not None:
            report["cancelled_at"] = to_iso(task.cancelled_at)
            report["cancellation_reason"] = task.cancellation_reason
        if self.resource_monitor is not None:
            sample = self.resource_monitor.latest()
            report["resources"] = sample.to_dict() if sample is not None else None
        return report


def _summary(task: Task) -> dict[str, Any]:
    total = len(task.steps)
    completed = sum(1 for item in task.steps if item.status == StepStatus.COMPLETED)
    if task.is_workflow:
        progress = round(completed * 100 / total, 1) if total else 0.0
    else:
        progress = 100.0 if task.status == TaskStatus.COMPLETED else 0.0
    return {
        "id": task.task_id,
        "type": task.workflow_type if task.is_workflow else task.kind.value,
        "status": task.status.value,
        "current_step": task.current_step,
        "total_steps": total,
        "completed_steps": completed,
        "progress_percent": progress,
    }


def _estimate_completion(task: Task) -> timedelta | None:
    if task.status not in {TaskStatus.IN_PROGRESS, TaskStatus.PENDING} or not task.is_workflow:
        return None
    durations = [
        (item.completed_at - item.started_at).total_seconds()
        for item in task.steps
        if item.status == StepStatus.COMPLETED
        and item.started_at is not None
        and item.completed_at is not None
    ]
    if not durations:
        return None
    remaining = sum(1 for item in task.steps if item.status != StepStatus.COMPLETED)
    return timedelta(seconds=sum(durations) / len(durations) * remaining)
