"""Controllers for queue and workflow CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from auto_resume.config import Settings
from auto_resume.orchestrator.backend import SessionBackend, TmuxSession
from auto_resume.orchestrator.cleanup import run_cleanup
from auto_resume.orchestrator.dispatcher import QueueDispatcher
from auto_resume.orchestrator.models import StepStatus, Task, TaskKind, TaskStatus
from auto_resume.orchestrator.repository import QueueRepository
from auto_resume.orchestrator.resources import ResourceMonitor
from auto_resume.orchestrator.services import AddTask, CreateWorkflow, WorkflowService

SessionFactory = Callable[[Settings], SessionBackend]


@dataclass(slots=True)
class AddTaskCommand:
    """CLI input for simple task enqueue."""

    queue_dir: Path | None
    command: str
    description: str
    priority: int
    phase: str
    task_id: str | None


@dataclass(slots=True)
class RemoveTaskCommand:
    """CLI input for task removal."""

    queue_dir: Path | None
    task_id: str


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    queue_dir: Path | None
    status: str | None
    workflows_only: bool = False


@dataclass(slots=True)
class StatsCommand:
    queue_dir: Path | None


@dataclass(slots=True)
class RunCommand:
    """CLI input for dispatcher execution."""

    queue_dir: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class CleanupCommand:
    """CLI input for queue maintenance."""

    queue_dir: Path | None
    dry_run: bool


@dataclass(slots=True)
class RestoreBackupCommand:
    """CLI input for restoring the live queue from a backup file."""

    queue_dir: Path | None
    backup_path: Path | None


@dataclass(slots=True)
class WorkflowCreateCommand:
    """CLI input for workflow creation."""

    queue_dir: Path | None
    workflow_type: str
    config: str
    priority: int
    workflow_id: str | None


@dataclass(slots=True)
class WorkflowTaskCommand:
    """CLI input for execute/pause/cancel operations."""

    queue_dir: Path | None
    workflow_id: str


@dataclass(slots=True)
class WorkflowStatusCommand:
    queue_dir: Path | None
    workflow_id: str
    detailed: bool


@dataclass(slots=True)
class WorkflowResumeCommand:
    """CLI input for resume, optionally from an explicit step."""

    queue_dir: Path | None
    workflow_id: str
    step: int | None


@dataclass(slots=True)
class WorkflowCheckpointCommand:
    queue_dir: Path | None
    workflow_id: str
    reason: str


@dataclass(slots=True)
class WorkflowRestoreCommand:
    queue_dir: Path | None
    workflow_id: str
    checkpoint_id: str


@dataclass(slots=True)
class ExecutionReport:
    """Execution report to render in CLI."""

    lines: list[str]
    success: bool


class QueueCliController:
    """Coordinates queue, dispatcher and workflow CLI operations."""

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self.session_factory = session_factory or _tmux_session

    def add_task(self, command: AddTaskCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _repository(settings) as repository:
            task = WorkflowService(repository=repository).add_task(
                AddTask(
                    command=command.command,
                    description=command.description,
                    priority=command.priority,
                    phase=command.phase,
                    task_id=command.task_id,
                ),
            )
        return [
            f"Task added: task_id={task.task_id} status={task.status.value} "
            f"priority={task.priority}",
        ]

    def remove_task(self, command: RemoveTaskCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _repository(settings) as repository:
            task = repository.remove_task(command.task_id)
        return [f"Task removed: {task.task_id} (was {task.status.value})"]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        status_filter = _parse_status(command.status)
        kind = TaskKind.WORKFLOW if command.workflows_only else None
        with _repository(settings) as repository:
            tasks = repository.list_tasks(status=status_filter, kind=kind)

        lines = [f"{'Workflows' if command.workflows_only else 'Tasks'}: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def stats(self, command: StatsCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _repository(settings) as repository:
            counts = repository.stats()
            backups = repository.store.list_backups()

        return [
            f"Queue: {settings.queue_dir}",
            "Tasks: "
            f"total={counts['total']} workflows={counts['workflows']} "
            + " ".join(f"{status.value}={counts[status.value]}" for status in TaskStatus),
            f"Backups: {len(backups)}",
        ]

    def run(self, command: RunCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _repository(settings) as repository:
            dispatcher = self._dispatcher(settings, repository)
            summary = (
                dispatcher.run_once()
                if command.once
                else dispatcher.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Dispatcher summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} paused={summary.paused} retried={summary.retried} "
            f"cooldowns={summary.cooldowns} recovered={summary.recovered} "
            f"idle_polls={summary.idle_polls}",
        ]

    def cleanup(self, command: CleanupCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _repository(settings) as repository:
            report = run_cleanup(repository, settings.queue, dry_run=command.dry_run)

        prefix = "Cleanup (dry run)" if report.dry_run else "Cleanup"
        lines = [
            f"{prefix}: completed={report.completed_removed} failed={report.failed_removed} "
            f"size_limit={report.size_limit_removed} backups={report.backups_removed} "
            f"temp_files={report.temp_files_removed}",
        ]
        lines.extend(f"  removed {task_id}" for task_id in report.removed_task_ids)
        return lines

    def restore_backup(self, command: RestoreBackupCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _repository(settings) as repository, repository.lock.hold():
            restored_from = repository.store.restore_backup(command.backup_path)
            state = repository.store.load()
        return [f"Queue restored from {restored_from}: {len(state.tasks)} tasks"]

    def create_workflow(self, command: WorkflowCreateCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _repository(settings) as repository:
            task = WorkflowService(repository=repository).create_workflow(
                CreateWorkflow(
                    workflow_type=command.workflow_type,
                    config=command.config,
                    priority=command.priority,
                    workflow_id=command.workflow_id,
                ),
            )

        lines = [
            f"Workflow created: workflow_id={task.task_id} type={task.workflow_type} "
            f"steps={len(task.steps)}",
        ]
        lines.extend(
            f"  {index}. [{step.phase}] {step.command}" for index, step in enumerate(task.steps)
        )
        return lines

    def execute_workflow(self, command: WorkflowTaskCommand) -> ExecutionReport:
        settings = _settings(command.queue_dir)
        with _repository(settings) as repository:
            dispatcher = self._dispatcher(settings, repository)
            outcome = dispatcher.execute_task(command.workflow_id)

        lines = [
            f"Execution finished: task_id={outcome.task_id} status={outcome.status.value} "
            f"steps_completed={outcome.steps_completed} retries={outcome.retries} "
            f"cooldowns={outcome.cooldowns}",
        ]
        if outcome.message:
            lines.append(f"Message: {outcome.message}")
        return ExecutionReport(
            lines=lines,
            success=outcome.status in {TaskStatus.COMPLETED, TaskStatus.PAUSED},
        )

    def workflow_status(self, command: WorkflowStatusCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _repository(settings) as repository:
            service = WorkflowService(
                repository=repository,
                resource_monitor=_resource_monitor(settings) if command.detailed else None,
            )
            if service.resource_monitor is not None:
                service.resource_monitor.sample()
            report = (
                service.workflow_detailed_status(command.workflow_id)
                if command.detailed
                else service.workflow_status(command.workflow_id)
            )
        return json.dumps(report, indent=2, ensure_ascii=False).splitlines()

    def pause_workflow(self, command: WorkflowTaskCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _repository(settings) as repository:
            task = WorkflowService(repository=repository).pause(command.workflow_id)
        return [f"Workflow paused: {task.task_id} at step {task.current_step}"]

    def cancel_workflow(self, command: WorkflowTaskCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _repository(settings) as repository:
            task = WorkflowService(repository=repository).cancel(command.workflow_id)
        return [f"Workflow cancelled: {task.task_id} ({task.cancellation_reason})"]

    def resume_workflow(self, command: WorkflowResumeCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _repository(settings) as repository:
            task = WorkflowService(repository=repository).resume(
                command.workflow_id,
                step=command.step,
            )
        return [
            f"Workflow resumed: {task.task_id} status={task.status.value} "
            f"next_step={task.current_step}",
        ]

    def checkpoint_workflow(self, command: WorkflowCheckpointCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _repository(settings) as repository:
            checkpoint_id = WorkflowService(repository=repository).checkpoints.create_checkpoint(
                command.workflow_id,
                reason=command.reason,
            )
        return [f"Checkpoint created: {checkpoint_id}"]

    def restore_workflow(self, command: WorkflowRestoreCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _repository(settings) as repository:
            task = WorkflowService(repository=repository).checkpoints.restore_checkpoint(
                command.workflow_id,
                command.checkpoint_id,
            )
        return [
            f"Workflow restored: {task.task_id} from {command.checkpoint_id} "
            f"status={task.status.value} next_step={task.current_step}",
        ]

    def _dispatcher(self, settings: Settings, repository: QueueRepository) -> QueueDispatcher:
        return QueueDispatcher(
            repository=repository,
            session=self.session_factory(settings),
            settings=settings,
            resource_monitor=_resource_monitor(settings),
        )


def _settings(queue_dir: Path | None) -> Settings:
    settings = Settings.from_env(queue_dir=queue_dir)
    settings.validate()
    return settings


def _tmux_session(settings: Settings) -> SessionBackend:
    return TmuxSession(
        settings.session.tmux_session_name,
        tmux_binary=settings.session.tmux_binary,
        capture_lines=settings.session.capture_lines,
    )


def _resource_monitor(settings: Settings) -> ResourceMonitor | None:
    if not settings.resources.enabled:
        return None
    return ResourceMonitor(settings.resources, queue_dir=settings.queue_dir)


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    try:
        return TaskStatus(normalized)
    except ValueError as error:
        choices = ", ".join(status.value for status in TaskStatus)
        raise ValueError(f"Unsupported status {value!r}; expected one of: {choices}") from error


def _task_line(task: Task) -> str:
    if task.is_workflow:
        done = sum(1 for step in task.steps if step.status == StepStatus.COMPLETED)
        detail = f"workflow={task.workflow_type} steps={done}/{len(task.steps)}"
    else:
        detail = f"command={task.payload.get('command', '')!r}"
    return (
        f"{task.task_id} status={task.status.value} priority={task.priority} "
        f"retries={task.retry_count} {detail}"
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[QueueRepository]:
    repository = QueueRepository.from_settings(settings)
    repository.init_storage()
    yield repository
