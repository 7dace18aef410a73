"""CLI entrypoint for auto-resume."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from auto_resume import __version__
from auto_resume.orchestrator.controllers import (
    AddTaskCommand,
    CleanupCommand,
    ListTasksCommand,
    QueueCliController,
    RemoveTaskCommand,
    RestoreBackupCommand,
    RunCommand,
    StatsCommand,
    WorkflowCheckpointCommand,
    WorkflowCreateCommand,
    WorkflowRestoreCommand,
    WorkflowResumeCommand,
    WorkflowStatusCommand,
    WorkflowTaskCommand,
)
from auto_resume.orchestrator.errors import QueueError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = QueueCliController()
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="auto-resume")
@click.option(
    "--queue-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Queue directory (defaults to AUTO_RESUME_QUEUE_DIR or ./queue).",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Root logging level.",
)
@click.pass_context
def auto_resume(ctx: click.Context, queue_dir: Path | None, log_level: str) -> None:
    """Persistent task queue that runs workflows in a tmux session and recovers from failures.

    Tasks and workflows live in a JSON queue file guarded by a directory lock.
    `run` drains the queue one task at a time; `workflow` manages multi-step
    workflows, checkpoints and resumes.
    """

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)
    ctx.obj = queue_dir


@auto_resume.command("add")
@click.argument("command")
@click.option("--description", default="", help="Human readable description.")
@click.option(
    "--priority",
    type=click.IntRange(min=1),
    default=100,
    show_default=True,
    help="Lower runs first.",
)
@click.option("--phase", default="generic", show_default=True, help="Completion phase.")
@click.option("--task-id", default=None, help="Explicit task id.")
@click.pass_obj
def add_task(  # noqa: PLR0913
    queue_dir: Path | None,
    command: str,
    description: str,
    priority: int,
    phase: str,
    task_id: str | None,
) -> None:
    """Add a simple task that sends COMMAND to the session."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.add_task(
                AddTaskCommand(
                    queue_dir=queue_dir,
                    command=command,
                    description=description,
                    priority=priority,
                    phase=phase,
                    task_id=task_id,
                ),
            ),
        )


@auto_resume.command("remove")
@click.argument("task_id")
@click.pass_obj
def remove_task(queue_dir: Path | None, task_id: str) -> None:
    """Remove a task from the queue."""

    with _cli_errors():
        _emit_lines(CONTROLLER.remove_task(RemoveTaskCommand(queue_dir=queue_dir, task_id=task_id)))


@auto_resume.command("list")
@click.argument("status", required=False)
@click.pass_obj
def list_tasks(queue_dir: Path | None, status: str | None) -> None:
    """List tasks, optionally filtered by STATUS."""

    with _cli_errors():
        _emit_lines(CONTROLLER.list_tasks(ListTasksCommand(queue_dir=queue_dir, status=status)))


@auto_resume.command("stats")
@click.pass_obj
def stats(queue_dir: Path | None) -> None:
    """Show task counts per status."""

    with _cli_errors():
        _emit_lines(CONTROLLER.stats(StatsCommand(queue_dir=queue_dir)))


@auto_resume.command("run")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum tasks to process in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=0),
    default=1,
    show_default=True,
    help="Stop after this many empty polls in loop mode (0 waits forever).",
)
@click.pass_obj
def run(
    queue_dir: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
) -> None:
    """Run the dispatcher over pending tasks."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.run(
                RunCommand(
                    queue_dir=queue_dir,
                    once=once,
                    max_tasks=max_tasks,
                    max_idle_polls=max_idle_polls,
                ),
            ),
        )


@auto_resume.command("cleanup")
@click.option("--dry-run", is_flag=True, help="Report what would be removed.")
@click.pass_obj
def cleanup(queue_dir: Path | None, dry_run: bool) -> None:
    """Remove old finished tasks, stale backups and temp files."""

    with _cli_errors():
        _emit_lines(CONTROLLER.cleanup(CleanupCommand(queue_dir=queue_dir, dry_run=dry_run)))


@auto_resume.command("restore-backup")
@click.argument("path", required=False, type=click.Path(path_type=Path, dir_okay=False))
@click.pass_obj
def restore_backup(queue_dir: Path | None, path: Path | None) -> None:
    """Restore the live queue from PATH or the newest valid backup."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.restore_backup(
                RestoreBackupCommand(queue_dir=queue_dir, backup_path=path),
            ),
        )


@auto_resume.group()
def workflow() -> None:
    """Multi-step workflow commands."""


@workflow.command("create")
@click.argument("workflow_type", metavar="TYPE")
@click.argument("config")
@click.option(
    "--priority",
    type=click.IntRange(min=1),
    default=100,
    show_default=True,
    help="Lower runs first.",
)
@click.option("--workflow-id", default=None, help="Explicit workflow id.")
@click.pass_obj
def workflow_create(
    queue_dir: Path | None,
    workflow_type: str,
    config: str,
    priority: int,
    workflow_id: str | None,
) -> None:
    """Create a workflow of TYPE from CONFIG.

    `issue-merge` accepts an issue id or `{"issue_id": ...}`; `custom`
    requires `{"steps": [{"phase": ..., "command": ...}]}`.
    """

    with _cli_errors():
        _emit_lines(
            CONTROLLER.create_workflow(
                WorkflowCreateCommand(
                    queue_dir=queue_dir,
                    workflow_type=workflow_type,
                    config=config,
                    priority=priority,
                    workflow_id=workflow_id,
                ),
            ),
        )


@workflow.command("execute")
@click.argument("workflow_id")
@click.pass_obj
def workflow_execute(queue_dir: Path | None, workflow_id: str) -> None:
    """Execute one workflow now, in the foreground."""

    with _cli_errors():
        result = CONTROLLER.execute_workflow(
            WorkflowTaskCommand(queue_dir=queue_dir, workflow_id=workflow_id),
        )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(f"Workflow {workflow_id} did not complete.")


@workflow.command("status")
@click.argument("workflow_id")
@click.argument("detail", required=False, type=click.Choice(["detailed"]))
@click.pass_obj
def workflow_status(queue_dir: Path | None, workflow_id: str, detail: str | None) -> None:
    """Show workflow progress; add `detailed` for timing, errors and resources."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.workflow_status(
                WorkflowStatusCommand(
                    queue_dir=queue_dir,
                    workflow_id=workflow_id,
                    detailed=detail is not None,
                ),
            ),
        )


@workflow.command("list")
@click.argument("status", required=False)
@click.pass_obj
def workflow_list(queue_dir: Path | None, status: str | None) -> None:
    """List workflows, optionally filtered by STATUS."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.list_tasks(
                ListTasksCommand(queue_dir=queue_dir, status=status, workflows_only=True),
            ),
        )


@workflow.command("pause")
@click.argument("workflow_id")
@click.pass_obj
def workflow_pause(queue_dir: Path | None, workflow_id: str) -> None:
    """Pause a workflow; a running dispatcher stops before the next step."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.pause_workflow(
                WorkflowTaskCommand(queue_dir=queue_dir, workflow_id=workflow_id),
            ),
        )


@workflow.command("cancel")
@click.argument("workflow_id")
@click.pass_obj
def workflow_cancel(queue_dir: Path | None, workflow_id: str) -> None:
    """Cancel a workflow (marks it failed)."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.cancel_workflow(
                WorkflowTaskCommand(queue_dir=queue_dir, workflow_id=workflow_id),
            ),
        )


@workflow.command("resume")
@click.argument("workflow_id")
@click.argument("step", required=False, type=click.IntRange(min=0))
@click.pass_obj
def workflow_resume(queue_dir: Path | None, workflow_id: str, step: int | None) -> None:
    """Requeue a paused or failed workflow, optionally from STEP (0-based)."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.resume_workflow(
                WorkflowResumeCommand(queue_dir=queue_dir, workflow_id=workflow_id, step=step),
            ),
        )


@workflow.command("checkpoint")
@click.argument("workflow_id")
@click.option("--reason", default="manual", show_default=True, help="Checkpoint reason.")
@click.pass_obj
def workflow_checkpoint(queue_dir: Path | None, workflow_id: str, reason: str) -> None:
    """Snapshot the current workflow state."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.checkpoint_workflow(
                WorkflowCheckpointCommand(
                    queue_dir=queue_dir,
                    workflow_id=workflow_id,
                    reason=reason,
                ),
            ),
        )


@workflow.command("restore")
@click.argument("workflow_id")
@click.argument("checkpoint_id")
@click.pass_obj
def workflow_restore(queue_dir: Path | None, workflow_id: str, checkpoint_id: str) -> None:
    """Restore a workflow from CHECKPOINT_ID and requeue it."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.restore_workflow(
                WorkflowRestoreCommand(
                    queue_dir=queue_dir,
                    workflow_id=workflow_id,
                    checkpoint_id=checkpoint_id,
                ),
            ),
        )


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (QueueError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    auto_resume()
