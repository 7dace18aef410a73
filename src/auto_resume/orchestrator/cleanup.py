"""Queue maintenance: retention, backup pruning and size limits."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from auto_resume.config import QueueSettings
from auto_resume.orchestrator.common import utc_now
from auto_resume.orchestrator.models import Task, TaskStatus
from auto_resume.orchestrator.repository import QueueRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CleanupReport:
    """Counts of what a cleanup pass removed (or would remove on dry run)."""

    dry_run: bool
    completed_removed: int = 0
    failed_removed: int = 0
    size_limit_removed: int = 0
    backups_removed: int = 0
    temp_files_removed: int = 0
    removed_task_ids: list[str] = field(default_factory=list)

    @property
    def tasks_removed(self) -> int:
        return self.completed_removed + self.failed_removed + self.size_limit_removed


def run_cleanup(
    repository: QueueRepository,
    settings: QueueSettings,
    *,
    dry_run: bool = False,
    now: datetime | None = None,
) -> CleanupReport:
    """Drop old finished tasks, stale backups and interrupted-save leftovers."""

    moment = now or utc_now()
    report = CleanupReport(dry_run=dry_run)
    completed_cutoff = moment - timedelta(days=settings.completed_retention_days)
    failed_cutoff = moment - timedelta(days=settings.failed_retention_days)

    with repository.transaction(with_backup=settings.backup_on_save) as txn:
        kept: list[Task] = []
        for task in txn.state.tasks:
            finished_at = task.completed_at or task.updated_at
            if task.status == TaskStatus.COMPLETED and finished_at < completed_cutoff:
                report.completed_removed += 1
                report.removed_task_ids.append(task.task_id)
                continue
            if task.status == TaskStatus.FAILED and task.updated_at < failed_cutoff:
                report.failed_removed += 1
                report.removed_task_ids.append(task.task_id)
                continue
            kept.append(task)

        if settings.max_queue_size and len(kept) > settings.max_queue_size:
            overflow = len(kept) - settings.max_queue_size
            for victim in _size_limit_victims(kept, overflow):
                kept.remove(victim)
                report.size_limit_removed += 1
                report.removed_task_ids.append(victim.task_id)

        # Saves run only under the lock; no temp file is in flight here.
        report.temp_files_removed = len(repository.store.cleanup_temp_files(dry_run=dry_run))

        if dry_run or not report.removed_task_ids:
            txn.discard()
        else:
            txn.state.tasks = kept

    report.backups_removed = len(
        repository.store.prune_backups(
            older_than=timedelta(days=settings.backup_retention_days),
            dry_run=dry_run,
        ),
    )
    logger.info(
        "Cleanup%s: %s tasks, %s backups, %s temp files",
        " (dry run)" if dry_run else "",
        report.tasks_removed,
        report.backups_removed,
        report.temp_files_removed,
    )
    return report


def _size_limit_victims(tasks: list[Task], overflow: int) -> list[Task]:
    """Oldest completed tasks first, then oldest failed; active work is never dropped."""

    completed = sorted(
        (task for task in tasks if task.status == TaskStatus.COMPLETED),
        key=lambda task: task.updated_at,
    )
    failed = sorted(
        (task for task in tasks if task.status == TaskStatus.FAILED),
        key=lambda task: task.updated_at,
    )
    victims = [*completed, *failed][:overflow]
    if len(victims) < overflow:
        logger.warning(
            "Queue exceeds size limit by %s but only %s finished tasks can be removed",
            overflow,
            len(victims),
        )
    return victims
