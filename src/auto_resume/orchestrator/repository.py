"""Lock-guarded queue repository over the JSON queue store."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TypeVar

from auto_resume.config import Settings
from auto_resume.orchestrator.checkpoints import capture_checkpoint
from auto_resume.orchestrator.common import current_host, current_pid, pid_alive, utc_now
from auto_resume.orchestrator.errors import DuplicateTaskError, QueueError, TaskNotFoundError
from auto_resume.orchestrator.locking import QueueLock
from auto_resume.orchestrator.models import QueueState, StepStatus, Task, TaskKind, TaskStatus
from auto_resume.orchestrator.state_machine import reset_step, transition_task
from auto_resume.orchestrator.store import QueueStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class QueueTransaction:
    """Working copy of the queue state inside one lock scope."""

    state: QueueState
    changed: bool = True

    def discard(self) -> None:
        """Leave the queue file untouched when the scope exits."""

        self.changed = False


class QueueRepository:
    """Queue persistence facade; every mutation runs under the queue lock."""

    def __init__(
        self,
        store: QueueStore,
        lock: QueueLock,
        *,
        backup_on_save: bool = True,
        max_queue_size: int = 0,
    ) -> None:
        self.store = store
        self.lock = lock
        self.backup_on_save = backup_on_save
        self.max_queue_size = max_queue_size

    @classmethod
    def from_settings(cls, settings: Settings) -> QueueRepository:
        store = QueueStore(settings.queue_dir)
        lock = QueueLock(
            settings.queue_dir,
            stale_after_seconds=settings.lock.stale_after_seconds,
            max_backoff_seconds=settings.lock.max_backoff_seconds,
            default_max_attempts=settings.lock.max_attempts,
            default_base_backoff=settings.lock.base_backoff_seconds,
        )
        return cls(
            store,
            lock,
            backup_on_save=settings.queue.backup_on_save,
            max_queue_size=settings.queue.max_queue_size,
        )

    def init_storage(self) -> None:
        """Create the queue directory layout and an empty queue file if missing."""

        self.store.ensure_layout()
        with self.transaction() as txn:
            if self.store.queue_path.exists():
                txn.discard()

    @contextmanager
    def transaction(self, *, with_backup: bool = False) -> Iterator[QueueTransaction]:
        """Load, mutate and save the queue under the lock.

        The state is written only when the block exits without an exception
        and the transaction was not discarded.
        """

        with self.lock.hold():
            txn = QueueTransaction(state=self.store.load_or_recover())
            yield txn
            if txn.changed:
                self.store.save(txn.state, with_backup=with_backup)

    def read_state(self) -> QueueState:
        """Lock-free read; atomic saves keep every observed file complete."""

        return self.store.load_or_recover()

    def add_task(self, task: Task) -> Task:
        with self.transaction(with_backup=self.backup_on_save) as txn:
            if txn.state.find(task.task_id) is not None:
                raise DuplicateTaskError(f"Task already exists: {task.task_id}")
            if self.max_queue_size and len(txn.state.tasks) >= self.max_queue_size:
                raise QueueError(
                    f"Queue is full ({self.max_queue_size} tasks); run cleanup first.",
                )
            txn.state.tasks.append(task)
        logger.info(
            "Task %s added (%s, priority %s)",
            task.task_id,
            task.kind.value,
            task.priority,
        )
        return task

    def remove_task(self, task_id: str) -> Task:
        with self.transaction(with_backup=self.backup_on_save) as txn:
            task = _require(txn.state, task_id)
            txn.state.tasks.remove(task)
        logger.info("Task %s removed", task_id)
        return task

    def get_task(self, task_id: str) -> Task:
        return _require(self.read_state(), task_id)

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        kind: TaskKind | None = None,
    ) -> list[Task]:
        tasks = self.read_state().tasks
        if status is not None:
            tasks = [task for task in tasks if task.status == status]
        if kind is not None:
            tasks = [task for task in tasks if task.kind == kind]
        return sorted(tasks, key=_dispatch_order)

    def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        reason: str | None = None,
    ) -> Task:
        """Transition a task; a request for the current status is a no-op."""

        with self.transaction() as txn:
            task = _require(txn.state, task_id)
            if not transition_task(task, status, reason=reason):
                txn.discard()
        return task

    def update_task(self, task_id: str, mutate: Callable[[Task], T]) -> T:
        """Apply `mutate` to the stored task and persist the result."""

        with self.transaction() as txn:
            task = _require(txn.state, task_id)
            result = mutate(task)
            task.updated_at = utc_now()
        return result

    def claim_next_task(self, *, kind: TaskKind | None = None) -> Task | None:
        """Mark the next pending task in progress for this process.

        Tasks are taken by priority (lower first) then creation time. Nothing
        is claimed while a live worker is still recorded on any task, including
        one paused or cancelled under it.
        """

        with self.transaction() as txn:
            active = [task for task in txn.state.tasks if _holds_session(task)]
            if active:
                logger.info(
                    "Task %s is still executing in pid %s; not claiming another",
                    active[0].task_id,
                    active[0].worker_pid,
                )
                txn.discard()
                return None

            candidates = [
                task
                for task in txn.state.tasks
                if task.status == TaskStatus.PENDING and (kind is None or task.kind == kind)
            ]
            if not candidates:
                txn.discard()
                return None

            task = min(candidates, key=_dispatch_order)
            transition_task(task, TaskStatus.IN_PROGRESS, reason="claimed")
            task.worker_pid = current_pid()
            task.worker_host = current_host()
        return task

    def claim_task(self, task_id: str) -> Task:
        """Claim a specific task, as `workflow execute <id>` does."""

        with self.transaction() as txn:
            task = _require(txn.state, task_id)
            others = [
                other
                for other in txn.state.tasks
                if other.task_id != task_id and _holds_session(other)
            ]
            if others:
                raise QueueError(
                    f"Task {others[0].task_id} is already executing"
                    f" (pid {others[0].worker_pid}); only one task runs at a time.",
                )
            if _holds_session(task):
                raise QueueError(f"Task {task_id} is already executing (pid {task.worker_pid}).")
            if task.status == TaskStatus.IN_PROGRESS:
                _requeue_orphan(task)
            transition_task(task, TaskStatus.IN_PROGRESS, reason="claimed")
            task.worker_pid = current_pid()
            task.worker_host = current_host()
        return task

    def release_worker(self, task_id: str) -> Task:
        """Drop this process's worker record from a task it stopped executing."""

        def _release(task: Task) -> Task:
            if (
                task.status != TaskStatus.IN_PROGRESS
                and task.worker_pid == current_pid()
                and task.worker_host in {None, current_host()}
            ):
                task.worker_pid = None
                task.worker_host = None
            return task

        return self.update_task(task_id, _release)

    def recover_orphaned_tasks(self) -> list[str]:
        """Requeue in-progress tasks whose worker died on this host."""

        recovered: list[str] = []
        with self.transaction() as txn:
            for task in txn.state.tasks:
                if task.status != TaskStatus.IN_PROGRESS or not _is_orphaned(task):
                    continue
                _requeue_orphan(task)
                recovered.append(task.task_id)
            if not recovered:
                txn.discard()
        for task_id in recovered:
            logger.warning("[%s] Recovered orphaned execution; task requeued", task_id)
        return recovered

    def stats(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        tasks = self.read_state().tasks
        for task in tasks:
            counts[task.status.value] += 1
        counts["total"] = len(tasks)
        counts["workflows"] = sum(1 for task in tasks if task.is_workflow)
        return counts


def _require(state: QueueState, task_id: str) -> Task:
    task = state.find(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return task


def _dispatch_order(task: Task) -> tuple[int, float]:
    return (task.priority, task.created_at.timestamp())


def _is_orphaned(task: Task) -> bool:
    if task.worker_host not in {None, current_host()}:
        return False
    if task.worker_pid is None:
        return True
    return not pid_alive(task.worker_pid)


def _holds_session(task: Task) -> bool:
    """Whether a live worker may still be sending commands for `task`."""

    if task.status == TaskStatus.IN_PROGRESS:
        return not _is_orphaned(task)
    return task.worker_pid is not None and not _is_orphaned(task)


def _requeue_orphan(task: Task) -> None:
    dead_pid = task.worker_pid
    if task.is_workflow:
        task.checkpoints.append(capture_checkpoint(task, reason="orphan_recovery"))
        for step in task.steps[task.current_step :]:
            if step.status == StepStatus.IN_PROGRESS:
                reset_step(step, StepStatus.PENDING)
    transition_task(task, TaskStatus.PAUSED, reason=f"worker {dead_pid} exited")
    transition_task(task, TaskStatus.PENDING, reason="orphan_recovery")
