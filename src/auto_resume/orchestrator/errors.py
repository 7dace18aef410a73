"""Exception hierarchy for queue storage, locking and workflow control."""

from __future__ import annotations


class QueueError(RuntimeError):
    """Base class for queue engine errors surfaced to callers."""


class CorruptStoreError(QueueError):
    """Persisted queue document is not valid JSON or misses required keys."""

    def __init__(self, message: str, *, path: object | None = None) -> None:
        super().__init__(message)
        self.path = path


class LockTimeoutError(QueueError, TimeoutError):
    """Queue lock could not be acquired within the bounded attempts."""

    def __init__(self, message: str, *, attempts: int, holder_pid: int | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.holder_pid = holder_pid


class TaskNotFoundError(QueueError, KeyError):
    """No task with the requested id exists in the queue."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id

    def __str__(self) -> str:
        return f"Task not found: {self.task_id}"


class DuplicateTaskError(QueueError):
    """A task with the same id is already queued."""


class InvalidTransitionError(QueueError):
    """Requested status change is not part of the allowed transition graph."""

    def __init__(self, *, subject: str, current: str, requested: str) -> None:
        super().__init__(f"Invalid {subject} transition: {current} -> {requested}")
        self.subject = subject
        self.current = current
        self.requested = requested


class WorkflowConfigError(QueueError, ValueError):
    """Workflow type or configuration payload is invalid."""
