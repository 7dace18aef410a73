"""Domain models for the task queue, workflows and recovery audit trail."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from auto_resume.orchestrator.common import (
    from_iso,
    parse_optional_datetime,
    to_iso,
    utc_now,
)

QUEUE_FORMAT_VERSION = "2.0.0"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class StepStatus(str, Enum):
    """Lifecycle of one workflow step."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskKind(str, Enum):
    SIMPLE = "simple"
    WORKFLOW = "workflow"


class ErrorKind(str, Enum):
    """Normalized failure kinds used by the recovery policy."""

    NETWORK = "network"
    SESSION = "session"
    AUTH = "auth"
    SYNTAX = "syntax"
    USAGE_LIMIT = "usage_limit"
    TIMEOUT = "timeout"
    GENERIC = "generic"


class RecoveryAction(str, Enum):
    RETRY = "retry"
    COOLDOWN = "cooldown"
    FATAL = "fatal"


@dataclass(slots=True)
class StatusChange:
    """One recorded task status transition."""

    from_status: TaskStatus
    to_status: TaskStatus
    at: datetime
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.from_status.value,
            "to": self.to_status.value,
            "at": to_iso(self.at),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StatusChange:
        return cls(
            from_status=TaskStatus(data["from"]),
            to_status=TaskStatus(data["to"]),
            at=parse_optional_datetime(data.get("at")) or utc_now(),
            reason=data.get("reason"),
        )


@dataclass(slots=True)
class ErrorRecord:
    """Audit entry appended for every classified failure."""

    kind: ErrorKind
    output: str
    timestamp: datetime
    retry_count: int
    action: RecoveryAction
    step_index: int | None = None
    delay_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_index": self.step_index,
            "error_type": self.kind.value,
            "error_output": self.output,
            "timestamp": to_iso(self.timestamp),
            "retry_count": self.retry_count,
            "action": self.action.value,
            "delay_seconds": self.delay_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorRecord:
        return cls(
            kind=ErrorKind(data.get("error_type", ErrorKind.GENERIC.value)),
            output=str(data.get("error_output", "")),
            timestamp=parse_optional_datetime(data.get("timestamp")) or utc_now(),
            retry_count=int(data.get("retry_count", 0)),
            action=RecoveryAction(data.get("action", RecoveryAction.FATAL.value)),
            step_index=data.get("step_index"),
            delay_seconds=data.get("delay_seconds"),
        )


@dataclass(slots=True)
class Step:
    """One phase of a workflow; its index is its identity."""

    phase: str
    command: str
    description: str = ""
    status: StepStatus = StepStatus.PENDING
    retry_count: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    completion: str | None = None
    delay_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "phase": self.phase,
            "status": self.status.value,
            "command": self.command,
            "description": self.description,
            "retry_count": self.retry_count,
        }
        optional = {
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
            "failed_at": to_iso(self.failed_at),
            "completion": self.completion,
            "delay": self.delay_seconds,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Step:
        delay = data.get("delay")
        return cls(
            phase=str(data.get("phase") or "generic"),
            command=str(data.get("command", "")),
            description=str(data.get("description", "")),
            status=StepStatus(data.get("status", StepStatus.PENDING.value)),
            retry_count=int(data.get("retry_count", 0)),
            started_at=parse_optional_datetime(data.get("started_at")),
            completed_at=parse_optional_datetime(data.get("completed_at")),
            failed_at=parse_optional_datetime(data.get("failed_at")),
            completion=data.get("completion"),
            delay_seconds=float(delay) if delay is not None else None,
        )


@dataclass(slots=True, frozen=True)
class Checkpoint:
    """Immutable snapshot of a workflow's full state."""

    checkpoint_id: str
    workflow_id: str
    created_at: datetime
    reason: str
    workflow_state: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "workflow_id": self.workflow_id,
            "created_at": to_iso(self.created_at),
            "reason": self.reason,
            "workflow_state": copy.deepcopy(self.workflow_state),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            checkpoint_id=str(data["checkpoint_id"]),
            workflow_id=str(data.get("workflow_id", "")),
            created_at=parse_optional_datetime(data.get("created_at")) or utc_now(),
            reason=str(data.get("reason", "")),
            workflow_state=copy.deepcopy(data.get("workflow_state") or {}),
        )


_KNOWN_TASK_KEYS = frozenset(
    {
        "id",
        "type",
        "status",
        "created_at",
        "updated_at",
        "priority",
        "payload",
        "retry_count",
        "error_history",
        "results",
        "status_history",
        "worker_pid",
        "worker_host",
        "last_error",
        "completed_at",
        "workflow_type",
        "config",
        "steps",
        "current_step",
        "checkpoints",
        "resumed_count",
        "resumed_at",
        "manual_resume",
        "workflow_retry_count",
        "cancelled_at",
        "cancellation_reason",
    },
)


@dataclass(slots=True)
class Task:
    """Queue entry: a simple task or a multi-step workflow."""

    task_id: str
    kind: TaskKind
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    priority: int = 100
    payload: dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    error_history: list[ErrorRecord] = field(default_factory=list)
    results: dict[str, str] = field(default_factory=dict)
    status_history: list[StatusChange] = field(default_factory=list)
    worker_pid: int | None = None
    worker_host: str | None = None
    last_error: dict[str, Any] | None = None
    completed_at: datetime | None = None
    workflow_type: str | None = None
    config: dict[str, Any] = field(default_factory=dict)
    steps: list[Step] = field(default_factory=list)
    current_step: int = 0
    checkpoints: list[Checkpoint] = field(default_factory=list)
    resumed_count: int = 0
    resumed_at: datetime | None = None
    manual_resume: bool = False
    workflow_retry_count: int = 0
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_workflow(self) -> bool:
        return self.kind == TaskKind.WORKFLOW

    def to_dict(self, *, include_checkpoints: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = dict(copy.deepcopy(self.extra))
        data.update(
            {
                "id": self.task_id,
                "type": self.kind.value,
                "status": self.status.value,
                "created_at": to_iso(self.created_at),
                "updated_at": to_iso(self.updated_at),
                "priority": self.priority,
                "payload": copy.deepcopy(self.payload),
                "retry_count": self.retry_count,
                "error_history": [record.to_dict() for record in self.error_history],
                "results": dict(self.results),
                "status_history": [change.to_dict() for change in self.status_history],
                "worker_pid": self.worker_pid,
                "worker_host": self.worker_host,
                "last_error": copy.deepcopy(self.last_error),
                "completed_at": to_iso(self.completed_at),
                "workflow_retry_count": self.workflow_retry_count,
                "cancelled_at": to_iso(self.cancelled_at),
                "cancellation_reason": self.cancellation_reason,
            },
        )
        if self.is_workflow:
            data.update(
                {
                    "workflow_type": self.workflow_type,
                    "config": copy.deepcopy(self.config),
                    "steps": [step.to_dict() for step in self.steps],
                    "current_step": self.current_step,
                    "resumed_count": self.resumed_count,
                    "resumed_at": to_iso(self.resumed_at),
                    "manual_resume": self.manual_resume,
                },
            )
            if include_checkpoints:
                data["checkpoints"] = [checkpoint.to_dict() for checkpoint in self.checkpoints]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        """Build a task from its persisted form, keeping unknown keys verbatim."""

        created_at = parse_optional_datetime(data.get("created_at")) or utc_now()
        kind_raw = data.get("type", TaskKind.SIMPLE.value)
        kind = TaskKind.WORKFLOW if kind_raw == TaskKind.WORKFLOW.value else TaskKind.SIMPLE
        worker_pid = data.get("worker_pid")
        return cls(
            task_id=str(data["id"]),
            kind=kind,
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            created_at=created_at,
            updated_at=parse_optional_datetime(data.get("updated_at")) or created_at,
            priority=_coerce_priority(data.get("priority")),
            payload=copy.deepcopy(data.get("payload") or {}),
            retry_count=int(data.get("retry_count", 0)),
            error_history=[ErrorRecord.from_dict(item) for item in data.get("error_history", [])],
            results={str(key): str(value) for key, value in (data.get("results") or {}).items()},
            status_history=[
                StatusChange.from_dict(item) for item in data.get("status_history", [])
            ],
            worker_pid=int(worker_pid) if worker_pid is not None else None,
            worker_host=data.get("worker_host"),
            last_error=copy.deepcopy(data.get("last_error")),
            completed_at=parse_optional_datetime(data.get("completed_at")),
            workflow_type=data.get("workflow_type"),
            config=copy.deepcopy(data.get("config") or {}),
            steps=[Step.from_dict(item) for item in data.get("steps", [])],
            current_step=int(data.get("current_step", 0)),
            checkpoints=[Checkpoint.from_dict(item) for item in data.get("checkpoints", [])],
            resumed_count=int(data.get("resumed_count", 0)),
            resumed_at=parse_optional_datetime(data.get("resumed_at")),
            manual_resume=bool(data.get("manual_resume", False)),
            workflow_retry_count=int(data.get("workflow_retry_count", 0)),
            cancelled_at=parse_optional_datetime(data.get("cancelled_at")),
            cancellation_reason=data.get("cancellation_reason"),
            extra={
                key: copy.deepcopy(value)
                for key, value in data.items()
                if key not in _KNOWN_TASK_KEYS
            },
        )

    def snapshot(self) -> dict[str, Any]:
        """Deep copy of the workflow state without the checkpoint list itself."""

        return self.to_dict(include_checkpoints=False)


@dataclass(slots=True)
class QueueState:
    """Aggregate root persisted to the queue file."""

    tasks: list[Task] = field(default_factory=list)
    last_modified: datetime = field(default_factory=utc_now)

    def find(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": QUEUE_FORMAT_VERSION,
            "tasks": [task.to_dict() for task in self.tasks],
            "last_modified": to_iso(self.last_modified),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueState:
        return cls(
            tasks=[Task.from_dict(item) for item in data["tasks"]],
            last_modified=from_iso(str(data["last_modified"])),
        )


@dataclass(slots=True)
class RecoveryDecision:
    """What the recovery controller decided after a failure."""

    action: RecoveryAction
    kind: ErrorKind
    delay_seconds: float = 0.0
    reason: str = ""


_PRIORITY_ALIASES = {"urgent": 1, "high": 10, "normal": 100, "low": 500}


def _coerce_priority(value: object) -> int:
    if value is None:
        return 100
    if isinstance(value, bool):
        return 100
    if isinstance(value, int):
        return value
    text = str(value).strip().lower()
    if text in _PRIORITY_ALIASES:
        return _PRIORITY_ALIASES[text]
    try:
        return int(text)
    except ValueError:
        return 100
