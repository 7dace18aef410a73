"""Common helpers shared by queue storage and execution."""

from __future__ import annotations

import os
import re
import secrets
import socket
import time
from datetime import UTC, datetime

import psutil

_TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    text = value.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def parse_optional_datetime(value: object) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return from_iso(value)
    except ValueError:
        return None


def generate_id(prefix: str = "task") -> str:
    """Return `<prefix>-<epoch seconds>-<random hex>`; unique across processes."""

    return f"{prefix}-{int(time.time())}-{secrets.token_hex(4)}"


def validate_task_id(task_id: str) -> str:
    if not task_id:
        raise ValueError("Task id cannot be empty.")
    if not _TASK_ID_PATTERN.match(task_id):
        raise ValueError(f"Invalid task id format: {task_id!r}")
    return task_id


def current_host() -> str:
    return socket.gethostname()


def current_pid() -> int:
    return os.getpid()


def pid_alive(pid: int) -> bool:
    """True when `pid` names a running, non-zombie process on this host."""

    if not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True
