"""Durable JSON queue document with atomic saves and versioned backups."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from auto_resume.orchestrator.common import utc_now
from auto_resume.orchestrator.errors import CorruptStoreError
from auto_resume.orchestrator.models import QueueState

logger = logging.getLogger(__name__)

QUEUE_FILE_NAME = "task-queue.json"
BACKUP_DIR_NAME = "backups"
BACKUP_PREFIX = "queue-"
TEMP_PREFIX = ".task-queue-"
TEMP_SUFFIX = ".tmp"
_REQUIRED_KEYS = ("tasks", "last_modified")


@dataclass(slots=True)
class BackupInfo:
    """One backup file on disk."""

    path: Path
    modified_at: datetime
    size_bytes: int


class QueueStore:
    """Read and write the queue document; callers guard mutations with the queue lock."""

    def __init__(self, queue_dir: Path) -> None:
        self.queue_dir = queue_dir
        self.queue_path = queue_dir / QUEUE_FILE_NAME
        self.backup_dir = queue_dir / BACKUP_DIR_NAME

    def ensure_layout(self) -> None:
        self.queue_dir.mkdir(parents=True, exist_ok=True)
        self.backup_dir.mkdir(parents=True, exist_ok=True)

    def load(self) -> QueueState:
        """Read the live queue file.

        A missing file is an empty queue. Anything unreadable raises
        `CorruptStoreError` so the caller decides how to recover.
        """

        if not self.queue_path.exists():
            return QueueState()
        return _read_state(self.queue_path)

    def load_or_recover(self) -> QueueState:
        """Load the live file, falling back to the newest valid backup, then to empty."""

        try:
            return self.load()
        except CorruptStoreError as error:
            logger.error("Queue file is corrupt, attempting recovery: %s", error)

        for backup in self.list_backups():
            try:
                state = _read_state(backup.path)
            except CorruptStoreError:
                logger.warning("Skipping unreadable backup %s", backup.path)
                continue
            logger.warning("Recovered queue state from backup %s", backup.path)
            return state

        logger.warning("No valid backup found; starting from an empty queue")
        return QueueState()

    def save(self, state: QueueState, *, with_backup: bool = False) -> Path | None:
        """Atomically replace the live queue file with `state`.

        Returns the backup path when one was written.
        """

        self.ensure_layout()
        backup_path = self.backup_current() if with_backup else None
        state.last_modified = utc_now()
        payload = json.dumps(state.to_dict(), indent=2, ensure_ascii=False)
        _atomic_write_text(self.queue_path, payload)
        return backup_path

    def backup_current(self) -> Path | None:
        """Copy the live file into a new, never-overwritten backup file."""

        if not self.queue_path.exists():
            return None
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        content = self.queue_path.read_bytes()
        stamp = utc_now().strftime("%Y%m%dT%H%M%S%fZ")
        suffix = f"{stamp}-{os.getpid()}"
        attempt = 0
        while True:
            name = suffix if attempt == 0 else f"{suffix}-{attempt}"
            path = self.backup_dir / f"{BACKUP_PREFIX}{name}.json"
            try:
                with path.open("xb") as handle:
                    handle.write(content)
                    handle.flush()
                    os.fsync(handle.fileno())
            except FileExistsError:
                attempt += 1
                continue
            logger.debug("Queue backup written to %s", path)
            return path

    def list_backups(self) -> list[BackupInfo]:
        """Backups ordered newest first."""

        if not self.backup_dir.exists():
            return []
        backups: list[BackupInfo] = []
        for path in self.backup_dir.glob(f"{BACKUP_PREFIX}*.json"):
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            backups.append(
                BackupInfo(
                    path=path,
                    modified_at=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
                    size_bytes=stat.st_size,
                ),
            )
        backups.sort(key=lambda item: (item.modified_at, item.path.name), reverse=True)
        return backups

    def restore_backup(self, path: Path | None = None) -> Path:
        """Validate a backup and write it back as the live queue.

        Without a path, the newest valid backup is used.
        """

        if path is not None:
            candidates = [path]
        else:
            candidates = [backup.path for backup in self.list_backups()]
            if not candidates:
                raise CorruptStoreError("No backups available to restore.", path=self.backup_dir)

        last_error: CorruptStoreError | None = None
        for candidate in candidates:
            try:
                state = _read_state(candidate)
            except CorruptStoreError as error:
                last_error = error
                if path is not None:
                    raise
                continue
            self.save(state, with_backup=True)
            logger.info("Queue restored from backup %s", candidate)
            return candidate

        raise last_error or CorruptStoreError("No valid backup found.", path=self.backup_dir)

    def prune_backups(self, *, older_than: timedelta, dry_run: bool = False) -> list[Path]:
        cutoff = utc_now() - older_than
        removed: list[Path] = []
        for backup in self.list_backups():
            if backup.modified_at >= cutoff:
                continue
            removed.append(backup.path)
            if not dry_run:
                backup.path.unlink(missing_ok=True)
        return removed

    def cleanup_temp_files(self, *, dry_run: bool = False) -> list[Path]:
        """Remove leftovers of saves interrupted before the rename."""

        if not self.queue_dir.exists():
            return []
        removed: list[Path] = []
        for path in self.queue_dir.glob(f"{TEMP_PREFIX}*{TEMP_SUFFIX}"):
            removed.append(path)
            if not dry_run:
                path.unlink(missing_ok=True)
        return removed


def _read_state(path: Path) -> QueueState:
    try:
        raw = path.read_text("utf-8")
    except OSError as error:
        raise CorruptStoreError(f"Cannot read queue file {path}: {error}", path=path) from error
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as error:
        raise CorruptStoreError(
            f"Queue file {path} is not valid JSON: {error}",
            path=path,
        ) from error
    if not isinstance(data, dict):
        raise CorruptStoreError(f"Queue file {path} must contain a JSON object.", path=path)
    missing = [key for key in _REQUIRED_KEYS if key not in data]
    if missing:
        raise CorruptStoreError(
            f"Queue file {path} is missing required keys: {', '.join(missing)}",
            path=path,
        )
    if not isinstance(data["tasks"], list):
        raise CorruptStoreError(f"Queue file {path}: 'tasks' must be a list.", path=path)
    try:
        return QueueState.from_dict(data)
    except (KeyError, TypeError, ValueError) as error:
        raise CorruptStoreError(
            f"Queue file {path} has invalid task data: {error}",
            path=path,
        ) from error


def _atomic_write_text(target: Path, content: str) -> None:
    fd, tmp_name = tempfile.mkstemp(
        prefix=TEMP_PREFIX,
        suffix=TEMP_SUFFIX,
        dir=target.parent,
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, target)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
