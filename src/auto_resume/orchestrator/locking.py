"""Directory-based inter-process queue lock with stale holder reclaim."""

from __future__ import annotations

import logging
import os
import shutil
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from auto_resume.orchestrator.common import current_host, current_pid, pid_alive
from auto_resume.orchestrator.errors import LockTimeoutError

logger = logging.getLogger(__name__)

LOCK_DIR_NAME = ".lock.d"
GUARD_DIR_NAME = f"{LOCK_DIR_NAME}.reclaim"
_PID_FILE = "pid"
_TIMESTAMP_FILE = "timestamp"
_HOSTNAME_FILE = "hostname"
_GUARD_ATTEMPTS = 200
_GUARD_POLL_SECONDS = 0.01
_GUARD_STALE_SECONDS = 30.0


@dataclass(slots=True, frozen=True)
class LockInfo:
    """Diagnostic contents of the lock directory."""

    holder_pid: int | None
    acquired_at: float | None
    hostname: str | None


@dataclass(slots=True, frozen=True)
class LockHandle:
    """Proof of a successful acquire."""

    holder_pid: int
    acquired_at: float
    hostname: str
    attempts: int


class QueueLock:
    """Mutual exclusion over the queue directory.

    The existence of `<queue_dir>/.lock.d` is the lock. `os.mkdir` is atomic
    on a single filesystem, so exactly one process can create it. A lock is
    reclaimed when its recorded holder is gone on this host or when it is
    older than `stale_after_seconds`. Removing the lock directory, whether on
    release or on reclaim, happens only while holding `<queue_dir>/.lock.d.reclaim`.

    The lock is reentrant within one instance: nested `hold()` blocks in the
    owning thread only bump a depth counter.
    """

    def __init__(  # noqa: PLR0913
        self,
        queue_dir: Path,
        *,
        stale_after_seconds: float = 300.0,
        max_backoff_seconds: float = 5.0,
        default_max_attempts: int = 10,
        default_base_backoff: float = 0.1,
        sleeper: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.queue_dir = queue_dir
        self.lock_dir = queue_dir / LOCK_DIR_NAME
        self.guard_dir = queue_dir / GUARD_DIR_NAME
        self.stale_after_seconds = stale_after_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.default_max_attempts = default_max_attempts
        self.default_base_backoff = default_base_backoff
        self._sleep = sleeper
        self._clock = clock
        self._guard = threading.RLock()
        self._depth = 0
        self._handle: LockHandle | None = None

    @property
    def held(self) -> bool:
        return self._depth > 0

    def acquire(
        self,
        max_attempts: int | None = None,
        base_backoff: float | None = None,
    ) -> LockHandle:
        """Acquire the lock or raise `LockTimeoutError` after `max_attempts` tries."""

        attempts_allowed = max(1, max_attempts or self.default_max_attempts)
        backoff = self.default_base_backoff if base_backoff is None else base_backoff

        self._guard.acquire()
        if self._depth > 0 and self._handle is not None:
            self._depth += 1
            return self._handle

        try:
            handle = self._acquire_directory(attempts_allowed, backoff)
        except BaseException:
            self._guard.release()
            raise
        self._handle = handle
        self._depth = 1
        return handle

    def release(self) -> None:
        """Drop one level of ownership; removes the directory at depth zero."""

        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth > 0:
                return
            self._handle = None
            self._remove_own_directory()
        finally:
            self._guard.release()

    @contextmanager
    def hold(
        self,
        max_attempts: int | None = None,
        base_backoff: float | None = None,
    ) -> Iterator[LockHandle]:
        handle = self.acquire(max_attempts, base_backoff)
        try:
            yield handle
        finally:
            self.release()

    def read_info(self) -> LockInfo | None:
        """Current lock contents, or None when nobody holds the lock."""

        if not self.lock_dir.exists():
            return None
        return _read_info(self.lock_dir)

    def is_stale(self, info: LockInfo) -> bool:
        return self._is_expired(info, self.lock_dir, self.stale_after_seconds)

    def _is_expired(self, info: LockInfo, path: Path, max_age: float) -> bool:
        if info.hostname == current_host() and info.holder_pid is not None:
            if not pid_alive(info.holder_pid):
                return True
        acquired_at = info.acquired_at
        if acquired_at is None:
            acquired_at = _directory_mtime(path)
        if acquired_at is None:
            return False
        return self._clock() - acquired_at > max_age

    def _acquire_directory(self, max_attempts: int, base_backoff: float) -> LockHandle:
        last_info: LockInfo | None = None
        for attempt in range(max_attempts):
            try:
                self.queue_dir.mkdir(parents=True, exist_ok=True)
                os.mkdir(self.lock_dir)
            except FileExistsError:
                last_info = self.read_info()
                if (
                    last_info is not None
                    and self.is_stale(last_info)
                    and self._reclaim_stale(last_info)
                ):
                    continue
                if attempt + 1 < max_attempts:
                    self._sleep(min(base_backoff * (2**attempt), self.max_backoff_seconds))
                continue

            handle = LockHandle(
                holder_pid=current_pid(),
                acquired_at=self._clock(),
                hostname=current_host(),
                attempts=attempt + 1,
            )
            self._write_info(handle)
            logger.debug(
                "Queue lock acquired by pid %s after %s attempt(s)",
                handle.holder_pid,
                attempt + 1,
            )
            return handle

        holder_pid = last_info.holder_pid if last_info is not None else None
        raise LockTimeoutError(
            f"Could not acquire queue lock {self.lock_dir} after {max_attempts} attempts"
            f" (held by pid {holder_pid}).",
            attempts=max_attempts,
            holder_pid=holder_pid,
        )

    def _write_info(self, handle: LockHandle) -> None:
        (self.lock_dir / _PID_FILE).write_text(str(handle.holder_pid), "utf-8")
        (self.lock_dir / _TIMESTAMP_FILE).write_text(str(int(handle.acquired_at)), "utf-8")
        (self.lock_dir / _HOSTNAME_FILE).write_text(handle.hostname, "utf-8")

    def _reclaim_stale(self, snapshot: LockInfo) -> bool:
        """Remove the lock described by `snapshot` if it is still there and stale.

        Reclaim and release both run under the reclaim guard, so the lock
        directory cannot disappear and be re-created by another process
        between the re-read and the removal below.
        """

        with self._reclaim_guard(wait=False) as entered:
            if not entered:
                return False
            current = self.read_info()
            if current is None:
                return True
            if current != snapshot or not self.is_stale(current):
                logger.debug("Queue lock changed hands before reclaim; leaving it in place")
                return False
            shutil.rmtree(self.lock_dir, ignore_errors=True)
        logger.warning(
            "Removed stale queue lock held by pid %s on %s",
            snapshot.holder_pid,
            snapshot.hostname,
        )
        return True

    def _remove_own_directory(self) -> None:
        with self._reclaim_guard(wait=True) as entered:
            if not entered:
                logger.warning("Reclaim guard %s is stuck; releasing without it", self.guard_dir)
            info = self.read_info()
            if info is None:
                logger.warning("Queue lock directory vanished before release")
                return
            if info.holder_pid is not None and info.holder_pid != current_pid():
                logger.warning(
                    "Refusing to release queue lock owned by pid %s",
                    info.holder_pid,
                )
                return
            shutil.rmtree(self.lock_dir, ignore_errors=True)

    @contextmanager
    def _reclaim_guard(self, *, wait: bool) -> Iterator[bool]:
        entered = self._enter_guard(wait=wait)
        try:
            yield entered
        finally:
            if entered:
                shutil.rmtree(self.guard_dir, ignore_errors=True)

    def _enter_guard(self, *, wait: bool) -> bool:
        for _ in range(_GUARD_ATTEMPTS if wait else 2):
            try:
                os.mkdir(self.guard_dir)
            except FileExistsError:
                info = _read_info(self.guard_dir)
                if self._is_expired(info, self.guard_dir, _GUARD_STALE_SECONDS):
                    logger.warning("Removing abandoned reclaim guard of pid %s", info.holder_pid)
                    shutil.rmtree(self.guard_dir, ignore_errors=True)
                    continue
                if not wait:
                    return False
                self._sleep(_GUARD_POLL_SECONDS)
                continue
            except FileNotFoundError:
                return False
            (self.guard_dir / _PID_FILE).write_text(str(current_pid()), "utf-8")
            (self.guard_dir / _TIMESTAMP_FILE).write_text(str(int(self._clock())), "utf-8")
            (self.guard_dir / _HOSTNAME_FILE).write_text(current_host(), "utf-8")
            return True
        return False


def _read_info(lock_dir: Path) -> LockInfo:
    return LockInfo(
        holder_pid=_read_int(lock_dir / _PID_FILE),
        acquired_at=_read_float(lock_dir / _TIMESTAMP_FILE),
        hostname=_read_text(lock_dir / _HOSTNAME_FILE),
    )


def _read_text(path: Path) -> str | None:
    try:
        value = path.read_text("utf-8").strip()
    except OSError:
        return None
    return value or None


def _read_int(path: Path) -> int | None:
    value = _read_text(path)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _read_float(path: Path) -> float | None:
    value = _read_text(path)
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _directory_mtime(path: Path) -> float | None:
    try:
        return path.stat().st_mtime
    except OSError:
        return None

