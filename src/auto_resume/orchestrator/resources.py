"""Periodic CPU and memory sampling with soft throttling thresholds."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path

import psutil

from auto_resume.config import ResourceSettings
from auto_resume.orchestrator.common import to_iso, utc_now

logger = logging.getLogger(__name__)

_WATCHED_PROCESS_NAMES = ("tmux", "claude")
_BYTES_PER_MB = 1024 * 1024


@dataclass(slots=True)
class ResourceSample:
    """One reading of system and engine resource usage."""

    sampled_at: datetime
    cpu_percent: float
    memory_mb: float
    system_memory_percent: float
    load_average: tuple[float, float, float] | None
    disk_free_mb: float | None
    cpu_exceeded: bool
    memory_exceeded: bool

    @property
    def over_threshold(self) -> bool:
        return self.cpu_exceeded or self.memory_exceeded

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["sampled_at"] = to_iso(self.sampled_at)
        data["load_average"] = list(self.load_average) if self.load_average else None
        return data


class ResourceMonitor:
    """Samples resource usage on demand or from a background thread.

    Exceeding a threshold only logs a warning and flags the sample; the
    dispatcher decides whether to slow down.
    """

    def __init__(
        self,
        settings: ResourceSettings,
        *,
        queue_dir: Path | None = None,
        cpu_sampler: Callable[[], float] | None = None,
        memory_sampler: Callable[[], float] | None = None,
    ) -> None:
        self.settings = settings
        self.queue_dir = queue_dir
        self._cpu_sampler = cpu_sampler or (lambda: psutil.cpu_percent(interval=None))
        self._memory_sampler = memory_sampler or engine_memory_mb
        self._latest: ResourceSample | None = None
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def sample(self) -> ResourceSample:
        cpu = float(self._cpu_sampler())
        memory = float(self._memory_sampler())
        sample = ResourceSample(
            sampled_at=utc_now(),
            cpu_percent=round(cpu, 1),
            memory_mb=round(memory, 1),
            system_memory_percent=float(psutil.virtual_memory().percent),
            load_average=_load_average(),
            disk_free_mb=_disk_free_mb(self.queue_dir),
            cpu_exceeded=cpu > self.settings.max_cpu_percent,
            memory_exceeded=memory > self.settings.max_memory_mb,
        )
        with self._lock:
            self._latest = sample
        if sample.cpu_exceeded:
            logger.warning(
                "CPU usage %.1f%% exceeds threshold %.1f%%",
                sample.cpu_percent,
                self.settings.max_cpu_percent,
            )
        if sample.memory_exceeded:
            logger.warning(
                "Memory usage %.1fMB exceeds threshold %.1fMB",
                sample.memory_mb,
                self.settings.max_memory_mb,
            )
        return sample

    def latest(self) -> ResourceSample | None:
        with self._lock:
            return self._latest

    def should_throttle(self) -> bool:
        """Consult the latest sample, taking one if none exists yet."""

        if not self.settings.enabled:
            return False
        sample = self.latest() or self.sample()
        return sample.over_threshold

    def start(self) -> None:
        if not self.settings.enabled or self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="auto-resume-resource-monitor",
            daemon=True,
        )
        self._thread.start()
        logger.debug("Resource monitor started (every %ss)", self.settings.interval_seconds)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.sample()
            except (psutil.Error, OSError) as error:
                logger.warning("Resource sampling failed: %s", error)
            self._stop.wait(self.settings.interval_seconds)


def engine_memory_mb() -> float:
    """RSS of this process tree plus any tmux/claude processes."""

    seen: set[int] = set()
    total = 0
    current = psutil.Process(os.getpid())
    candidates = [current, *current.children(recursive=True)]
    for process in psutil.process_iter(["name"]):
        name = (process.info.get("name") or "").lower()
        if any(watched in name for watched in _WATCHED_PROCESS_NAMES):
            candidates.append(process)
    for process in candidates:
        if process.pid in seen:
            continue
        seen.add(process.pid)
        try:
            total += process.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return total / _BYTES_PER_MB


def _load_average() -> tuple[float, float, float] | None:
    try:
        return psutil.getloadavg()
    except (AttributeError, OSError):
        return None


def _disk_free_mb(path: Path | None) -> float | None:
    if path is None or not path.exists():
        return None
    try:
        return round(psutil.disk_usage(str(path)).free / _BYTES_PER_MB, 1)
    except OSError:
        return None
