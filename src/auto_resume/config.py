"""Runtime configuration for the queue engine, recovery policy and session."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

PHASES: tuple[str, ...] = ("develop", "clear", "review", "merge", "generic")

DEFAULT_PHASE_TIMEOUTS: dict[str, float] = {
    "develop": 600.0,
    "clear": 30.0,
    "review": 480.0,
    "merge": 300.0,
    "generic": 180.0,
}

DEFAULT_PHASE_PATTERNS: dict[str, str] = {
    "develop": (
        "pull request.*created|pr.*created|created pull request|committed.*changes"
        "|created.*branch|pushed.*to|issue.*complete|implemented|development.*finished"
    ),
    "clear": "context.*cleared|clear.*complete|conversation.*reset|claude>|>|❯",
    "review": (
        "review.*complete|analysis.*complete|review.*finished|summary|recommendation"
        "|conclusion|overall"
    ),
    "merge": (
        "merge.*successful|merged.*successfully|merge.*complete|main.*updated"
        "|merged.*into.*main|main.*branch|issue.*closed"
    ),
    "generic": "complete|finished|done|success|claude>|>|❯",
}


@dataclass(slots=True)
class QueueSettings:
    """Queue file persistence and maintenance settings."""

    backup_on_save: bool = True
    backup_retention_days: int = 30
    completed_retention_days: int = 7
    failed_retention_days: int = 14
    max_queue_size: int = 0


@dataclass(slots=True)
class LockSettings:
    """Queue lock acquisition settings."""

    max_attempts: int = 10
    base_backoff_seconds: float = 0.1
    max_backoff_seconds: float = 5.0
    stale_after_seconds: float = 300.0


@dataclass(slots=True)
class RetrySettings:
    """Recovery policy: retry backoff and usage-limit cooldowns."""

    max_retries: int = 3
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 300.0
    jitter_seconds: float = 3.0
    timeout_multiplier: float = 3.0
    max_workflow_retries: int = 10
    default_cooldown_seconds: float = 300.0
    cooldown_buffer_seconds: float = 0.0
    max_cooldown_seconds: float = 86_400.0


@dataclass(slots=True)
class CompletionSettings:
    """Step completion detection settings."""

    poll_interval_seconds: float = 5.0
    phase_timeouts: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_PHASE_TIMEOUTS),
    )
    phase_patterns: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_PHASE_PATTERNS),
    )
    assume_completion_on_timeout: bool = True
    step_delay_seconds: float = 5.0

    def timeout_for(self, phase: str) -> float:
        return self.phase_timeouts.get(phase, self.phase_timeouts["generic"])

    def pattern_for(self, phase: str) -> str:
        return self.phase_patterns.get(phase, self.phase_patterns["generic"])


@dataclass(slots=True)
class ResourceSettings:
    """CPU/memory sampling thresholds."""

    enabled: bool = True
    interval_seconds: float = 60.0
    max_cpu_percent: float = 80.0
    max_memory_mb: float = 512.0
    throttle_delay_seconds: float = 30.0


@dataclass(slots=True)
class SessionSettings:
    """External tmux session the workflow commands are sent to."""

    tmux_session_name: str = "claude-auto-resume"
    tmux_binary: str = "tmux"
    capture_lines: int = 200


@dataclass(slots=True)
class DispatcherSettings:
    idle_poll_seconds: float = 2.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    queue_dir: Path = Path("queue")
    queue: QueueSettings = field(default_factory=QueueSettings)
    lock: LockSettings = field(default_factory=LockSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    completion: CompletionSettings = field(default_factory=CompletionSettings)
    resources: ResourceSettings = field(default_factory=ResourceSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    dispatcher: DispatcherSettings = field(default_factory=DispatcherSettings)

    @classmethod
    def from_env(cls, queue_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local use."""

        return cls(
            queue_dir=queue_dir or Path(os.getenv("AUTO_RESUME_QUEUE_DIR", "queue")),
            queue=QueueSettings(
                backup_on_save=_env_bool("AUTO_RESUME_BACKUP_ON_SAVE", default=True),
                backup_retention_days=_env_int("AUTO_RESUME_BACKUP_RETENTION_DAYS", 30),
                completed_retention_days=_env_int("AUTO_RESUME_COMPLETED_RETENTION_DAYS", 7),
                failed_retention_days=_env_int("AUTO_RESUME_FAILED_RETENTION_DAYS", 14),
                max_queue_size=_env_int("AUTO_RESUME_MAX_QUEUE_SIZE", 0),
            ),
            lock=LockSettings(
                max_attempts=_env_int("AUTO_RESUME_LOCK_MAX_ATTEMPTS", 10),
                base_backoff_seconds=_env_float("AUTO_RESUME_LOCK_BASE_BACKOFF_SECONDS", 0.1),
                max_backoff_seconds=_env_float("AUTO_RESUME_LOCK_MAX_BACKOFF_SECONDS", 5.0),
                stale_after_seconds=_env_float("AUTO_RESUME_LOCK_STALE_AFTER_SECONDS", 300.0),
            ),
            retry=RetrySettings(
                max_retries=_env_int("AUTO_RESUME_MAX_RETRIES", 3),
                base_delay_seconds=_env_float("AUTO_RESUME_RETRY_BASE_DELAY_SECONDS", 5.0),
                max_delay_seconds=_env_float("AUTO_RESUME_RETRY_MAX_DELAY_SECONDS", 300.0),
                jitter_seconds=_env_float("AUTO_RESUME_RETRY_JITTER_SECONDS", 3.0),
                timeout_multiplier=_env_float("AUTO_RESUME_TIMEOUT_RETRY_MULTIPLIER", 3.0),
                max_workflow_retries=_env_int("AUTO_RESUME_MAX_WORKFLOW_RETRIES", 10),
                default_cooldown_seconds=_env_float(
                    "AUTO_RESUME_DEFAULT_COOLDOWN_SECONDS",
                    300.0,
                ),
                cooldown_buffer_seconds=_env_float("AUTO_RESUME_COOLDOWN_BUFFER_SECONDS", 0.0),
                max_cooldown_seconds=_env_float("AUTO_RESUME_MAX_COOLDOWN_SECONDS", 86_400.0),
            ),
            completion=CompletionSettings(
                poll_interval_seconds=_env_float("AUTO_RESUME_POLL_INTERVAL_SECONDS", 5.0),
                phase_timeouts={
                    phase: _env_float(
                        f"AUTO_RESUME_{phase.upper()}_TIMEOUT",
                        DEFAULT_PHASE_TIMEOUTS[phase],
                    )
                    for phase in PHASES
                },
                phase_patterns={
                    phase: os.getenv(
                        f"AUTO_RESUME_{phase.upper()}_COMPLETION_PATTERNS",
                        DEFAULT_PHASE_PATTERNS[phase],
                    )
                    for phase in PHASES
                },
                assume_completion_on_timeout=_env_bool(
                    "AUTO_RESUME_ASSUME_COMPLETION_ON_TIMEOUT",
                    default=True,
                ),
                step_delay_seconds=_env_float("AUTO_RESUME_STEP_DELAY_SECONDS", 5.0),
            ),
            resources=ResourceSettings(
                enabled=_env_bool("AUTO_RESUME_RESOURCE_MONITORING", default=True),
                interval_seconds=_env_float("AUTO_RESUME_RESOURCE_INTERVAL_SECONDS", 60.0),
                max_cpu_percent=_env_float("AUTO_RESUME_MAX_CPU_PERCENT", 80.0),
                max_memory_mb=_env_float("AUTO_RESUME_MAX_MEMORY_MB", 512.0),
                throttle_delay_seconds=_env_float("AUTO_RESUME_THROTTLE_DELAY_SECONDS", 30.0),
            ),
            session=SessionSettings(
                tmux_session_name=os.getenv(
                    "AUTO_RESUME_TMUX_SESSION",
                    "claude-auto-resume",
                ),
                tmux_binary=os.getenv("AUTO_RESUME_TMUX_BINARY", "tmux"),
                capture_lines=_env_int("AUTO_RESUME_CAPTURE_LINES", 200),
            ),
            dispatcher=DispatcherSettings(
                idle_poll_seconds=_env_float("AUTO_RESUME_IDLE_POLL_SECONDS", 2.0),
            ),
        )

    def validate(self) -> None:  # noqa: C901, PLR0912
        """Raise configuration error for values the engine cannot run with."""

        if self.lock.max_attempts <= 0:
            raise ValueError("AUTO_RESUME_LOCK_MAX_ATTEMPTS must be > 0.")
        if self.lock.base_backoff_seconds < 0 or self.lock.max_backoff_seconds < 0:
            raise ValueError("AUTO_RESUME_LOCK_*_BACKOFF_SECONDS must be >= 0.")
        if self.lock.stale_after_seconds <= 0:
            raise ValueError("AUTO_RESUME_LOCK_STALE_AFTER_SECONDS must be > 0.")
        if self.retry.max_retries < 0:
            raise ValueError("AUTO_RESUME_MAX_RETRIES must be >= 0.")
        if self.retry.max_workflow_retries < 0:
            raise ValueError("AUTO_RESUME_MAX_WORKFLOW_RETRIES must be >= 0.")
        if self.retry.base_delay_seconds < 0:
            raise ValueError("AUTO_RESUME_RETRY_BASE_DELAY_SECONDS must be >= 0.")
        if self.retry.max_delay_seconds < self.retry.base_delay_seconds:
            raise ValueError(
                "AUTO_RESUME_RETRY_MAX_DELAY_SECONDS must be >= "
                "AUTO_RESUME_RETRY_BASE_DELAY_SECONDS.",
            )
        if self.retry.jitter_seconds < 0:
            raise ValueError("AUTO_RESUME_RETRY_JITTER_SECONDS must be >= 0.")
        if self.retry.default_cooldown_seconds < 0 or self.retry.max_cooldown_seconds <= 0:
            raise ValueError("AUTO_RESUME_*_COOLDOWN_SECONDS must be positive.")
        if self.completion.poll_interval_seconds <= 0:
            raise ValueError("AUTO_RESUME_POLL_INTERVAL_SECONDS must be > 0.")
        for phase, timeout in self.completion.phase_timeouts.items():
            if timeout <= 0:
                raise ValueError(f"AUTO_RESUME_{phase.upper()}_TIMEOUT must be > 0.")
        for phase, pattern in self.completion.phase_patterns.items():
            if not pattern.strip():
                raise ValueError(
                    f"AUTO_RESUME_{phase.upper()}_COMPLETION_PATTERNS cannot be empty.",
                )
        if self.resources.interval_seconds <= 0:
            raise ValueError("AUTO_RESUME_RESOURCE_INTERVAL_SECONDS must be > 0.")
        if self.queue.max_queue_size < 0:
            raise ValueError("AUTO_RESUME_MAX_QUEUE_SIZE must be >= 0.")
        if self.queue.completed_retention_days < 0 or self.queue.failed_retention_days < 0:
            raise ValueError("AUTO_RESUME_*_RETENTION_DAYS must be >= 0.")
        if self.session.capture_lines <= 0:
            raise ValueError("AUTO_RESUME_CAPTURE_LINES must be > 0.")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
