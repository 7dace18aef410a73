"""Shared test fixtures."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

import pytest

from auto_resume.config import CompletionSettings, ResourceSettings, RetrySettings, Settings
from auto_resume.orchestrator.recovery import RecoveryController
from auto_resume.orchestrator.repository import QueueRepository
from tests.doubles import FakeClock


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Deterministic settings: no jitter, no step delay, no resource sampling."""

    base = Settings(queue_dir=tmp_path / "queue")
    return replace(
        base,
        retry=RetrySettings(jitter_seconds=0.0),
        completion=CompletionSettings(step_delay_seconds=0.0, poll_interval_seconds=5.0),
        resources=ResourceSettings(enabled=False),
    )


@pytest.fixture()
def repository(settings: Settings) -> QueueRepository:
    repository = QueueRepository.from_settings(settings)
    repository.init_storage()
    return repository


@pytest.fixture()
def morning_recovery(settings: Settings) -> RecoveryController:
    """Recovery controller whose local wall clock reads 10:00."""

    return RecoveryController(
        settings.retry,
        local_now=lambda: datetime(2026, 3, 2, 10, 0, tzinfo=UTC),
    )


@pytest.fixture()
def cli_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep CLI runs fast and free of host-dependent throttling."""

    monkeypatch.setenv("AUTO_RESUME_RESOURCE_MONITORING", "false")
    monkeypatch.setenv("AUTO_RESUME_STEP_DELAY_SECONDS", "0")
    monkeypatch.setenv("AUTO_RESUME_RETRY_JITTER_SECONDS", "0")
