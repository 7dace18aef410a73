from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path

import allure
import pytest

from auto_resume.config import (
    DEFAULT_PHASE_TIMEOUTS,
    PHASES,
    CompletionSettings,
    LockSettings,
    RetrySettings,
    Settings,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in list(os.environ):
        if name.startswith("AUTO_RESUME_"):
            monkeypatch.delenv(name)
    return monkeypatch


def test_defaults_without_environment(clean_env: pytest.MonkeyPatch) -> None:
    settings = Settings.from_env()

    assert settings.queue_dir == Path("queue")
    assert settings.retry.max_retries == 3
    assert settings.retry.base_delay_seconds == 5.0
    assert settings.lock.max_attempts == 10
    assert settings.completion.phase_timeouts == DEFAULT_PHASE_TIMEOUTS
    assert settings.session.tmux_session_name == "claude-auto-resume"
    assert settings.resources.enabled
    settings.validate()


def test_environment_overrides(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("AUTO_RESUME_QUEUE_DIR", str(tmp_path))
    clean_env.setenv("AUTO_RESUME_MAX_RETRIES", "5")
    clean_env.setenv("AUTO_RESUME_REVIEW_TIMEOUT", "90")
    clean_env.setenv("AUTO_RESUME_CLEAR_COMPLETION_PATTERNS", "wiped")
    clean_env.setenv("AUTO_RESUME_RESOURCE_MONITORING", "off")
    clean_env.setenv("AUTO_RESUME_TMUX_SESSION", "agent")

    settings = Settings.from_env()

    assert settings.queue_dir == tmp_path
    assert settings.retry.max_retries == 5
    assert settings.completion.timeout_for("review") == 90
    assert settings.completion.pattern_for("clear") == "wiped"
    assert not settings.resources.enabled
    assert settings.session.tmux_session_name == "agent"


def test_explicit_queue_dir_wins(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("AUTO_RESUME_QUEUE_DIR", "/elsewhere")

    assert Settings.from_env(queue_dir=tmp_path).queue_dir == tmp_path


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("AUTO_RESUME_BACKUP_ON_SAVE", "maybe", "Invalid boolean value"),
        ("AUTO_RESUME_MAX_RETRIES", "three", "Invalid integer value"),
        ("AUTO_RESUME_POLL_INTERVAL_SECONDS", "fast", "Invalid numeric value"),
    ],
)
def test_unparseable_values_name_the_variable(
    clean_env: pytest.MonkeyPatch,
    name: str,
    value: str,
    message: str,
) -> None:
    clean_env.setenv(name, value)

    with pytest.raises(ValueError, match=f"{message} for {name}"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "variable"),
    [
        (replace(Settings(), lock=LockSettings(max_attempts=0)), "AUTO_RESUME_LOCK_MAX_ATTEMPTS"),
        (replace(Settings(), retry=RetrySettings(max_retries=-1)), "AUTO_RESUME_MAX_RETRIES"),
        (
            replace(Settings(), retry=RetrySettings(base_delay_seconds=10, max_delay_seconds=5)),
            "AUTO_RESUME_RETRY_MAX_DELAY_SECONDS",
        ),
        (
            replace(Settings(), completion=CompletionSettings(phase_timeouts={"generic": 0})),
            "AUTO_RESUME_GENERIC_TIMEOUT",
        ),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, variable: str) -> None:
    with pytest.raises(ValueError, match=variable):
        settings.validate()


def test_unknown_phase_falls_back_to_generic() -> None:
    completion = CompletionSettings()

    assert completion.timeout_for("deploy") == DEFAULT_PHASE_TIMEOUTS["generic"]
    assert completion.pattern_for("deploy") == completion.phase_patterns["generic"]
    assert set(PHASES) == set(completion.phase_timeouts)
