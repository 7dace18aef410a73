from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from auto_resume import main
from auto_resume.main import auto_resume
from tests.doubles import ScriptedSession

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Queue & Workflow Commands"),
    pytest.mark.usefixtures("cli_env"),
]


@pytest.fixture()
def queue_dir(tmp_path: Path) -> Path:
    return tmp_path / "queue"


def _invoke(queue_dir: Path, *args: str):
    return CliRunner().invoke(auto_resume, ["--queue-dir", str(queue_dir), *args])


def _script_session(monkeypatch: pytest.MonkeyPatch, outputs: list[str]) -> ScriptedSession:
    session = ScriptedSession(outputs)
    monkeypatch.setattr(main.CONTROLLER, "session_factory", lambda _: session)
    return session


def test_version_option() -> None:
    result = CliRunner().invoke(auto_resume, ["--version"])

    assert result.exit_code == 0
    assert "auto-resume" in result.output


def test_add_list_stats_remove(queue_dir: Path) -> None:
    added = _invoke(queue_dir, "add", "/dev 12", "--priority", "5", "--task-id", "fix-12")
    assert added.exit_code == 0, added.output
    assert "Task added: task_id=fix-12 status=pending priority=5" in added.output
    assert (queue_dir / "task-queue.json").exists()

    listed = _invoke(queue_dir, "list", "pending")
    assert listed.exit_code == 0
    assert "Tasks: 1" in listed.output
    assert "fix-12 status=pending priority=5 retries=0 command='/dev 12'" in listed.output

    stats = _invoke(queue_dir, "stats")
    assert "total=1 workflows=0 pending=1" in stats.output

    removed = _invoke(queue_dir, "remove", "fix-12")
    assert removed.exit_code == 0
    assert "Task removed: fix-12 (was pending)" in removed.output


def test_unknown_task_is_a_clean_error(queue_dir: Path) -> None:
    result = _invoke(queue_dir, "remove", "ghost")

    assert result.exit_code == 1
    assert "Task not found: ghost" in result.output


def test_unsupported_status_filter(queue_dir: Path) -> None:
    result = _invoke(queue_dir, "list", "sleeping")

    assert result.exit_code == 1
    assert "Unsupported status" in result.output


def test_duplicate_task_id_is_rejected(queue_dir: Path) -> None:
    _invoke(queue_dir, "add", "/dev 1", "--task-id", "same")

    result = _invoke(queue_dir, "add", "/dev 2", "--task-id", "same")

    assert result.exit_code == 1
    assert "Task already exists: same" in result.output


def test_workflow_create_and_execute(
    queue_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    created = _invoke(queue_dir, "workflow", "create", "issue-merge", "42", "--workflow-id", "wf")
    assert created.exit_code == 0, created.output
    assert "Workflow created: workflow_id=wf type=issue-merge steps=4" in created.output
    assert "  3. [merge] /dev merge-pr 42 --focus-main" in created.output

    session = _script_session(
        monkeypatch,
        [
            "Created pull request for issue 42",
            "Context cleared",
            "Review complete",
            "Merged successfully into main",
        ],
    )
    executed = _invoke(queue_dir, "workflow", "execute", "wf")

    assert executed.exit_code == 0, executed.output
    assert "status=completed steps_completed=4" in executed.output
    assert len(session.sent) == 4

    status = _invoke(queue_dir, "workflow", "status", "wf")
    report = json.loads(status.output)
    assert report["status"] == "completed"
    assert report["progress_percent"] == 100.0


def test_failed_execution_exits_non_zero(
    queue_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _invoke(queue_dir, "workflow", "create", "issue-merge", "#7", "--workflow-id", "wf")
    _script_session(monkeypatch, ["Error: authentication failed"])

    result = _invoke(queue_dir, "workflow", "execute", "wf")

    assert result.exit_code == 1
    assert "status=failed" in result.output
    assert "Workflow wf did not complete." in result.output


def test_invalid_custom_config(queue_dir: Path) -> None:
    result = _invoke(queue_dir, "workflow", "create", "custom", '{"steps": []}')

    assert result.exit_code == 1
    assert "non-empty 'steps'" in result.output


def test_workflow_lifecycle_commands(queue_dir: Path) -> None:
    config = json.dumps({"steps": [{"command": "/one"}, {"command": "/two"}]})
    _invoke(queue_dir, "workflow", "create", "custom", config, "--workflow-id", "wf")

    checkpoint = _invoke(queue_dir, "workflow", "checkpoint", "wf", "--reason", "before")
    assert checkpoint.exit_code == 0
    checkpoint_id = checkpoint.output.strip().removeprefix("Checkpoint created: ")

    cancelled = _invoke(queue_dir, "workflow", "cancel", "wf")
    assert "Workflow cancelled: wf (user_cancelled)" in cancelled.output

    resumed = _invoke(queue_dir, "workflow", "resume", "wf", "1")
    assert "Workflow resumed: wf status=pending next_step=1" in resumed.output

    restored = _invoke(queue_dir, "workflow", "restore", "wf", checkpoint_id)
    assert restored.exit_code == 0, restored.output
    assert f"Workflow restored: wf from {checkpoint_id} status=pending next_step=0" in (
        restored.output
    )

    detailed = _invoke(queue_dir, "workflow", "status", "wf", "detailed")
    report = json.loads(detailed.output)
    assert report["resumed_count"] == 2
    assert report["checkpoint_count"] >= 3

    listed = _invoke(queue_dir, "workflow", "list")
    assert "Workflows: 1" in listed.output
    assert "workflow=custom steps=0/2" in listed.output


def test_pause_of_queued_workflow_is_rejected(queue_dir: Path) -> None:
    _invoke(queue_dir, "workflow", "create", "issue-merge", "3", "--workflow-id", "wf")

    result = _invoke(queue_dir, "workflow", "pause", "wf")

    assert result.exit_code == 1
    assert "Invalid task transition: pending -> paused" in result.output

    _invoke(queue_dir, "workflow", "cancel", "wf")
    paused = _invoke(queue_dir, "workflow", "pause", "wf")
    assert "Workflow paused: wf at step 0" in paused.output


def test_run_once_drains_one_task(queue_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _invoke(queue_dir, "add", "/first", "--task-id", "first", "--priority", "1")
    _invoke(queue_dir, "add", "/second", "--task-id", "second")
    session = _script_session(monkeypatch, ["done", "done"])

    once = _invoke(queue_dir, "run")
    assert "processed=1 succeeded=1" in once.output
    assert session.sent == ["/first"]

    loop = _invoke(queue_dir, "run", "--loop")
    assert "processed=1 succeeded=1" in loop.output
    assert "idle_polls=1" in loop.output


def test_cleanup_and_restore_backup(queue_dir: Path) -> None:
    _invoke(queue_dir, "add", "/dev 1", "--task-id", "one")
    _invoke(queue_dir, "add", "/dev 2", "--task-id", "two")

    dry = _invoke(queue_dir, "cleanup", "--dry-run")
    assert dry.exit_code == 0
    assert dry.output.startswith("Cleanup (dry run): completed=0 failed=0")

    restored = _invoke(queue_dir, "restore-backup")
    assert restored.exit_code == 0, restored.output
    assert "Queue restored from" in restored.output
    assert restored.output.rstrip().endswith(": 1 tasks")
