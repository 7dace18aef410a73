"""Subprocess-based tmux session backend."""

from __future__ import annotations

import logging
import shutil
import subprocess

from auto_resume.orchestrator.backend.base import CaptureUnavailableError, SessionError

logger = logging.getLogger(__name__)

_COMMAND_TIMEOUT_SECONDS = 10.0


class TmuxSession:
    """Talk to an existing tmux session through the tmux CLI."""

    def __init__(
        self,
        session_name: str,
        *,
        tmux_binary: str = "tmux",
        capture_lines: int = 200,
    ) -> None:
        self.session_name = session_name
        self.tmux_binary = tmux_binary
        self.capture_lines = capture_lines

    @property
    def supports_capture(self) -> bool:
        return shutil.which(self.tmux_binary) is not None

    def send(self, command: str) -> None:
        # Text is sent literally, then Enter as a separate key.
        self._run("send-keys", "-t", self.session_name, "-l", command)
        self._run("send-keys", "-t", self.session_name, "Enter")
        logger.debug("Sent to tmux session %s: %s", self.session_name, command)

    def capture_output(self) -> str:
        if not self.supports_capture:
            raise CaptureUnavailableError(f"{self.tmux_binary} is not installed.")
        result = self._run(
            "capture-pane",
            "-p",
            "-t",
            self.session_name,
            "-S",
            f"-{self.capture_lines}",
        )
        return result.stdout

    def is_alive(self) -> bool:
        try:
            self._run("has-session", "-t", self.session_name)
        except SessionError:
            return False
        return True

    def _run(self, *args: str) -> subprocess.CompletedProcess[str]:
        argv = [self.tmux_binary, *args]
        try:
            result = subprocess.run(  # noqa: S603
                argv,
                capture_output=True,
                text=True,
                timeout=_COMMAND_TIMEOUT_SECONDS,
                check=False,
            )
        except FileNotFoundError as error:
            raise SessionError(
                f"tmux binary not found: {self.tmux_binary}",
                transient=False,
            ) from error
        except subprocess.TimeoutExpired as error:
            raise SessionError(f"tmux {args[0]} timed out", transient=True) from error
        except OSError as error:
            raise SessionError(f"tmux failed to start: {error}", transient=True) from error

        if result.returncode != 0:
            stderr = result.stderr.strip()
            raise SessionError(
                f"tmux {args[0]} failed for session {self.session_name}: {stderr}",
                transient="can't find session" not in stderr and "no server" not in stderr,
            )
        return result
