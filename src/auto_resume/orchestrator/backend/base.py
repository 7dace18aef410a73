"""Interface to the external interactive session that runs workflow commands."""

from __future__ import annotations

from typing import Protocol


class SessionError(RuntimeError):
    """Session command failed, with a retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CaptureUnavailableError(SessionError):
    """The session backend cannot return its output."""

    def __init__(self, message: str = "Session output capture is not available.") -> None:
        super().__init__(message, transient=False)


class SessionBackend(Protocol):
    """Protocol implemented by session collaborators.

    The engine never creates or tears down the session; it only talks to it.
    """

    @property
    def supports_capture(self) -> bool:
        """Whether `capture_output` can return text."""

    def send(self, command: str) -> None:
        """Send one line of input; raises `SessionError` on failure."""

    def capture_output(self) -> str:
        """Return recent session output."""

    def is_alive(self) -> bool:
        """Report whether the session is still running."""
