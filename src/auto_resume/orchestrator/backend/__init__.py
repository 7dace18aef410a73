"""Session backend implementations."""

from auto_resume.orchestrator.backend.base import (
    CaptureUnavailableError,
    SessionBackend,
    SessionError,
)
from auto_resume.orchestrator.backend.tmux import TmuxSession

__all__ = [
    "CaptureUnavailableError",
    "SessionBackend",
    "SessionError",
    "TmuxSession",
]
