"""In-memory session and clock doubles."""

from __future__ import annotations

from collections.abc import Callable

from auto_resume.orchestrator.backend.base import CaptureUnavailableError


class ScriptedSession:
    """In-memory stand-in for the tmux session.

    Every `send` appends the next scripted output to a scrollback buffer that
    `capture_output` returns. Once the script runs out, sends add nothing.
    """

    def __init__(  # noqa: PLR0913
        self,
        outputs: list[str] | None = None,
        *,
        supports_capture: bool = True,
        capture_unavailable: bool = False,
        alive: bool = True,
        on_send: Callable[[str], None] | None = None,
    ) -> None:
        self.outputs = list(outputs or [])
        self.sent: list[str] = []
        self.buffer: list[str] = []
        self.alive = alive
        self.on_send = on_send
        self.capture_unavailable = capture_unavailable
        self._supports_capture = supports_capture

    @property
    def supports_capture(self) -> bool:
        return self._supports_capture

    def send(self, command: str) -> None:
        self.sent.append(command)
        if self.on_send is not None:
            self.on_send(command)
        if self.outputs:
            self.buffer.extend(self.outputs.pop(0).splitlines())

    def capture_output(self) -> str:
        if self.capture_unavailable:
            raise CaptureUnavailableError()
        return "\n".join(self.buffer)

    def is_alive(self) -> bool:
        return self.alive


class PromptSession(ScriptedSession):
    """Scripted session that draws a shell prompt like a real pane.

    `send` types the command into the trailing prompt line, appends the next
    scripted output and draws a fresh prompt below it.
    """

    def __init__(self, outputs: list[str] | None = None, *, prompt: str = "> ", **kwargs) -> None:
        super().__init__(outputs, **kwargs)
        self.prompt = prompt
        self.buffer.append(prompt)

    def send(self, command: str) -> None:
        if self.buffer and self.buffer[-1] == self.prompt:
            self.buffer[-1] = f"{self.prompt}{command}"
        super().send(command)
        self.buffer.append(self.prompt)


class FakeClock:
    """Monotonic clock whose `sleep` advances time and records the delay."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
