from __future__ import annotations

import pytest

from vmsnap.snapshot import StateSnapshot


class FakeEngine:
    """In-process engine that replays scripted serial output."""

    def __init__(
        self,
        *,
        boot_output: bytes = b"",
        state: bytes = b"",
        replies: dict[bytes, bytes] | None = None,
        capture_error: Exception | None = None,
    ):
        self.boot_output = boot_output
        self.state = state
        self.replies = replies or {}
        self.capture_error = capture_error
        self.calls: list[str] = []
        self.restored: StateSnapshot | None = None
        self.sent: list[bytes] = []
        self.listeners: list = []
        self.running = False

    @property
    def is_running(self) -> bool:
        return self.running

    def add_output_listener(self, listener) -> None:
        self.listeners.append(listener)

    def remove_output_listener(self, listener) -> None:
        self.listeners.remove(listener)

    def emit(self, data: bytes) -> None:
        for byte in data:
            for listener in list(self.listeners):
                listener(byte)

    def run(self) -> None:
        self.calls.append("run")
        self.running = True
        self.emit(self.boot_output)

    def stop(self) -> None:
        self.calls.append("stop")
        self.running = False

    def capture(self) -> StateSnapshot:
        self.calls.append("capture")
        if self.capture_error is not None:
            raise self.capture_error
        return StateSnapshot(self.state)

    def restore(self, state: StateSnapshot) -> None:
        self.calls.append("restore")
        self.restored = state

    def send_input(self, data: bytes) -> None:
        self.sent.append(data)
        self.emit(self.replies.get(data, b""))


@pytest.fixture
def make_engine():
    return FakeEngine
