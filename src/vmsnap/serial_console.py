"""Shell prompt detection and command execution over a VM serial line."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Protocol

from .engine import VMEngine

DEFAULT_PROMPT = b"/ # "

_POLL_INTERVAL_S = 0.1
_CR = 0x0D
_LF = 0x0A


class ReadinessDetector(Protocol):
    def feed(self, byte: int) -> bool:
        """Consume one output byte; return True once the guest is ready."""
        ...


class PromptDetector:
    """Fires when serial output ends with the guest shell prompt.

    Carriage returns are dropped before matching.
    """

    def __init__(self, prompt: bytes = DEFAULT_PROMPT):
        if not prompt:
            raise ValueError("`prompt` must be non-empty.")
        self.prompt = prompt
        self._tail = bytearray()

    def feed(self, byte: int) -> bool:
        if byte == _CR:
            return False
        self._tail.append(byte)
        del self._tail[: -len(self.prompt)]
        return self._tail == self.prompt


class _AfterEchoDetector:
    """Ignores the guest's echo of the command line, then defers to ``detector``."""

    def __init__(self, detector: ReadinessDetector):
        self.detector = detector
        self._echoed = False

    def feed(self, byte: int) -> bool:
        if not self._echoed:
            self._echoed = byte == _LF
            return False
        return self.detector.feed(byte)


def wait_for_prompt(
    engine: VMEngine,
    detector: ReadinessDetector | None = None,
    *,
    action: Callable[[], None] | None = None,
    echo: Callable[[int], None] | None = None,
    timeout_s: float | None = None,
) -> float:
    """Run ``action`` and block until ``detector`` fires; return elapsed seconds.

    The detector sees every output byte produced after the listener is
    attached. Without ``timeout_s`` this waits for as long as the engine
    keeps running.
    """
    detector = detector or PromptDetector()
    ready = threading.Event()

    def on_byte(byte: int) -> None:
        if echo is not None:
            echo(byte)
        if not ready.is_set() and detector.feed(byte):
            ready.set()

    engine.add_output_listener(on_byte)
    try:
        started = time.monotonic()
        if action is not None:
            action()
        deadline = None if timeout_s is None else started + timeout_s
        while not ready.wait(_POLL_INTERVAL_S):
            if not engine.is_running:
                raise RuntimeError("VM stopped before the shell prompt appeared.")
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError("Timed out waiting for the shell prompt.")
        return time.monotonic() - started
    finally:
        engine.remove_output_listener(on_byte)


def clean_command_output(raw: bytes, prompt: bytes = DEFAULT_PROMPT) -> str:
    """Drop the echoed command line and bare prompt lines from ``raw``."""
    text = raw.replace(b"\r", b"").decode("utf-8", errors="replace")
    prompt_text = prompt.decode("utf-8", errors="replace")
    if text.endswith(prompt_text):
        text = text[: -len(prompt_text)]
    lines = text.split("\n")[1:]
    kept = [line for line in lines if line.strip() != prompt_text.strip()]
    return "\n".join(kept).strip()


def run_command(
    engine: VMEngine,
    command: str,
    *,
    prompt: bytes = DEFAULT_PROMPT,
    timeout_s: float | None = None,
) -> str:
    """Send ``command`` to the guest shell and return its output."""
    if not command.strip():
        raise ValueError("`command` must be a non-empty string.")

    collected = bytearray()
    line = command.rstrip("\n").encode("utf-8") + b"\n"
    wait_for_prompt(
        engine,
        _AfterEchoDetector(PromptDetector(prompt)),
        action=lambda: engine.send_input(line),
        echo=collected.append,
        timeout_s=timeout_s,
    )
    return clean_command_output(bytes(collected), prompt)
