"""Capabilities vmsnap needs from a virtual machine engine."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from .snapshot import StateSnapshot

OutputListener = Callable[[int], None]


class VMEngine(Protocol):
    """A machine that boots, streams serial output and saves/loads its state.

    Output listeners receive one byte at a time, in the order the guest
    wrote them.
    """

    @property
    def is_running(self) -> bool: ...

    def run(self) -> None: ...

    def stop(self) -> None: ...

    def capture(self) -> StateSnapshot: ...

    def restore(self, state: StateSnapshot) -> None: ...

    def add_output_listener(self, listener: OutputListener) -> None: ...

    def remove_output_listener(self, listener: OutputListener) -> None: ...

    def send_input(self, data: bytes) -> None: ...
