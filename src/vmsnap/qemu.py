"""VM engine backed by a local QEMU process."""

from __future__ import annotations

import json
import shlex
import socket
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from .engine import OutputListener
from .preflight import find_qemu_system_binary, install_hint
from .snapshot import StateSnapshot

_MIN_MEMORY_MB = 16
_MAX_MEMORY_MB = 4096
_ACCELERATORS = ("tcg", "kvm", "hvf", "whpx")

_QMP_CONNECT_TIMEOUT_S = 10.0
_POLL_INTERVAL_S = 0.1
_SHUTDOWN_TIMEOUT_S = 10.0
_READ_CHUNK = 4096

DEFAULT_CMDLINE = "root=/dev/ram0 rw init=/init console=ttyS0 quiet"


@dataclass
class EngineConfig:
    memory_mb: int = 128
    accel: str = "tcg"
    cmdline: str = DEFAULT_CMDLINE

    def validate(self) -> None:
        if not isinstance(self.memory_mb, int) or isinstance(self.memory_mb, bool):
            raise ValueError("`memory_mb` must be an int.")
        if not _MIN_MEMORY_MB <= self.memory_mb <= _MAX_MEMORY_MB:
            raise ValueError(
                f"`memory_mb` must be in [{_MIN_MEMORY_MB}, {_MAX_MEMORY_MB}], "
                f"got: {self.memory_mb}"
            )
        if self.accel not in _ACCELERATORS:
            raise ValueError(f"`accel` must be one of {_ACCELERATORS}, got: {self.accel!r}")
        if not isinstance(self.cmdline, str) or not self.cmdline.strip():
            raise ValueError("`cmdline` must be a non-empty string.")


class _QmpClient:
    """Minimal QMP client speaking newline-delimited JSON over a unix socket."""

    def __init__(self, path: Path, *, timeout_s: float = _QMP_CONNECT_TIMEOUT_S):
        deadline = time.monotonic() + timeout_s
        while True:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                sock.connect(str(path))
                break
            except (FileNotFoundError, ConnectionRefusedError):
                sock.close()
                if time.monotonic() >= deadline:
                    raise RuntimeError(f"Timed out connecting to QMP socket: {path}") from None
                time.sleep(_POLL_INTERVAL_S)

        self._sock = sock
        self._stream = sock.makefile("rwb")
        greeting = self._read_message()
        if "QMP" not in greeting:
            raise RuntimeError(f"Unexpected QMP greeting: {greeting!r}")
        self.execute("qmp_capabilities")

    def _read_message(self) -> dict[str, object]:
        line = self._stream.readline()
        if not line:
            raise RuntimeError("QMP connection closed.")
        message = json.loads(line)
        if not isinstance(message, dict):
            raise RuntimeError(f"Unexpected QMP message: {message!r}")
        return message

    def execute(self, command: str, arguments: dict[str, object] | None = None) -> object:
        payload: dict[str, object] = {"execute": command}
        if arguments:
            payload["arguments"] = arguments
        self._stream.write(json.dumps(payload).encode("utf-8") + b"\r\n")
        self._stream.flush()

        while True:
            message = self._read_message()
            if "return" in message:
                return message["return"]
            if "error" in message:
                error = message["error"]
                desc = error.get("desc", error) if isinstance(error, dict) else error
                raise RuntimeError(f"QMP `{command}` failed: {desc}")
            # Asynchronous events are interleaved with replies.

    def close(self) -> None:
        self._stream.close()
        self._sock.close()


class QemuEngine:
    """Boots a kernel and initrd under QEMU with the serial console on stdio.

    State capture uses QMP migration to a file; restore starts QEMU with a
    deferred incoming migration and leaves the guest paused until ``run``.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        kernel: str | Path,
        initrd: str | Path | None = None,
        qemu_system_binary: str | None = None,
    ):
        self.config = config or EngineConfig()
        self.config.validate()
        self.kernel = Path(kernel)
        self.initrd = Path(initrd) if initrd is not None else None
        self.qemu_system_binary = qemu_system_binary

        self._listeners: list[OutputListener] = []
        self._listeners_lock = threading.Lock()
        self._process: subprocess.Popen[bytes] | None = None
        self._reader_thread: threading.Thread | None = None
        self._qmp: _QmpClient | None = None
        self._workdir: tempfile.TemporaryDirectory[str] | None = None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def add_output_listener(self, listener: OutputListener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def remove_output_listener(self, listener: OutputListener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def run(self) -> None:
        if self._process is None:
            self._spawn(incoming=False)
            return
        self._require_qmp().execute("cont")

    def stop(self) -> None:
        process = self._process
        if process is None:
            return
        self._process = None

        if self._qmp is not None:
            if process.poll() is None:
                try:
                    self._qmp.execute("quit")
                except (OSError, RuntimeError):
                    pass
            self._qmp.close()
            self._qmp = None

        if process.poll() is None:
            try:
                process.wait(timeout=_SHUTDOWN_TIMEOUT_S)
            except subprocess.TimeoutExpired:
                process.terminate()
                try:
                    process.wait(timeout=2.0)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait(timeout=2.0)

        if process.stdin is not None:
            process.stdin.close()
        if self._reader_thread is not None and self._reader_thread.is_alive():
            self._reader_thread.join(timeout=1.0)
        self._reader_thread = None
        if process.stdout is not None:
            process.stdout.close()
        if self._workdir is not None:
            self._workdir.cleanup()
            self._workdir = None

    def send_input(self, data: bytes) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise RuntimeError("VM is not running.")
        try:
            process.stdin.write(data)
            process.stdin.flush()
        except OSError as exc:
            raise RuntimeError(f"Failed to send serial input: {exc}") from exc

    def capture(self) -> StateSnapshot:
        qmp = self._require_qmp()
        target = self._workdir_path() / "state.bin"
        qmp.execute("migrate", {"uri": f"exec:cat > {shlex.quote(str(target))}"})
        self._wait_for_migration(qmp)
        try:
            return StateSnapshot(target.read_bytes())
        finally:
            target.unlink(missing_ok=True)

    def restore(self, state: StateSnapshot) -> None:
        if self._process is not None:
            raise RuntimeError("Restore needs a fresh VM; stop the running one first.")
        self._spawn(incoming=True)
        source = self._workdir_path() / "incoming.bin"
        source.write_bytes(state.data)
        try:
            qmp = self._require_qmp()
            qmp.execute("migrate-incoming", {"uri": f"exec:cat {shlex.quote(str(source))}"})
            self._wait_for_incoming(qmp)
        finally:
            source.unlink(missing_ok=True)

    def _require_qmp(self) -> _QmpClient:
        if self._qmp is None or not self.is_running:
            raise RuntimeError("VM is not running.")
        return self._qmp

    def _workdir_path(self) -> Path:
        if self._workdir is None:
            raise RuntimeError("VM is not running.")
        return Path(self._workdir.name)

    def _wait_for_migration(self, qmp: _QmpClient) -> None:
        while True:
            info = qmp.execute("query-migrate")
            status = info.get("status") if isinstance(info, dict) else None
            if status == "completed":
                return
            if status in {"failed", "cancelled"}:
                detail = info.get("error-desc", "") if isinstance(info, dict) else ""
                raise RuntimeError(f"State migration {status}. {detail}".strip())
            if not self.is_running:
                raise RuntimeError("VM exited during state migration.")
            time.sleep(_POLL_INTERVAL_S)

    def _wait_for_incoming(self, qmp: _QmpClient) -> None:
        while True:
            if not self.is_running:
                raise RuntimeError("VM exited while loading state.")
            info = qmp.execute("query-status")
            status = info.get("status") if isinstance(info, dict) else None
            if status in {"internal-error", "io-error", "shutdown", "guest-panicked"}:
                raise RuntimeError(f"VM entered `{status}` while loading state.")
            if status != "inmigrate":
                return
            time.sleep(_POLL_INTERVAL_S)

    def _spawn(self, *, incoming: bool) -> None:
        binary = self.qemu_system_binary or find_qemu_system_binary()
        if binary is None:
            raise RuntimeError(f"qemu-system-x86_64 not found on PATH. {install_hint()}")

        self._workdir = tempfile.TemporaryDirectory(prefix="vmsnap-")
        qmp_path = Path(self._workdir.name) / "qmp.sock"
        args = self._build_qemu_args(
            qemu_system_binary=binary,
            qmp_path=qmp_path,
            incoming=incoming,
        )
        process = subprocess.Popen(
            args,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            bufsize=0,
        )
        self._process = process

        assert process.stdout is not None
        self._reader_thread = threading.Thread(
            target=self._reader_loop,
            args=(process.stdout,),
            daemon=True,
        )
        self._reader_thread.start()

        try:
            self._qmp = _QmpClient(qmp_path)
        except (OSError, RuntimeError):
            self.stop()
            raise

    def _reader_loop(self, stream: IO[bytes]) -> None:
        for chunk in iter(lambda: stream.read(_READ_CHUNK), b""):
            with self._listeners_lock:
                listeners = list(self._listeners)
            for byte in chunk:
                for listener in listeners:
                    listener(byte)

    def _build_qemu_args(
        self,
        *,
        qemu_system_binary: str,
        qmp_path: Path,
        incoming: bool,
    ) -> list[str]:
        args = [
            qemu_system_binary,
            "-machine",
            f"pc,accel={self.config.accel}",
            "-m",
            str(self.config.memory_mb),
            "-display",
            "none",
            "-monitor",
            "none",
            "-serial",
            "stdio",
            "-no-reboot",
            "-nic",
            "none",
            "-kernel",
            str(self.kernel),
            "-append",
            self.config.cmdline,
            "-qmp",
            f"unix:{qmp_path},server=on,wait=off",
        ]
        if self.initrd is not None:
            args.extend(["-initrd", str(self.initrd)])
        if incoming:
            args.extend(["-incoming", "defer", "-S"])
        return args
