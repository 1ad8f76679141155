"""Download a compressed VM state snapshot and resume a session from it.

Usage:
    python -m vmsnap.restore https://example.org/ --command "uname -a"
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from .engine import VMEngine
from .errors import DecompressionError, TransportError
from .qemu import EngineConfig, QemuEngine
from .runtime_paths import get_workspace, kernel_image_path, state_url
from .serial_console import run_command
from .snapshot import StateSnapshot, StreamingDecompressor, decompress_state

_DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=10.0)
_REQUEST_HEADERS = {"Accept-Encoding": "identity"}


@dataclass(frozen=True)
class DownloadProgress:
    loaded: int
    total: int | None

    @property
    def percent(self) -> int | None:
        """Whole percent received, or None when the size is unknown.

        Rounds down so 100 is only reported once every byte has arrived.
        """
        if not self.total:
            return None
        return min(100, self.loaded * 100 // self.total)


def format_bytes(count: int) -> str:
    if count < 1024:
        return f"{count} B"
    if count < 1024 * 1024:
        return f"{count / 1024:.1f} KB"
    return f"{count / (1024 * 1024):.1f} MB"


def describe_progress(progress: DownloadProgress, elapsed_s: float) -> str:
    percent = progress.percent
    if percent is None:
        return f"Downloading... {elapsed_s:.1f}s ({format_bytes(progress.loaded)})"
    return f"Downloading... {percent}% ({format_bytes(progress.loaded)})"


def _content_length(response: httpx.Response) -> int | None:
    # Content-Length counts encoded bytes; it only matches the body we
    # iterate when the server honoured the identity request.
    if response.headers.get("Content-Encoding", "identity").lower() != "identity":
        return None
    value = response.headers.get("Content-Length")
    if value is None:
        return None
    try:
        length = int(value)
    except ValueError:
        return None
    return length if length > 0 else None


async def fetch_state(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    on_progress: Callable[[DownloadProgress], None] | None = None,
    streaming: bool = True,
) -> StateSnapshot:
    """Fetch and decompress the snapshot at ``url``.

    With ``streaming`` each chunk is decompressed as it arrives; otherwise
    the body is decompressed in one step once fully downloaded.
    """
    if client is None:
        async with httpx.AsyncClient(timeout=_DEFAULT_TIMEOUT, follow_redirects=True) as owned:
            return await fetch_state(url, client=owned, on_progress=on_progress, streaming=streaming)

    decoder = StreamingDecompressor() if streaming else None
    chunks: list[bytes] = []
    loaded = 0
    try:
        async with client.stream("GET", url, headers=_REQUEST_HEADERS) as response:
            if not response.is_success:
                raise TransportError(f"HTTP {response.status_code} fetching {url}")
            total = _content_length(response)
            if on_progress is not None:
                on_progress(DownloadProgress(loaded=0, total=total))

            async for chunk in response.aiter_bytes():
                if not chunk:
                    continue
                loaded += len(chunk)
                if decoder is not None:
                    decoder.feed(chunk)
                else:
                    chunks.append(chunk)
                if on_progress is not None:
                    on_progress(DownloadProgress(loaded=loaded, total=total))
    except (httpx.HTTPError, httpx.StreamError) as exc:
        raise TransportError(f"Failed to fetch {url}: {exc}") from exc

    if total is not None and loaded != total:
        raise TransportError(f"Incomplete download from {url}: got {loaded} of {total} bytes")
    if decoder is not None:
        return decoder.finish()
    return decompress_state(b"".join(chunks))


async def restore_session(
    engine: VMEngine,
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    on_status: Callable[[str], None] | None = None,
    on_ready: Callable[[], None] | None = None,
    streaming: bool = True,
) -> bool:
    """Fetch the snapshot, load it into ``engine`` and resume the guest.

    Transport and decompression failures are reported through
    ``on_status`` and end the session; returns True once the guest runs.
    """
    status = on_status or (lambda message: None)
    started = time.monotonic()

    def report(progress: DownloadProgress) -> None:
        status(describe_progress(progress, time.monotonic() - started))

    try:
        state = await fetch_state(url, client=client, on_progress=report, streaming=streaming)
    except (TransportError, DecompressionError) as exc:
        status(f"Error: {exc}")
        return False

    status("Restoring...")
    await asyncio.to_thread(engine.restore, state)
    await asyncio.to_thread(engine.run)
    if on_ready is not None:
        on_ready()
    status(f"Ready in {time.monotonic() - started:.1f}s")
    return True


class _StatusPrinter:
    """Rewrites download progress in place and prints other messages as lines."""

    def __init__(self) -> None:
        self._last: str | None = None
        self._inline = False

    def __call__(self, message: str) -> None:
        if message == self._last:
            return
        self._last = message
        if message.startswith("Downloading"):
            print(f"\r{message}", end="", flush=True)
            self._inline = True
            return
        if self._inline:
            print()
            self._inline = False
        print(message, flush=True)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Resume a VM from a published state snapshot.")
    parser.add_argument(
        "base_url",
        help="Base URL the `public/` directory is served from.",
    )
    parser.add_argument(
        "--workspace",
        help="Workspace holding `images/bzImage` (defaults to $VMSNAP_WORKSPACE or cwd).",
    )
    parser.add_argument(
        "--memory-mb",
        type=int,
        default=EngineConfig.memory_mb,
        help=f"Guest memory in MB; must match the captured VM (default: {EngineConfig.memory_mb}).",
    )
    parser.add_argument(
        "--accel",
        default=EngineConfig.accel,
        help=f"QEMU accelerator (default: {EngineConfig.accel}).",
    )
    parser.add_argument(
        "--buffered",
        action="store_true",
        help="Decompress after the download finishes instead of while streaming.",
    )
    parser.add_argument(
        "--command",
        action="append",
        default=[],
        help="Shell command to run in the resumed guest (repeatable).",
    )
    parser.add_argument(
        "--timeout-s",
        type=float,
        default=None,
        help="Per-command timeout in seconds (default: wait indefinitely).",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    workspace = get_workspace(args.workspace)
    try:
        config = EngineConfig(memory_mb=args.memory_mb, accel=args.accel)
        engine = QemuEngine(config, kernel=kernel_image_path(workspace))
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    try:
        restored = asyncio.run(
            restore_session(
                engine,
                state_url(args.base_url),
                on_status=_StatusPrinter(),
                streaming=not args.buffered,
            )
        )
        if not restored:
            return 1
        for command in args.command:
            print(f"/ # {command}")
            print(run_command(engine, command, timeout_s=args.timeout_s))
    except (RuntimeError, TimeoutError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        engine.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
