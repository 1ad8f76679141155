"""Opaque VM state snapshots and their gzip persisted form."""

from __future__ import annotations

import gzip
import zlib
from dataclasses import dataclass
from pathlib import Path

from .errors import DecompressionError

COMPRESS_LEVEL = 9

_GZIP_WBITS = 16 + zlib.MAX_WBITS


@dataclass(frozen=True, repr=False)
class StateSnapshot:
    """Machine state produced by a VM engine's capture operation.

    The bytes are only ever passed back to an engine; nothing here reads them.
    """

    data: bytes

    def __len__(self) -> int:
        return len(self.data)

    def __repr__(self) -> str:
        return f"StateSnapshot(<{len(self.data)} bytes>)"


def compress_state(state: StateSnapshot) -> bytes:
    return gzip.compress(state.data, compresslevel=COMPRESS_LEVEL, mtime=0)


def decompress_state(blob: bytes) -> StateSnapshot:
    if not blob:
        raise DecompressionError("Compressed state is empty.")
    try:
        return StateSnapshot(gzip.decompress(blob))
    except (OSError, EOFError, zlib.error) as exc:
        raise DecompressionError(f"Could not decompress state: {exc}") from exc


def write_state(path: str | Path, state: StateSnapshot) -> int:
    """Persist ``state`` compressed and return the compressed size."""
    destination = Path(path)
    blob = compress_state(state)
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(blob)
    return len(blob)


def read_state(path: str | Path) -> StateSnapshot:
    return decompress_state(Path(path).read_bytes())


class StreamingDecompressor:
    """Incremental gzip decoder fed with chunks as they arrive."""

    def __init__(self) -> None:
        self._decoder = zlib.decompressobj(_GZIP_WBITS)
        self._parts: list[bytes] = []
        self._received = 0

    def feed(self, chunk: bytes) -> None:
        self._received += len(chunk)
        while chunk:
            if self._decoder.eof:
                self._decoder = zlib.decompressobj(_GZIP_WBITS)
            try:
                self._parts.append(self._decoder.decompress(chunk))
            except zlib.error as exc:
                raise DecompressionError(f"Corrupt compressed state: {exc}") from exc
            chunk = self._decoder.unused_data

    def finish(self) -> StateSnapshot:
        if not self._received:
            raise DecompressionError("Compressed state is empty.")
        try:
            self._parts.append(self._decoder.flush())
        except zlib.error as exc:
            raise DecompressionError(f"Corrupt compressed state: {exc}") from exc
        if not self._decoder.eof:
            raise DecompressionError("Compressed state is truncated.")
        return StateSnapshot(b"".join(self._parts))
