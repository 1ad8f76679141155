"""Build gzip-compressed cpio initrd images from a source tree."""

from __future__ import annotations

import gzip
import zlib
from pathlib import Path

from .cpio import ArchiveRecord, ArchiveWriter, read_archive
from .errors import DecompressionError
from .permissions import PermissionTable
from .tree import walk_tree

COMPRESS_LEVEL = 9


def build_archive(root: str | Path, table: PermissionTable) -> bytes:
    writer = ArchiveWriter()
    for entry in walk_tree(root, table):
        writer.add(entry)
    return writer.finish()


def package_image(archive: bytes) -> bytes:
    return gzip.compress(archive, compresslevel=COMPRESS_LEVEL, mtime=0)


def write_image(root: str | Path, table: PermissionTable, destination: str | Path) -> Path:
    image = package_image(build_archive(root, table))
    target = Path(destination)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(image)
    print(f"wrote: {target} ({len(image)} bytes)")
    return target


def read_image(path: str | Path) -> list[ArchiveRecord]:
    try:
        archive = gzip.decompress(Path(path).read_bytes())
    except (EOFError, zlib.error, gzip.BadGzipFile) as exc:
        raise DecompressionError(f"Could not decompress image {path}: {exc}") from exc
    return read_archive(archive)
