"""Source tree traversal for initrd archives."""

from __future__ import annotations

import os
import posixpath
import stat
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigurationError, SourceTreeError
from .permissions import SYMLINK_MODE, EntryKind, PermissionTable

ARCHIVE_ROOT = "."

# newc header fields are 32-bit unsigned.
_FIELD_MAX = 0xFFFFFFFF


@dataclass(frozen=True)
class FilesystemEntry:
    path: str
    kind: EntryKind
    mode: int
    uid: int
    gid: int
    nlink: int
    mtime: int
    data: bytes = b""


def _lstat(path: Path) -> os.stat_result:
    try:
        return path.lstat()
    except OSError as exc:
        raise SourceTreeError(f"Cannot stat {path}: {exc}") from exc


def _list_dir(path: Path) -> list[str]:
    try:
        return sorted(os.listdir(path))
    except OSError as exc:
        raise SourceTreeError(f"Cannot list {path}: {exc}") from exc


def _read_bytes(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        raise SourceTreeError(f"Cannot read {path}: {exc}") from exc


def _read_link(path: Path) -> bytes:
    try:
        return os.fsencode(os.readlink(path))
    except OSError as exc:
        raise SourceTreeError(f"Cannot read symlink {path}: {exc}") from exc


def _check_name(path: Path, archive_path: str) -> None:
    try:
        archive_path.encode("utf-8")
    except UnicodeEncodeError:
        raise SourceTreeError(f"File name is not valid UTF-8: {path}") from None


def _mtime(path: Path, info: os.stat_result) -> int:
    mtime = int(info.st_mtime)
    if not 0 <= mtime <= _FIELD_MAX:
        raise SourceTreeError(f"Modification time of {path} does not fit in a cpio header: {mtime}")
    return mtime


def _directory_entry(path: str, table: PermissionTable, mtime: int) -> FilesystemEntry:
    mode, uid, gid = table.resolve(path, EntryKind.DIRECTORY)
    return FilesystemEntry(
        path=path,
        kind=EntryKind.DIRECTORY,
        mode=mode,
        uid=uid,
        gid=gid,
        nlink=2,
        mtime=mtime,
    )


def _walk_directory(directory: Path, base: str, table: PermissionTable) -> Iterator[FilesystemEntry]:
    for name in _list_dir(directory):
        full_path = directory / name
        archive_path = f"{base}/{name}"
        _check_name(full_path, archive_path)
        info = _lstat(full_path)
        mtime = _mtime(full_path, info)

        if stat.S_ISDIR(info.st_mode):
            yield _directory_entry(archive_path, table, mtime)
            yield from _walk_directory(full_path, archive_path, table)
            continue

        if stat.S_ISLNK(info.st_mode):
            kind, data = EntryKind.SYMLINK, _read_link(full_path)
        elif stat.S_ISREG(info.st_mode):
            kind, data = EntryKind.FILE, _read_bytes(full_path)
        else:
            raise SourceTreeError(f"Unsupported file type in source tree: {full_path}")
        if len(data) > _FIELD_MAX:
            raise SourceTreeError(f"File is too large for a cpio archive: {full_path}")

        mode, uid, gid = table.resolve(archive_path, kind)
        yield FilesystemEntry(
            path=archive_path,
            kind=kind,
            mode=mode,
            uid=uid,
            gid=gid,
            nlink=1,
            mtime=mtime,
            data=data,
        )


def _table_symlinks(
    table: PermissionTable,
    emitted: dict[str, EntryKind],
) -> Iterator[FilesystemEntry]:
    for link_path, target in table.symlinks.items():
        archive_path = ARCHIVE_ROOT + link_path
        if archive_path in emitted:
            raise ConfigurationError(f"Symlink {link_path} collides with an existing entry.")

        missing: list[str] = []
        parent = posixpath.dirname(archive_path)
        while parent not in emitted:
            missing.append(parent)
            parent = posixpath.dirname(parent)
        if emitted[parent] is not EntryKind.DIRECTORY:
            raise ConfigurationError(
                f"Symlink {link_path} is nested under {parent[1:]}, which is not a directory."
            )
        for directory in reversed(missing):
            emitted[directory] = EntryKind.DIRECTORY
            yield _directory_entry(directory, table, 0)

        emitted[archive_path] = EntryKind.SYMLINK
        yield FilesystemEntry(
            path=archive_path,
            kind=EntryKind.SYMLINK,
            mode=SYMLINK_MODE,
            uid=0,
            gid=0,
            nlink=1,
            mtime=0,
            data=target.encode("utf-8"),
        )


def walk_tree(root: str | Path, table: PermissionTable) -> Iterator[FilesystemEntry]:
    """Yield archive entries for ``root`` in archive order.

    The synthesized root ``.`` comes first, then the tree in depth-first
    pre-order with children sorted by name, then the symlink table.
    """
    source = Path(root)
    try:
        info = source.stat()
    except OSError as exc:
        raise SourceTreeError(f"Cannot stat source tree {source}: {exc}") from exc
    if not stat.S_ISDIR(info.st_mode):
        raise SourceTreeError(f"Source tree is not a directory: {source}")

    emitted = {ARCHIVE_ROOT: EntryKind.DIRECTORY}
    yield _directory_entry(ARCHIVE_ROOT, table, _mtime(source, info))
    for entry in _walk_directory(source, ARCHIVE_ROOT, table):
        emitted[entry.path] = entry.kind
        yield entry
    yield from _table_symlinks(table, emitted)
