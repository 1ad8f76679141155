"""newc cpio encoding and decoding."""

from __future__ import annotations

import itertools
import stat
from collections.abc import Iterator
from dataclasses import dataclass

from .permissions import EntryKind
from .tree import FilesystemEntry

NEWC_MAGIC = b"070701"
HEADER_SIZE = 110
TRAILER_NAME = "TRAILER!!!"
FIRST_INODE = 721956

_FIELD_MAX = 0xFFFFFFFF

TYPE_BITS = {
    EntryKind.DIRECTORY: stat.S_IFDIR,
    EntryKind.FILE: stat.S_IFREG,
    EntryKind.SYMLINK: stat.S_IFLNK,
}


@dataclass(frozen=True)
class ArchiveRecord:
    ino: int
    mode: int
    uid: int
    gid: int
    nlink: int
    mtime: int
    name: str
    data: bytes
    devmajor: int = 0
    devminor: int = 0
    rdevmajor: int = 0
    rdevminor: int = 0

    @property
    def is_trailer(self) -> bool:
        return self.name == TRAILER_NAME


def pad4(size: int) -> int:
    return (4 - size % 4) % 4


def _hex8(name: str, value: int) -> str:
    if not 0 <= value <= _FIELD_MAX:
        raise ValueError(f"cpio field `{name}` out of range: {value}")
    return f"{value:08x}"


def encode_header(
    *,
    ino: int,
    mode: int,
    uid: int,
    gid: int,
    nlink: int,
    mtime: int,
    filesize: int,
    namesize: int,
) -> bytes:
    fields = [
        NEWC_MAGIC.decode("ascii"),
        _hex8("ino", ino),
        _hex8("mode", mode),
        _hex8("uid", uid),
        _hex8("gid", gid),
        _hex8("nlink", nlink),
        _hex8("mtime", mtime),
        _hex8("filesize", filesize),
        "00000000",  # devmajor
        "00000000",  # devminor
        "00000000",  # rdevmajor
        "00000000",  # rdevminor
        _hex8("namesize", namesize),
        "00000000",  # check
    ]
    return "".join(fields).encode("ascii")


def encode_record(
    *,
    ino: int,
    name: str,
    mode: int,
    uid: int,
    gid: int,
    nlink: int,
    mtime: int,
    data: bytes,
) -> bytes:
    name_bytes = name.encode("utf-8") + b"\0"
    header = encode_header(
        ino=ino,
        mode=mode,
        uid=uid,
        gid=gid,
        nlink=nlink,
        mtime=mtime,
        filesize=len(data),
        namesize=len(name_bytes),
    )
    return b"".join(
        [
            header,
            name_bytes,
            b"\0" * pad4(HEADER_SIZE + len(name_bytes)),
            data,
            b"\0" * pad4(len(data)),
        ]
    )


class ArchiveWriter:
    """Accumulate cpio records for a single archive.

    Inodes are handed out from ``first_inode`` upwards, one per entry. The
    trailer carries inode 0 and is written exactly once by :meth:`finish`.
    """

    def __init__(self, *, first_inode: int = FIRST_INODE):
        self._buffer = bytearray()
        self._inodes = itertools.count(first_inode)
        self._finished = False

    def add(self, entry: FilesystemEntry) -> None:
        if self._finished:
            raise RuntimeError("Cannot add entries to a finished archive.")
        self._buffer.extend(
            encode_record(
                ino=next(self._inodes),
                name=entry.path,
                mode=TYPE_BITS[entry.kind] | entry.mode,
                uid=entry.uid,
                gid=entry.gid,
                nlink=entry.nlink,
                mtime=entry.mtime,
                data=entry.data,
            )
        )

    def finish(self) -> bytes:
        if self._finished:
            raise RuntimeError("Archive already finished.")
        self._finished = True
        self._buffer.extend(
            encode_record(
                ino=0,
                name=TRAILER_NAME,
                mode=0,
                uid=0,
                gid=0,
                nlink=1,
                mtime=0,
                data=b"",
            )
        )
        return bytes(self._buffer)


def _read_field(header: bytes, index: int) -> int:
    start = len(NEWC_MAGIC) + index * 8
    text = header[start : start + 8]
    try:
        return int(text.decode("ascii"), 16)
    except (UnicodeDecodeError, ValueError):
        raise ValueError(f"Invalid cpio header field: {text!r}") from None


def iter_records(data: bytes) -> Iterator[ArchiveRecord]:
    """Yield records from a newc stream up to and including the trailer."""
    view = memoryview(data)
    offset = 0
    while True:
        header = bytes(view[offset : offset + HEADER_SIZE])
        if len(header) < HEADER_SIZE:
            raise ValueError(f"Truncated cpio header at offset {offset}.")
        if header[: len(NEWC_MAGIC)] != NEWC_MAGIC:
            raise ValueError(f"Bad cpio magic at offset {offset}: {header[:6]!r}")

        (
            ino,
            mode,
            uid,
            gid,
            nlink,
            mtime,
            filesize,
            devmajor,
            devminor,
            rdevmajor,
            rdevminor,
            namesize,
        ) = (_read_field(header, index) for index in range(12))
        if namesize < 1:
            raise ValueError(f"Invalid cpio name size at offset {offset}.")

        name_start = offset + HEADER_SIZE
        name_end = name_start + namesize
        data_start = name_end + pad4(HEADER_SIZE + namesize)
        data_end = data_start + filesize
        if data_end > len(data):
            raise ValueError(f"Truncated cpio record at offset {offset}.")

        raw_name = bytes(view[name_start:name_end])
        if not raw_name.endswith(b"\0"):
            raise ValueError(f"cpio name at offset {offset} is not NUL-terminated.")

        record = ArchiveRecord(
            ino=ino,
            mode=mode,
            uid=uid,
            gid=gid,
            nlink=nlink,
            mtime=mtime,
            name=raw_name[:-1].decode("utf-8"),
            data=bytes(view[data_start:data_end]),
            devmajor=devmajor,
            devminor=devminor,
            rdevmajor=rdevmajor,
            rdevminor=rdevminor,
        )
        yield record
        if record.is_trailer:
            return
        offset = data_end + pad4(filesize)


def read_archive(data: bytes) -> list[ArchiveRecord]:
    return list(iter_records(data))
