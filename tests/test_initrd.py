from __future__ import annotations

import gzip
import os
from pathlib import Path

import pytest

from vmsnap.cpio import HEADER_SIZE, TRAILER_NAME, iter_records, pad4, read_archive
from vmsnap.errors import ConfigurationError, SourceTreeError
from vmsnap.initrd import build_archive, package_image, read_image, write_image
from vmsnap.permissions import EntryKind, PermissionTable, parse_permissions
from vmsnap.tree import walk_tree

_MTIME = 1_700_000_000


@pytest.fixture
def system(tmp_path: Path) -> Path:
    root = tmp_path / "system"
    (root / "bin").mkdir(parents=True)
    (root / "etc").mkdir()
    (root / "bin" / "busybox").write_bytes(b"\x7fELF-busybox")
    (root / "etc" / "passwd").write_text("root:x:0:0::/root:/bin/sh\n", encoding="utf-8")
    (root / "init").write_text("#!/bin/sh\nexec /bin/sh\n", encoding="utf-8")
    for path in [root, *root.rglob("*")]:
        os.utime(path, (_MTIME, _MTIME))
    return root


def _names(archive: bytes) -> list[str]:
    return [record.name for record in read_archive(archive)]


def _by_name(archive: bytes) -> dict:
    return {record.name: record for record in read_archive(archive)}


def test_archive_order_is_root_then_sorted_preorder_then_trailer(system: Path) -> None:
    archive = build_archive(system, PermissionTable())
    assert _names(archive) == [
        ".",
        "./bin",
        "./bin/busybox",
        "./etc",
        "./etc/passwd",
        "./init",
        TRAILER_NAME,
    ]


def test_children_sorted_by_name(tmp_path: Path) -> None:
    root = tmp_path / "tree"
    root.mkdir()
    for name in ("b", "a", "C", "_x"):
        (root / name).write_bytes(b"")
    names = [entry.path for entry in walk_tree(root, PermissionTable())]
    assert names == [".", "./C", "./_x", "./a", "./b"]


def test_defaults_for_empty_permissions(system: Path) -> None:
    records = _by_name(build_archive(system, parse_permissions({})))

    assert records["./etc/passwd"].mode == 0o100644
    assert records["./etc"].mode == 0o040755
    assert records["."].mode == 0o040755
    for name in ("./etc", "./etc/passwd", "."):
        assert (records[name].uid, records[name].gid) == (0, 0)
    assert records["./etc"].nlink == 2
    assert records["./etc/passwd"].nlink == 1


def test_override_application(system: Path) -> None:
    table = parse_permissions(
        {
            "files": {
                "/etc/passwd": {"mode": "0640", "uid": 3, "gid": 4},
                "/": {"mode": "0700", "uid": 0, "gid": 0},
            }
        }
    )
    records = _by_name(build_archive(system, table))

    passwd = records["./etc/passwd"]
    assert (passwd.mode, passwd.uid, passwd.gid) == (0o100640, 3, 4)
    assert records["."].mode == 0o040700


def test_symlink_table_encoding(system: Path) -> None:
    table = parse_permissions({"symlinks": {"/bin/sh": "/bin/busybox"}})
    archive = build_archive(system, table)
    records = read_archive(archive)

    assert [record.name for record in records][-2:] == ["./bin/sh", TRAILER_NAME]
    link = records[-2]
    assert link.mode == 0o120777
    assert (link.uid, link.gid, link.nlink, link.mtime) == (0, 0, 1, 0)
    assert link.data == b"/bin/busybox"
    assert len(link.data) == 12

    name = b"./bin/sh\0"
    start = archive.index(name)
    payload_start = start + len(name) + pad4(HEADER_SIZE + len(name))
    assert archive[payload_start : payload_start + 12] == b"/bin/busybox"
    # The 12-byte payload is already aligned, so the trailer header follows directly.
    assert archive[payload_start + 12 : payload_start + 18] == b"070701"


def test_symlink_parents_are_synthesized(system: Path) -> None:
    table = parse_permissions({"symlinks": {"/usr/bin/env": "/bin/busybox", "/usr/bin/vi": "/bin/busybox"}})
    records = read_archive(build_archive(system, table))
    names = [record.name for record in records]

    assert names[-5:] == ["./usr", "./usr/bin", "./usr/bin/env", "./usr/bin/vi", TRAILER_NAME]
    assert names.index("./usr") < names.index("./usr/bin") < names.index("./usr/bin/env")
    assert names.count("./usr/bin") == 1
    usr = records[names.index("./usr")]
    assert usr.mode == 0o040755
    assert usr.nlink == 2


def test_every_entry_follows_its_parent(system: Path) -> None:
    table = parse_permissions({"symlinks": {"/sbin/init": "/init", "/bin/sh": "busybox"}})
    seen: set[str] = set()
    for entry in walk_tree(system, table):
        if entry.path != ".":
            assert entry.path.rsplit("/", 1)[0] in seen, entry.path
        if entry.kind is EntryKind.DIRECTORY:
            seen.add(entry.path)


def test_symlink_over_existing_entry_is_rejected(system: Path) -> None:
    table = parse_permissions({"symlinks": {"/bin/busybox": "/init"}})
    with pytest.raises(ConfigurationError, match="collides"):
        build_archive(system, table)


def test_symlink_under_regular_file_is_rejected(system: Path) -> None:
    table = parse_permissions({"symlinks": {"/init/x": "/bin/busybox"}})
    with pytest.raises(ConfigurationError, match="not a directory"):
        build_archive(system, table)


def test_symlink_under_another_table_symlink_is_rejected(system: Path) -> None:
    table = parse_permissions({"symlinks": {"/lib": "/usr/lib", "/lib/modules": "/srv"}})
    with pytest.raises(ConfigurationError, match="not a directory"):
        build_archive(system, table)


def test_symlink_into_existing_directory(system: Path) -> None:
    table = parse_permissions({"symlinks": {"/bin/sh": "busybox"}})
    names = _names(build_archive(system, table))
    assert names.count("./bin") == 1
    assert names.count("./bin/sh") == 1


def test_undecodable_file_name_aborts_the_build(system: Path) -> None:
    try:
        with open(os.path.join(os.fsencode(system), b"\xff"), "wb"):
            pass
    except OSError:
        pytest.skip("filesystem rejects non-UTF-8 names")
    with pytest.raises(SourceTreeError, match="UTF-8"):
        build_archive(system, PermissionTable())


@pytest.mark.parametrize("mtime", [-10, 0x1_0000_0000])
def test_out_of_range_mtime_aborts_the_build(system: Path, mtime: int) -> None:
    try:
        os.utime(system / "init", (mtime, mtime))
    except (OSError, OverflowError):
        pytest.skip("filesystem rejects this timestamp")
    if int((system / "init").lstat().st_mtime) != mtime:
        pytest.skip("filesystem clamps this timestamp")
    with pytest.raises(SourceTreeError, match="does not fit"):
        build_archive(system, PermissionTable())


def test_record_alignment(system: Path) -> None:
    table = parse_permissions({"symlinks": {"/bin/sh": "busybox"}})
    archive = build_archive(system, table)

    offset = 0
    for record in iter_records(archive):
        namesize = len(record.name.encode("utf-8")) + 1
        header_and_name = HEADER_SIZE + namesize + pad4(HEADER_SIZE + namesize)
        payload = len(record.data) + pad4(len(record.data))
        assert header_and_name % 4 == 0
        assert payload % 4 == 0
        assert archive[offset : offset + 6] == b"070701"
        offset += header_and_name + payload
    assert offset == len(archive)


def test_build_is_deterministic(system: Path) -> None:
    table = parse_permissions(
        {
            "files": {"/init": {"mode": "0755"}},
            "symlinks": {"/bin/sh": "busybox", "/linuxrc": "/init"},
        }
    )
    first = build_archive(system, table)
    second = build_archive(system, table)
    assert first == second
    assert package_image(first) == package_image(second)


def test_mtime_is_truncated_to_whole_seconds(system: Path) -> None:
    os.utime(system / "init", (_MTIME + 0.9, _MTIME + 0.9))
    records = _by_name(build_archive(system, PermissionTable()))
    assert records["./init"].mtime == _MTIME
    assert records["./etc"].mtime == _MTIME


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
def test_on_disk_symlink_is_archived_not_followed(system: Path) -> None:
    (system / "bin" / "ash").symlink_to("busybox")
    table = parse_permissions({"files": {"/bin/ash": {"mode": "0700", "uid": 1, "gid": 1}}})
    records = _by_name(build_archive(system, table))

    ash = records["./bin/ash"]
    assert ash.mode == 0o120777
    assert (ash.uid, ash.gid) == (1, 1)
    assert ash.data == b"busybox"


@pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="fifos unsupported")
def test_special_files_abort_the_build(system: Path) -> None:
    os.mkfifo(system / "etc" / "pipe")
    with pytest.raises(SourceTreeError, match="Unsupported file type"):
        build_archive(system, PermissionTable())


def test_missing_source_tree(tmp_path: Path) -> None:
    with pytest.raises(SourceTreeError):
        build_archive(tmp_path / "nope", PermissionTable())


def test_source_tree_must_be_directory(tmp_path: Path) -> None:
    target = tmp_path / "file"
    target.write_bytes(b"")
    with pytest.raises(SourceTreeError, match="not a directory"):
        build_archive(target, PermissionTable())


def test_write_and_read_image_round_trip(system: Path, tmp_path: Path, capsys) -> None:
    table = parse_permissions(
        {
            "files": {"/etc/passwd": {"mode": "0600", "uid": 0, "gid": 42}},
            "symlinks": {"/bin/sh": "/bin/busybox"},
        }
    )
    destination = tmp_path / "public" / "assets" / "filesystem.img"

    write_image(system, table, destination)

    assert "wrote: " in capsys.readouterr().out
    raw = gzip.decompress(destination.read_bytes())
    assert raw == build_archive(system, table)

    records = {record.name: record for record in read_image(destination)}
    assert set(records) == {
        ".",
        "./bin",
        "./bin/busybox",
        "./bin/sh",
        "./etc",
        "./etc/passwd",
        "./init",
        TRAILER_NAME,
    }
    assert records["./bin/busybox"].data == b"\x7fELF-busybox"
    assert records["./etc/passwd"].data == b"root:x:0:0::/root:/bin/sh\n"
    assert (records["./etc/passwd"].mode, records["./etc/passwd"].gid) == (0o100600, 42)
    assert records["./bin/sh"].data == b"/bin/busybox"
    trailer = records[TRAILER_NAME]
    assert (trailer.data, trailer.mode, trailer.ino) == (b"", 0, 0)
