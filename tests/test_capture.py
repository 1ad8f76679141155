from __future__ import annotations

import gzip
import json
from pathlib import Path

import pytest

import vmsnap.build as build
from vmsnap.capture import capture_state
from vmsnap.errors import CaptureError
from vmsnap.runtime_paths import (
    build_image_path,
    filesystem_image_path,
    permissions_path,
    state_snapshot_path,
    system_dir,
)
from vmsnap.serial_console import PromptDetector


def test_capture_writes_compressed_state_and_discards_image(make_engine, tmp_path: Path) -> None:
    image = tmp_path / ".filesystem.img"
    image.write_bytes(b"image")
    destination = tmp_path / "public" / "dist" / "initial_state.bin"
    engine = make_engine(boot_output=b"Linux version 6.1\r\n/ # ", state=b"\x00state\xff" * 1000)

    result = capture_state(engine, destination, image_path=image)

    assert engine.calls == ["run", "capture", "stop"]
    assert gzip.decompress(destination.read_bytes()) == b"\x00state\xff" * 1000
    assert result.raw_size == 7000
    assert result.compressed_size == destination.stat().st_size
    assert result.path == destination
    assert not image.exists()


def test_capture_waits_for_custom_detector(make_engine, tmp_path: Path) -> None:
    engine = make_engine(boot_output=b"booting\n~ $ ", state=b"s")
    result = capture_state(engine, tmp_path / "state.bin", detector=PromptDetector(b"~ $ "))
    assert result.raw_size == 1


def test_capture_failure_is_reported_and_engine_stopped(make_engine, tmp_path: Path) -> None:
    image = tmp_path / ".filesystem.img"
    image.write_bytes(b"image")
    destination = tmp_path / "state.bin"
    engine = make_engine(boot_output=b"/ # ", capture_error=RuntimeError("out of memory"))

    with pytest.raises(CaptureError, match="out of memory"):
        capture_state(engine, destination, image_path=image)

    assert engine.calls[-1] == "stop"
    assert not destination.exists()
    assert image.exists()


def test_capture_fails_when_vm_never_becomes_ready(make_engine, tmp_path: Path) -> None:
    engine = make_engine(boot_output=b"no prompt here")
    with pytest.raises(CaptureError, match="Timed out"):
        capture_state(engine, tmp_path / "state.bin", timeout_s=0.2)
    assert "capture" not in engine.calls


def _write_workspace(workspace: Path) -> None:
    (system_dir(workspace) / "bin").mkdir(parents=True)
    (system_dir(workspace) / "bin" / "busybox").write_bytes(b"busybox")
    permissions_path(workspace).write_text(
        json.dumps({"files": {"/bin/busybox": {"mode": "0755"}}, "symlinks": {"/bin/sh": "busybox"}}),
        encoding="utf-8",
    )


def test_build_image_only(tmp_path: Path, capsys) -> None:
    _write_workspace(tmp_path)

    assert build.main(["--workspace", str(tmp_path), "--image-only"]) == 0

    assert filesystem_image_path(tmp_path).exists()
    assert not state_snapshot_path(tmp_path).exists()
    assert "wrote: " in capsys.readouterr().out


def test_build_reports_configuration_errors(tmp_path: Path, capsys) -> None:
    system_dir(tmp_path).mkdir()

    assert build.main(["--workspace", str(tmp_path), "--image-only"]) == 1
    assert "Permissions source not found" in capsys.readouterr().err


def test_build_captures_state(monkeypatch, make_engine, tmp_path: Path, capsys) -> None:
    _write_workspace(tmp_path)
    engines = []

    def fake_engine(config, *, kernel, initrd):
        assert initrd == build_image_path(tmp_path)
        assert initrd.exists()
        engine = make_engine(boot_output=b"/ # ", state=b"snapshot")
        engines.append(engine)
        return engine

    monkeypatch.setattr(build, "QemuEngine", fake_engine)

    assert build.main(["--workspace", str(tmp_path), "--quiet"]) == 0

    assert gzip.decompress(state_snapshot_path(tmp_path).read_bytes()) == b"snapshot"
    assert not build_image_path(tmp_path).exists()
    assert engines[0].calls == ["run", "capture", "stop"]
    assert "state saved: " in capsys.readouterr().out


def test_build_capture_failure_exits_nonzero(monkeypatch, make_engine, tmp_path: Path, capsys) -> None:
    _write_workspace(tmp_path)
    monkeypatch.setattr(
        build,
        "QemuEngine",
        lambda config, **_: make_engine(boot_output=b"/ # ", capture_error=RuntimeError("boom")),
    )

    assert build.main(["--workspace", str(tmp_path), "--quiet"]) == 1
    assert "boom" in capsys.readouterr().err
    assert not state_snapshot_path(tmp_path).exists()


def test_build_rejects_invalid_memory(tmp_path: Path, capsys) -> None:
    _write_workspace(tmp_path)
    assert build.main(["--workspace", str(tmp_path), "--memory-mb", "1"]) == 1
    assert "memory_mb" in capsys.readouterr().err
