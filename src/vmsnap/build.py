"""Build the initrd image and capture the booted VM state.

Usage:
    python -m vmsnap.build
    python -m vmsnap.build --image-only
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from .capture import capture_state
from .errors import CaptureError, VmsnapError
from .initrd import write_image
from .permissions import load_permissions
from .qemu import EngineConfig, QemuEngine
from .runtime_paths import (
    build_image_path,
    filesystem_image_path,
    get_workspace,
    kernel_image_path,
    permissions_path,
    state_snapshot_path,
    system_dir,
)

_MB = 1024 * 1024


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Build the VM filesystem image and state snapshot.")
    parser.add_argument(
        "--workspace",
        help="Workspace with `system/`, `permissions.json` and `images/` (defaults to $VMSNAP_WORKSPACE or cwd).",
    )
    parser.add_argument(
        "--image-only",
        action="store_true",
        help="Only write `public/assets/filesystem.img`; do not boot or capture state.",
    )
    parser.add_argument(
        "--output",
        help="Override the image path written by --image-only.",
    )
    parser.add_argument(
        "--memory-mb",
        type=int,
        default=EngineConfig.memory_mb,
        help=f"Guest memory in MB (default: {EngineConfig.memory_mb}).",
    )
    parser.add_argument(
        "--accel",
        default=EngineConfig.accel,
        help=f"QEMU accelerator (default: {EngineConfig.accel}).",
    )
    parser.add_argument(
        "--timeout-s",
        type=float,
        default=None,
        help="Give up if the guest prompt does not appear in time (default: wait indefinitely).",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Do not mirror the guest serial console while booting.",
    )
    return parser.parse_args(argv)


def _echo_byte(byte: int) -> None:
    if byte == 0x0D:
        return
    sys.stdout.buffer.write(bytes([byte]))
    sys.stdout.buffer.flush()


def _capture(args: argparse.Namespace, workspace: Path, image: Path) -> int:
    engine = QemuEngine(
        EngineConfig(memory_mb=args.memory_mb, accel=args.accel),
        kernel=kernel_image_path(workspace),
        initrd=image,
    )
    destination = state_snapshot_path(workspace)

    print("Booting VM...", flush=True)
    try:
        result = capture_state(
            engine,
            destination,
            image_path=image,
            echo=None if args.quiet else _echo_byte,
            timeout_s=args.timeout_s,
        )
    except CaptureError as exc:
        print(f"\nerror: {exc}", file=sys.stderr)
        return 1

    print("")
    print(f"VM ready in {result.boot_s:.1f}s")
    print(
        f"state saved: {result.path} "
        f"({result.raw_size / _MB:.2f} MB -> {result.compressed_size / _MB:.2f} MB)"
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    workspace = get_workspace(args.workspace)
    print(f"vmsnap workspace: {workspace}")

    if args.image_only:
        image = Path(args.output) if args.output else filesystem_image_path(workspace)
    else:
        image = build_image_path(workspace)

    try:
        EngineConfig(memory_mb=args.memory_mb, accel=args.accel).validate()
        table = load_permissions(permissions_path(workspace))
        print(f"building initrd: {image}")
        write_image(system_dir(workspace), table, image)
    except (OSError, ValueError, VmsnapError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    if args.image_only:
        return 0
    return _capture(args, workspace, image)


if __name__ == "__main__":
    raise SystemExit(main())
