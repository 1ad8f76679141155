"""Workspace preflight checks."""

from __future__ import annotations

import os
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigurationError
from .permissions import load_permissions
from .runtime_paths import get_workspace, kernel_image_path, permissions_path, system_dir


def qemu_system_candidates() -> tuple[str, ...]:
    """Return candidate qemu-system executable names."""
    if os.name == "nt":
        return ("qemu-system-x86_64.exe", "qemu-system-x86_64")
    return ("qemu-system-x86_64",)


def find_qemu_system_binary() -> str | None:
    """Locate qemu-system executable on PATH."""
    for candidate in qemu_system_candidates():
        resolved = shutil.which(candidate)
        if resolved:
            return resolved
    return None


def install_hint() -> str:
    """Return an install command hint for QEMU."""
    if sys.platform == "darwin":
        return "brew install qemu"
    if sys.platform.startswith("linux"):
        return "Install qemu via apt/dnf/pacman, e.g. `sudo apt-get install qemu-system-x86`."
    if sys.platform in {"win32", "cygwin"}:
        return "winget install -e --id SoftwareFreedomConservancy.QEMU"
    return "Install QEMU and ensure `qemu-system-x86_64` is on PATH."


@dataclass(frozen=True)
class WorkspaceCheckResult:
    workspace: Path
    qemu_system_binary: str | None
    missing_paths: list[Path]
    permission_errors: list[str]

    @property
    def can_build_image(self) -> bool:
        return not self.missing_paths and not self.permission_errors

    @property
    def ok(self) -> bool:
        return self.can_build_image and self.qemu_system_binary is not None


def check_workspace(workspace: str | Path | None = None) -> WorkspaceCheckResult:
    """Check that build inputs and the VM engine are available."""
    resolved = get_workspace(workspace)
    required_paths = [
        system_dir(resolved),
        permissions_path(resolved),
        kernel_image_path(resolved),
    ]
    missing_paths = [path for path in required_paths if not path.exists()]

    permission_errors: list[str] = []
    if permissions_path(resolved).exists():
        try:
            load_permissions(permissions_path(resolved))
        except ConfigurationError as exc:
            permission_errors.append(str(exc))

    return WorkspaceCheckResult(
        workspace=resolved,
        qemu_system_binary=find_qemu_system_binary(),
        missing_paths=missing_paths,
        permission_errors=permission_errors,
    )


def assert_workspace_ready(workspace: str | Path | None = None) -> None:
    """Raise RuntimeError when build prerequisites are missing."""
    result = check_workspace(workspace)
    if result.ok:
        return

    lines = [f"vmsnap workspace is not ready: {result.workspace}", ""]
    if result.qemu_system_binary is None:
        lines.append("Missing executables:")
        for name in qemu_system_candidates():
            lines.append(f"- {name}")
        lines.append(f"Install hint: {install_hint()}")
        lines.append("")

    if result.missing_paths:
        lines.append("Missing workspace paths:")
        for path in result.missing_paths:
            lines.append(f"- {path}")
        lines.append("")

    if result.permission_errors:
        lines.append("Permissions source issues:")
        for issue in result.permission_errors:
            lines.append(f"- {issue}")
        lines.append("")

    raise RuntimeError("\n".join(lines).rstrip())
