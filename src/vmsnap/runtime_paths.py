"""Workspace path helpers for vmsnap."""

from __future__ import annotations

import os
from pathlib import Path

WORKSPACE_ENV = "VMSNAP_WORKSPACE"
STATE_URL_PATH = "dist/initial_state.bin"


def get_workspace(workspace: str | Path | None = None) -> Path:
    """Return the build workspace directory.

    Priority order:
    1) explicit ``workspace`` argument
    2) ``VMSNAP_WORKSPACE`` environment variable
    3) current working directory
    """
    if workspace is not None:
        return Path(workspace).expanduser().resolve()

    override = os.environ.get(WORKSPACE_ENV)
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def system_dir(workspace: str | Path | None = None) -> Path:
    return get_workspace(workspace) / "system"


def permissions_path(workspace: str | Path | None = None) -> Path:
    return get_workspace(workspace) / "permissions.json"


def kernel_image_path(workspace: str | Path | None = None) -> Path:
    return get_workspace(workspace) / "images" / "bzImage"


def public_dir(workspace: str | Path | None = None) -> Path:
    return get_workspace(workspace) / "public"


def filesystem_image_path(workspace: str | Path | None = None) -> Path:
    return public_dir(workspace) / "assets" / "filesystem.img"


def build_image_path(workspace: str | Path | None = None) -> Path:
    """Image booted while capturing state; removed once the snapshot exists."""
    return get_workspace(workspace) / ".filesystem.img"


def state_snapshot_path(workspace: str | Path | None = None) -> Path:
    return public_dir(workspace) / STATE_URL_PATH


def state_url(base_url: str) -> str:
    return base_url.rstrip("/") + "/" + STATE_URL_PATH
