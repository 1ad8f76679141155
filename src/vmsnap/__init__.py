"""vmsnap package."""

from .capture import capture_state
from .initrd import build_archive, package_image, read_image, write_image
from .permissions import PermissionTable, load_permissions
from .preflight import assert_workspace_ready, check_workspace
from .qemu import EngineConfig, QemuEngine
from .restore import fetch_state, restore_session
from .snapshot import StateSnapshot

__all__ = [
    "EngineConfig",
    "PermissionTable",
    "QemuEngine",
    "StateSnapshot",
    "assert_workspace_ready",
    "build_archive",
    "capture_state",
    "check_workspace",
    "fetch_state",
    "load_permissions",
    "package_image",
    "read_image",
    "restore_session",
    "write_image",
]
