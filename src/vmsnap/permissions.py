"""Permission overrides for archived paths."""

from __future__ import annotations

import enum
import json
import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigurationError

DEFAULT_DIRECTORY_MODE = 0o755
DEFAULT_FILE_MODE = 0o644
SYMLINK_MODE = 0o777

_MAX_MODE = 0o7777


class EntryKind(enum.Enum):
    DIRECTORY = "directory"
    FILE = "file"
    SYMLINK = "symlink"


@dataclass(frozen=True)
class PermissionOverride:
    mode: int
    uid: int = 0
    gid: int = 0


@dataclass
class PermissionTable:
    files: dict[str, PermissionOverride] = field(default_factory=dict)
    symlinks: dict[str, str] = field(default_factory=dict)

    def resolve(self, path: str, kind: EntryKind) -> tuple[int, int, int]:
        """Return ``(mode, uid, gid)`` for an archive path such as ``./etc/passwd``.

        ``mode`` holds permission bits only. Symlinks always get ``0o777``.
        """
        override = self.files.get(permission_key(path))
        if override is None:
            return _default_mode(kind), 0, 0
        mode = SYMLINK_MODE if kind is EntryKind.SYMLINK else override.mode
        return mode, override.uid, override.gid


def permission_key(path: str) -> str:
    key = path[1:] if path.startswith(".") else path
    return key or "/"


def normalize_path(value: str) -> str:
    if not value.strip():
        raise ConfigurationError("permission paths must be non-empty strings")
    return posixpath.normpath("/" + value.lstrip("/"))


def _default_mode(kind: EntryKind) -> int:
    if kind is EntryKind.DIRECTORY:
        return DEFAULT_DIRECTORY_MODE
    if kind is EntryKind.SYMLINK:
        return SYMLINK_MODE
    return DEFAULT_FILE_MODE


def _parse_mode(path: str, value: object) -> int:
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"`files[{path!r}].mode` must be an octal string, got: {value!r}")
    try:
        mode = int(value.strip(), 8)
    except ValueError:
        raise ConfigurationError(
            f"`files[{path!r}].mode` is not a valid octal string: {value!r}"
        ) from None
    if not 0 <= mode <= _MAX_MODE:
        raise ConfigurationError(f"`files[{path!r}].mode` is out of range: {value!r}")
    return mode


def _parse_id(path: str, name: str, value: object) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigurationError(
            f"`files[{path!r}].{name}` must be a non-negative int, got: {value!r}"
        )
    return value


def _parse_override(path: str, value: object) -> PermissionOverride:
    if not isinstance(value, dict):
        raise ConfigurationError(f"`files[{path!r}]` must be a JSON object.")
    return PermissionOverride(
        mode=_parse_mode(path, value.get("mode")),
        uid=_parse_id(path, "uid", value.get("uid")),
        gid=_parse_id(path, "gid", value.get("gid")),
    )


def parse_permissions(raw: Any) -> PermissionTable:
    """Build a PermissionTable from a decoded permissions document."""
    if not isinstance(raw, dict):
        raise ConfigurationError("Permissions source must be a JSON object.")

    files = raw.get("files")
    symlinks = raw.get("symlinks")
    if files is None:
        files = {}
    if symlinks is None:
        symlinks = {}
    if not isinstance(files, dict):
        raise ConfigurationError("`files` must map paths to permission objects.")
    if not isinstance(symlinks, dict):
        raise ConfigurationError("`symlinks` must map paths to target strings.")

    table = PermissionTable()
    for path, value in files.items():
        table.files[normalize_path(path)] = _parse_override(path, value)
    for path, target in symlinks.items():
        if not isinstance(target, str) or not target:
            raise ConfigurationError(f"`symlinks[{path!r}]` must be a non-empty string.")
        key = normalize_path(path)
        if key == "/":
            raise ConfigurationError("The archive root cannot be a symlink.")
        table.symlinks[key] = target
    return table


def load_permissions(path: str | Path) -> PermissionTable:
    source = Path(path)
    try:
        raw = json.loads(source.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigurationError(f"Permissions source not found: {source}") from None
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Could not parse permissions source {source}: {exc}") from exc
    return parse_permissions(raw)
