"""Error types raised by vmsnap pipelines."""

from __future__ import annotations


class VmsnapError(RuntimeError):
    """Base class for build and snapshot failures."""


class ConfigurationError(VmsnapError):
    """The permissions source is missing or malformed."""


class SourceTreeError(VmsnapError):
    """A source tree entry could not be read or archived."""


class CaptureError(VmsnapError):
    """The VM did not boot or its state could not be captured."""


class TransportError(VmsnapError):
    """The snapshot could not be fetched."""


class DecompressionError(VmsnapError):
    """Compressed data is corrupt or truncated."""
