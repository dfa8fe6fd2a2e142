"""Exception hierarchy for the telemetry file exporter.

Failures are isolated per destination path: only :class:`ConfigError` is
fatal, and it is raised before the exporter starts.
"""

from __future__ import annotations


class ExporterError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(ExporterError, ValueError):
    """Invalid format, compression, path, flush interval or pool setting."""


class ResourceError(ExporterError):
    """A destination file could not be opened, written, flushed or closed.

    Covers a missing directory with ``auto_create_directories`` disabled,
    permission problems and descriptor exhaustion.
    """

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class RotationError(ExporterError):
    """Renaming the live file or deleting a backup failed."""


class EncodingError(ExporterError):
    """A batch could not be serialized or compressed."""
