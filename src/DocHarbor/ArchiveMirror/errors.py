"""Exception hierarchy shared by the archive cache and the artifact refresher.

The mirror has two halves with very different failure contracts.  The cache
sits on the request path, so an unreadable archive must reach the caller as a
distinct outcome (a missing archive is not an error at all and is reported as
``None``).  The refresher is a best-effort background job: resolver, download,
and storage failures are raised here but caught and logged per version so a
single broken upstream never aborts a refresh cycle.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover - import cycle guard for type checkers only
    from .cache import ArchiveKey

__all__ = [
    "ArchiveMirrorError",
    "ConfigurationError",
    "ArchiveUnreadableError",
    "CacheClosedError",
    "MetadataResolutionError",
    "DownloadFailure",
    "StorageError",
]


class ArchiveMirrorError(RuntimeError):
    """Base exception for archive cache and refresher failures."""


class ConfigurationError(ArchiveMirrorError):
    """Raised when configuration inputs are missing or invalid."""


class ArchiveUnreadableError(ArchiveMirrorError):
    """Raised when a stored artifact exists but cannot be opened as an archive."""

    def __init__(self, key: "ArchiveKey", path: Path, reason: str = "") -> None:
        message = f"Archive for {key.project} {key.version} at {path} is unreadable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.key = key
        self.path = path


class CacheClosedError(ArchiveMirrorError):
    """Raised when a lookup reaches an archive cache that was already shut down."""


class MetadataResolutionError(ArchiveMirrorError):
    """Raised when repository metadata cannot be fetched, parsed, or lacks a snapshot."""

    def __init__(self, message: str, *, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.url = url


class DownloadFailure(ArchiveMirrorError):
    """Raised when an HTTP artifact download attempt fails."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class StorageError(ArchiveMirrorError):
    """Raised when the local storage tree cannot be created or written."""
