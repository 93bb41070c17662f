"""Public API for the DocHarbor documentation archive mirror.

The mirror keeps one downloaded documentation archive per project/version,
serves open archive handles through a lazily populated cache, and refreshes
moving (SNAPSHOT) versions from a remote repository on a fixed schedule.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("docharbor")
except PackageNotFoundError:  # pragma: no cover - running from a source checkout
    __version__ = "0.0.0+unknown"

from .archive import ArchiveHandle, open_archive
from .cache import ArchiveCache, ArchiveKey, CacheStats, RemovalCause
from .download import DownloadResult, download_artifact
from .errors import (
    ArchiveMirrorError,
    ArchiveUnreadableError,
    CacheClosedError,
    ConfigurationError,
    DownloadFailure,
    MetadataResolutionError,
    StorageError,
)
from .metadata import MetadataResolver, RepositoryMetadata, SnapshotDescriptor, parse_metadata
from .refresher import ArtifactRefresher, RefreshReport, RefreshStatus, VersionOutcome
from .scheduler import RefreshScheduler
from .service import ArchiveMirrorService
from .settings import (
    ChannelKind,
    EndpointConfiguration,
    MirrorSettings,
    VersionConfiguration,
    load_settings,
)
from .storage import ArchiveStorage

__all__ = [
    "__version__",
    "ArchiveHandle",
    "open_archive",
    "ArchiveCache",
    "ArchiveKey",
    "CacheStats",
    "RemovalCause",
    "DownloadResult",
    "download_artifact",
    "ArchiveMirrorError",
    "ArchiveUnreadableError",
    "CacheClosedError",
    "ConfigurationError",
    "DownloadFailure",
    "MetadataResolutionError",
    "StorageError",
    "MetadataResolver",
    "RepositoryMetadata",
    "SnapshotDescriptor",
    "parse_metadata",
    "ArtifactRefresher",
    "RefreshReport",
    "RefreshStatus",
    "VersionOutcome",
    "RefreshScheduler",
    "ArchiveMirrorService",
    "ChannelKind",
    "EndpointConfiguration",
    "MirrorSettings",
    "VersionConfiguration",
    "load_settings",
    "ArchiveStorage",
]
