"""Periodic refresh of SNAPSHOT archives from a remote repository.

One refresh cycle walks every configured endpoint and version in order.  For a
SNAPSHOT version it resolves the newest build from ``maven-metadata.xml``,
derives the concrete artifact URL, and downloads it to the storage tree.
RELEASE versions are immutable and left alone.

The job is best effort: every failure is logged and confined to the version it
happened on, nothing is retried within a cycle, and no exception escapes
:meth:`ArtifactRefresher.refresh_all`.  Overlapping cycles over the same storage
root are refused rather than run concurrently over the same files, whether they
come from this process or another one; a lock file in the storage root guards
the tree.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from filelock import FileLock, Timeout

from .download import DownloadResult, download_artifact, sha256_file
from .errors import DownloadFailure, MetadataResolutionError, StorageError
from .metadata import METADATA_FILENAME, MetadataResolver, snapshot_artifact_name
from .settings import ChannelKind, EndpointConfiguration, MirrorSettings, VersionConfiguration
from .storage import ArchiveStorage

__all__ = ["RefreshStatus", "VersionOutcome", "RefreshReport", "ArtifactRefresher"]

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".refresh.lock"

Fetcher = Callable[[str, Path], DownloadResult]


class RefreshStatus(str, Enum):
    """Result of refreshing one version."""

    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class VersionOutcome:
    """What happened to one project/version during a cycle."""

    project: str
    version: str
    status: RefreshStatus
    url: Optional[str] = None
    reason: Optional[str] = None
    size: Optional[int] = None


@dataclass
class RefreshReport:
    """Outcomes of one refresh cycle."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: List[VersionOutcome] = field(default_factory=list)
    skipped: bool = False

    @property
    def failed(self) -> List[VersionOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status is RefreshStatus.FAILED]

    def counts(self) -> Dict[str, int]:
        """Return the number of outcomes per status."""

        counter = Counter(outcome.status.value for outcome in self.outcomes)
        return {status.value: counter.get(status.value, 0) for status in RefreshStatus}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ArtifactRefresher:
    """Resolve and download the newest build of every SNAPSHOT version."""

    def __init__(
        self,
        settings: MirrorSettings,
        storage: Optional[ArchiveStorage] = None,
        *,
        resolver: Optional[MetadataResolver] = None,
        fetcher: Fetcher = download_artifact,
    ) -> None:
        self.settings = settings
        self.storage = storage if storage is not None else ArchiveStorage(settings.storage)
        self.resolver = resolver if resolver is not None else MetadataResolver()
        self._fetcher = fetcher
        self._cycle_lock = threading.Lock()

    def refresh_all(self, projects: Optional[Iterable[str]] = None) -> RefreshReport:
        """Run one refresh cycle over all endpoints (or only ``projects``).

        Returns a report flagged ``skipped`` when another cycle over the same
        storage root is in flight, in this process or any other.
        """

        report = RefreshReport(started_at=_utcnow())
        if not self._cycle_lock.acquire(blocking=False):
            return self._skip(report, "refresh cycle already running; skipping")
        try:
            try:
                storage_lock = self._lock_storage()
            except Timeout:
                return self._skip(report, "storage locked by another refresh cycle; skipping")
            try:
                selected = set(projects) if projects is not None else None
                for endpoint in self.settings.endpoints:
                    if selected is not None and endpoint.name not in selected:
                        continue
                    report.outcomes.extend(self.refresh_endpoint(endpoint))
            finally:
                if storage_lock is not None:
                    storage_lock.release()
        finally:
            self._cycle_lock.release()
        report.finished_at = _utcnow()
        logger.info(
            "refresh cycle finished",
            extra={"stage": "refresh", "counts": report.counts()},
        )
        return report

    def _skip(self, report: RefreshReport, message: str) -> RefreshReport:
        logger.warning(message, extra={"stage": "refresh"})
        report.skipped = True
        report.finished_at = _utcnow()
        return report

    def _lock_storage(self) -> Optional[FileLock]:
        """Take the storage root's cycle lock without waiting.

        Returns ``None`` when the root cannot hold a lock file; nothing can be
        written there either, so each version then reports the storage error.

        Raises:
            Timeout: If another cycle holds the lock.
        """

        root = self.storage.root
        lock = FileLock(str(root / LOCK_FILENAME))
        try:
            root.mkdir(parents=True, exist_ok=True)
            lock.acquire(timeout=0)
        except Timeout:
            raise
        except OSError as exc:
            logger.warning(
                "could not lock storage root",
                extra={"stage": "refresh", "error": str(exc)},
            )
            return None
        return lock

    def refresh_endpoint(self, endpoint: EndpointConfiguration) -> List[VersionOutcome]:
        """Refresh every version of ``endpoint`` in configured order."""

        outcomes: List[VersionOutcome] = []
        for version in endpoint.versions:
            try:
                outcome = self.refresh_version(endpoint, version)
            except Exception as exc:
                logger.exception(
                    "unexpected error while refreshing",
                    extra={"stage": "refresh", "project": endpoint.name, "version": version.name},
                )
                outcome = VersionOutcome(
                    endpoint.name, version.name, RefreshStatus.FAILED, reason=str(exc)
                )
            outcomes.append(outcome)
        return outcomes

    def refresh_version(
        self, endpoint: EndpointConfiguration, version: VersionConfiguration
    ) -> VersionOutcome:
        """Refresh a single version; failures are reported, not raised."""

        project = endpoint.name
        extra = {"stage": "refresh", "project": project, "version": version.name}

        if version.type is not ChannelKind.SNAPSHOT:
            logger.debug("release version is not refreshed", extra=extra)
            return VersionOutcome(
                project, version.name, RefreshStatus.SKIPPED, reason="release versions are immutable"
            )

        metadata_url = version.asset(METADATA_FILENAME)
        try:
            metadata = self.resolver.resolve(metadata_url)
            artifact_url = version.asset(
                snapshot_artifact_name(metadata, classifier=self.settings.refresh.classifier)
            )
        except MetadataResolutionError as exc:
            logger.info(
                "could not resolve latest snapshot",
                extra={**extra, "url": metadata_url, "error": str(exc)},
            )
            return VersionOutcome(
                project, version.name, RefreshStatus.FAILED, url=metadata_url, reason=str(exc)
            )

        try:
            self.storage.ensure_project_dir(project)
        except StorageError as exc:
            logger.info("could not prepare storage", extra={**extra, "error": str(exc)})
            return VersionOutcome(
                project, version.name, RefreshStatus.FAILED, url=artifact_url, reason=str(exc)
            )

        destination = self.storage.artifact_path(project, version.name)
        if self._is_current(project, version.name, artifact_url, destination):
            logger.info("archive already current", extra={**extra, "url": artifact_url})
            return VersionOutcome(project, version.name, RefreshStatus.UNCHANGED, url=artifact_url)

        try:
            result = self._fetcher(artifact_url, destination)
        except (DownloadFailure, StorageError) as exc:
            logger.info(
                "could not update archive",
                extra={**extra, "url": artifact_url, "error": str(exc)},
            )
            return VersionOutcome(
                project, version.name, RefreshStatus.FAILED, url=artifact_url, reason=str(exc)
            )

        snapshot = metadata.snapshot
        manifest = {
            "project": project,
            "version": version.name,
            "url": artifact_url,
            "metadata_url": metadata_url,
            "artifact_id": metadata.artifact_id,
            "base_version": metadata.base_version,
            "timestamp": snapshot.timestamp if snapshot else None,
            "build_number": snapshot.build_number if snapshot else None,
            "sha256": result.sha256,
            "size": result.size,
            "etag": result.etag,
            "last_modified": result.last_modified,
            "downloaded_at": _utcnow().isoformat().replace("+00:00", "Z"),
        }
        try:
            self.storage.write_manifest(project, version.name, manifest)
        except StorageError as exc:
            logger.warning("could not record download manifest", extra={**extra, "error": str(exc)})

        logger.info(
            "updated archive",
            extra={**extra, "url": artifact_url, "size": result.size, "sha256": result.sha256},
        )
        return VersionOutcome(
            project, version.name, RefreshStatus.UPDATED, url=artifact_url, size=result.size
        )

    def _is_current(self, project: str, version: str, url: str, destination: Path) -> bool:
        manifest = self.storage.read_manifest(project, version)
        if not manifest or manifest.get("url") != url or not destination.is_file():
            return False
        try:
            return sha256_file(destination) == manifest.get("sha256")
        except OSError:
            return False
