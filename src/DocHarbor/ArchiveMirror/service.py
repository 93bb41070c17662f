"""Process-wide owner of the archive cache and the refresh schedule.

:class:`ArchiveMirrorService` wires storage, cache, refresher, and scheduler
together from :class:`~DocHarbor.ArchiveMirror.settings.MirrorSettings`.  The
request layer only needs :meth:`ArchiveMirrorService.contents_for`; the
refresher and the cache never talk to each other directly and meet only at
the storage tree.

Example:
    >>> with ArchiveMirrorService(load_settings()) as service:
    ...     handle = service.contents_for("foo", "dev")
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from . import net
from .archive import ArchiveHandle
from .cache import ArchiveCache, ArchiveKey
from .metadata import MetadataResolver
from .refresher import ArtifactRefresher, RefreshReport
from .scheduler import RefreshScheduler
from .settings import MirrorSettings
from .storage import ArchiveStorage

__all__ = ["ArchiveMirrorService"]

logger = logging.getLogger(__name__)


class ArchiveMirrorService:
    """Lifecycle owner: start on init of the process, stop on shutdown."""

    def __init__(
        self,
        settings: MirrorSettings,
        *,
        cache: Optional[ArchiveCache] = None,
        refresher: Optional[ArtifactRefresher] = None,
    ) -> None:
        self.settings = settings
        self.storage = ArchiveStorage(settings.storage)
        net.configure_http_client(settings=settings.http)
        self.cache = cache or ArchiveCache(
            self.storage,
            refresh_after=settings.cache.refresh_after_sec,
            max_entries=settings.cache.max_entries,
            reload_workers=settings.cache.reload_workers,
        )
        self.refresher = refresher or ArtifactRefresher(
            settings, self.storage, resolver=MetadataResolver()
        )
        self.scheduler = RefreshScheduler(
            self.refresher.refresh_all,
            interval=settings.refresh.interval_sec,
            initial_delay=settings.refresh.initial_delay_sec,
        )
        self._lock = threading.Lock()
        self._started = False
        self._stopped = False

    def __enter__(self) -> "ArchiveMirrorService":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def start(self) -> None:
        """Start the refresh schedule (when enabled)."""

        with self._lock:
            if self._started:
                return
            self._started = True
        if self.settings.refresh.enabled:
            self.scheduler.start()
        logger.info(
            "archive mirror started",
            extra={
                "stage": "service",
                "storage": str(self.storage.root),
                "endpoints": len(self.settings.endpoints),
            },
        )

    def stop(self) -> None:
        """Stop refreshing, close every cached archive, and release the HTTP client."""

        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        self.scheduler.stop()
        self.cache.close()
        net.close_http_client()
        logger.info("archive mirror stopped", extra={"stage": "service"})

    def contents_for(self, project: str, version: str) -> Optional[ArchiveHandle]:
        """Return the open archive for ``project``/``version`` or ``None``.

        Raises:
            ArchiveUnreadableError: If the stored archive cannot be opened.
        """

        return self.cache.get(ArchiveKey(project, version))

    def refresh_now(self) -> RefreshReport:
        """Run one refresh cycle on the calling thread."""

        return self.refresher.refresh_all()
