# === NAVMAP v1 ===
# {
#   "module": "DocHarbor.ArchiveMirror.cache",
#   "purpose": "Loading cache of open archive handles with background refresh",
#   "sections": [
#     {"id": "archive-key", "name": "ArchiveKey", "anchor": "class-archivekey", "kind": "class"},
#     {"id": "removal-cause", "name": "RemovalCause", "anchor": "class-removalcause", "kind": "class"},
#     {"id": "cache-stats", "name": "CacheStats", "anchor": "class-cachestats", "kind": "class"},
#     {"id": "archive-cache", "name": "ArchiveCache", "anchor": "class-archivecache", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Loading cache of open archive handles.

:class:`ArchiveCache` maps an :class:`ArchiveKey` to an open
:class:`~DocHarbor.ArchiveMirror.archive.ArchiveHandle` and owns every handle it
stores.  The rules it enforces:

- **Single flight**: concurrent lookups of an unloaded key wait on one load;
  the opener runs once and every waiter receives its result or its exception.
- **No fabrication**: a key whose archive file is absent yields ``None`` and
  leaves no entry behind; the next lookup checks the disk again.
- **Stale while revalidate**: an entry older than ``refresh_after`` seconds is
  reloaded on a worker thread when it is next accessed.  The triggering caller
  (and anyone else until the reload finishes) still gets the current handle.
  The new handle is installed before the old one is closed.
- **Close on removal**: replacement, capacity eviction, invalidation, a vanished
  file, and shutdown all close the removed handle exactly once.  Close errors
  are logged and never interrupt the removal.

The refresher writes archives behind the cache's back; the staleness window is
the only synchronisation, so a reader may see the previous archive for up to
``refresh_after`` seconds after a new one lands on disk.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .archive import ArchiveHandle, open_archive
from .errors import CacheClosedError
from .storage import ArchiveStorage

__all__ = [
    "ArchiveKey",
    "RemovalCause",
    "CacheStats",
    "ArchiveCache",
    "DEFAULT_REFRESH_AFTER",
]

DEFAULT_REFRESH_AFTER = 600.0

logger = logging.getLogger(__name__)

Opener = Callable[["ArchiveKey", Path], ArchiveHandle]
RemovalListener = Callable[["ArchiveKey", ArchiveHandle, "RemovalCause"], None]


@dataclass(frozen=True)
class ArchiveKey:
    """Identifies one project/version archive."""

    project: str
    version: str

    def __str__(self) -> str:
        return f"{self.project}/{self.version}"


class RemovalCause(str, Enum):
    """Why a handle left the cache."""

    EXPLICIT = "explicit"
    REPLACED = "replaced"
    SIZE = "size"
    VANISHED = "vanished"
    SHUTDOWN = "shutdown"


@dataclass
class CacheStats:
    """Counters describing cache activity since creation."""

    hits: int = 0
    misses: int = 0
    loads: int = 0
    load_failures: int = 0
    not_found: int = 0
    reloads: int = 0
    reload_failures: int = 0
    evictions: int = 0


@dataclass
class _Entry:
    handle: ArchiveHandle
    loaded_at: float
    reloading: bool = False


class ArchiveCache:
    """Thread-safe loading cache of archive handles keyed by project/version.

    Args:
        storage: Storage tree the archives are read from.
        refresh_after: Seconds after which an accessed entry is reloaded in the
            background.
        max_entries: Upper bound on open handles; the least recently used entry
            is evicted beyond it.  ``None`` disables capacity eviction.
        opener: Callable opening an archive file; defaults to
            :func:`~DocHarbor.ArchiveMirror.archive.open_archive`.
        clock: Monotonic clock used for staleness.
        executor: Executor running background reloads.  When omitted the cache
            creates (and later shuts down) its own thread pool.
        reload_workers: Worker count of the owned thread pool.
        removal_listener: Called after a handle was closed on removal.
    """

    def __init__(
        self,
        storage: ArchiveStorage,
        *,
        refresh_after: float = DEFAULT_REFRESH_AFTER,
        max_entries: Optional[int] = None,
        opener: Opener = open_archive,
        clock: Callable[[], float] = time.monotonic,
        executor: Optional[Executor] = None,
        reload_workers: int = 2,
        removal_listener: Optional[RemovalListener] = None,
    ) -> None:
        if refresh_after <= 0:
            raise ValueError("refresh_after must be positive")
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.storage = storage
        self.refresh_after = refresh_after
        self.max_entries = max_entries
        self._opener = opener
        self._clock = clock
        self._removal_listener = removal_listener
        self._executor = executor
        self._owns_executor = executor is None
        self._reload_workers = reload_workers
        self._lock = threading.Lock()
        self._entries: "OrderedDict[ArchiveKey, _Entry]" = OrderedDict()
        self._pending: Dict[ArchiveKey, Future] = {}
        self._stats = CacheStats()
        self._closed = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    @property
    def closed(self) -> bool:
        return self._closed

    def keys(self) -> List[ArchiveKey]:
        """Return the cached keys from least to most recently used."""

        with self._lock:
            return list(self._entries)

    def stats(self) -> CacheStats:
        """Return a snapshot of the activity counters."""

        with self._lock:
            return dataclasses.replace(self._stats)

    def get(self, key: ArchiveKey) -> Optional[ArchiveHandle]:
        """Return the open archive for ``key``, or ``None`` if none is stored.

        Raises:
            ArchiveUnreadableError: If the stored file is not a readable archive.
            CacheClosedError: If the cache was closed.
        """

        with self._lock:
            if self._closed:
                raise CacheClosedError("archive cache is closed")
            entry = self._entries.get(key)
            if entry is not None:
                self._entries.move_to_end(key)
                self._stats.hits += 1
                stale = (
                    not entry.reloading
                    and self._clock() - entry.loaded_at >= self.refresh_after
                )
                if stale:
                    entry.reloading = True
                handle = entry.handle
            else:
                self._stats.misses += 1
                future = self._pending.get(key)
                owner = future is None
                if owner:
                    future = Future()
                    self._pending[key] = future

        if entry is not None:
            if stale:
                self._schedule_reload(key, entry)
            return handle
        if not owner:
            return future.result()
        return self._load_and_install(key, future)

    def invalidate(self, key: ArchiveKey) -> bool:
        """Remove and close the entry for ``key``; return whether one existed."""

        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._release(key, entry.handle, RemovalCause.EXPLICIT)
        return True

    def invalidate_all(self) -> None:
        """Remove and close every entry."""

        with self._lock:
            removed = list(self._entries.items())
            self._entries.clear()
        for key, entry in removed:
            self._release(key, entry.handle, RemovalCause.EXPLICIT)

    def close(self) -> None:
        """Close every cached handle and stop background reloads.

        Lookups after closing raise :class:`CacheClosedError`.
        """

        with self._lock:
            if self._closed:
                return
            self._closed = True
            removed = list(self._entries.items())
            self._entries.clear()
            executor = self._executor if self._owns_executor else None
        for key, entry in removed:
            self._release(key, entry.handle, RemovalCause.SHUTDOWN)
        if executor is not None:
            executor.shutdown(wait=True, cancel_futures=True)
        logger.info("archive cache closed", extra={"stage": "cache", "released": len(removed)})

    def _load(self, key: ArchiveKey) -> Optional[ArchiveHandle]:
        try:
            path = self.storage.artifact_path(key.project, key.version)
        except ValueError:
            logger.debug(
                "rejected unsafe archive key",
                extra={"stage": "cache", "project": key.project, "version": key.version},
            )
            return None
        if not path.is_file():
            return None
        try:
            return self._opener(key, path)
        except FileNotFoundError:
            # replaced or removed between the check and the open
            return None

    def _load_and_install(self, key: ArchiveKey, future: Future) -> Optional[ArchiveHandle]:
        try:
            handle = self._load(key)
        except BaseException as exc:
            with self._lock:
                self._pending.pop(key, None)
                self._stats.load_failures += 1
            future.set_exception(exc)
            logger.warning(
                "archive load failed",
                extra={
                    "stage": "cache",
                    "project": key.project,
                    "version": key.version,
                    "error": str(exc),
                },
            )
            raise

        evicted: List[Tuple[ArchiveKey, ArchiveHandle]] = []
        closed = False
        with self._lock:
            self._pending.pop(key, None)
            self._stats.loads += 1
            if handle is None:
                self._stats.not_found += 1
            elif self._closed:
                closed = True
            else:
                self._entries[key] = _Entry(handle=handle, loaded_at=self._clock())
                evicted = self._evict_overflow_unlocked()

        for evicted_key, evicted_handle in evicted:
            self._release(evicted_key, evicted_handle, RemovalCause.SIZE)
        if closed:
            assert handle is not None
            self._release(key, handle, RemovalCause.SHUTDOWN)
            error = CacheClosedError("archive cache closed during load")
            future.set_exception(error)
            raise error
        future.set_result(handle)
        if handle is not None:
            logger.info(
                "archive loaded",
                extra={"stage": "cache", "project": key.project, "version": key.version},
            )
        return handle

    def _evict_overflow_unlocked(self) -> List[Tuple[ArchiveKey, ArchiveHandle]]:
        evicted: List[Tuple[ArchiveKey, ArchiveHandle]] = []
        if self.max_entries is None:
            return evicted
        while len(self._entries) > self.max_entries:
            key, entry = self._entries.popitem(last=False)
            self._stats.evictions += 1
            evicted.append((key, entry.handle))
        return evicted

    def _reload_executor(self) -> Executor:
        with self._lock:
            if self._closed:
                raise RuntimeError("archive cache is closed")
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._reload_workers,
                    thread_name_prefix="archive-reload",
                )
            return self._executor

    def _schedule_reload(self, key: ArchiveKey, entry: _Entry) -> None:
        try:
            self._reload_executor().submit(self._reload, key, entry)
        except RuntimeError:
            # cache or executor already shut down
            with self._lock:
                entry.reloading = False

    def _reload(self, key: ArchiveKey, entry: _Entry) -> None:
        with self._lock:
            if self._closed or self._entries.get(key) is not entry:
                entry.reloading = False
                return

        try:
            handle = self._load(key)
        except Exception as exc:
            with self._lock:
                self._stats.reload_failures += 1
                entry.reloading = False
            logger.warning(
                "archive reload failed; keeping previous handle",
                extra={
                    "stage": "reload",
                    "project": key.project,
                    "version": key.version,
                    "error": str(exc),
                },
            )
            return

        to_release: List[Tuple[ArchiveHandle, RemovalCause]] = []
        with self._lock:
            self._stats.reloads += 1
            if self._closed or self._entries.get(key) is not entry:
                # entry was removed while reloading; the fresh handle is unused
                entry.reloading = False
                if handle is not None:
                    to_release.append((handle, RemovalCause.REPLACED))
            elif handle is None:
                del self._entries[key]
                to_release.append((entry.handle, RemovalCause.VANISHED))
            else:
                self._entries[key] = _Entry(handle=handle, loaded_at=self._clock())
                to_release.append((entry.handle, RemovalCause.REPLACED))

        for released, cause in to_release:
            self._release(key, released, cause)
        logger.debug(
            "archive reloaded",
            extra={
                "stage": "reload",
                "project": key.project,
                "version": key.version,
                "found": handle is not None,
            },
        )

    def _release(self, key: ArchiveKey, handle: ArchiveHandle, cause: RemovalCause) -> None:
        try:
            handle.close()
        except Exception:
            logger.error(
                "Could not close archive",
                exc_info=True,
                extra={
                    "stage": "release",
                    "project": key.project,
                    "version": key.version,
                    "cause": cause.value,
                },
            )
        if self._removal_listener is not None:
            try:
                self._removal_listener(key, handle, cause)
            except Exception:
                logger.exception("removal listener failed")
