"""Archive filesystem handles over downloaded documentation jars."""

from __future__ import annotations

import logging
import threading
import zipfile
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, List

from fsspec.implementations.zip import ZipFileSystem

from .errors import ArchiveUnreadableError

if TYPE_CHECKING:  # pragma: no cover - import cycle guard for type checkers only
    from .cache import ArchiveKey

__all__ = ["ArchiveHandle", "open_archive"]

logger = logging.getLogger(__name__)


class ArchiveHandle:
    """An open, read-only filesystem view over one archive file.

    The handle owns the underlying file descriptor; :meth:`close` releases both
    the zip directory and the descriptor and may be called more than once.

    Examples:
        >>> handle = open_archive(ArchiveKey("foo", "dev"), Path("foo/dev.jar"))
        >>> handle.read_bytes("index.html")[:15]
        b'<!DOCTYPE HTML>'
        >>> handle.close()
    """

    def __init__(self, key: "ArchiveKey", path: Path, fileobj: BinaryIO, fs: ZipFileSystem) -> None:
        self.key = key
        self.path = path
        self._fileobj = fileobj
        self._fs = fs
        self._closed = False
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<ArchiveHandle {self.key.project}/{self.key.version} {state}>"

    def __enter__(self) -> "ArchiveHandle":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def fs(self) -> ZipFileSystem:
        """The fsspec filesystem exposing the archive contents."""

        if self._closed:
            raise ValueError(f"{self!r} is closed")
        return self._fs

    def exists(self, member: str) -> bool:
        """Return ``True`` if ``member`` (file or directory) exists in the archive."""

        return bool(self.fs.exists(member.lstrip("/")))

    def isdir(self, member: str) -> bool:
        """Return ``True`` if ``member`` names a directory in the archive."""

        return bool(self.fs.isdir(member.lstrip("/")))

    def read_bytes(self, member: str) -> bytes:
        """Return the contents of archive member ``member``.

        Raises:
            FileNotFoundError: If the member does not exist.
        """

        name = member.lstrip("/")
        try:
            return self.fs.cat_file(name)
        except KeyError as exc:
            # zipfile reports unknown members as KeyError
            raise FileNotFoundError(name) from exc

    def listdir(self, member: str = "") -> List[str]:
        """Return the entries directly below ``member``."""

        return sorted(self.fs.ls(member.lstrip("/"), detail=False))

    def close(self) -> None:
        """Release the archive; subsequent calls are no-ops."""

        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._fs.close()
        finally:
            self._fileobj.close()


def open_archive(key: "ArchiveKey", path: Path) -> ArchiveHandle:
    """Open ``path`` as an archive filesystem for ``key``.

    Raises:
        FileNotFoundError: If ``path`` vanished before it could be opened.
        ArchiveUnreadableError: If ``path`` cannot be opened or is not a
            readable zip archive.
    """

    try:
        fileobj = path.open("rb")
    except FileNotFoundError:
        raise
    except OSError as exc:
        raise ArchiveUnreadableError(key, path, str(exc)) from exc
    try:
        fs = ZipFileSystem(fo=fileobj, mode="r", skip_instance_cache=True)
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, OSError, ValueError) as exc:
        fileobj.close()
        raise ArchiveUnreadableError(key, path, str(exc)) from exc
    logger.debug(
        "archive opened",
        extra={"stage": "open", "project": key.project, "version": key.version, "path": str(path)},
    )
    return ArchiveHandle(key, path, fileobj, fs)
