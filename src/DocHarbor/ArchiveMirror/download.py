"""Streaming artifact downloads that never expose a truncated archive.

The response body is streamed into a uniquely named ``.part`` file beside the
destination while a SHA-256 digest is computed, flushed to disk, and only then
moved over the destination with :func:`os.replace`.  Any failure removes the
part file and leaves a previously downloaded archive untouched, so a
concurrent reader opening the destination always sees a complete file.
"""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional, Tuple

import httpx

from .errors import DownloadFailure, StorageError
from .net import get_http_client

__all__ = ["DownloadResult", "download_artifact", "sha256_file", "PART_SUFFIX"]

CHUNK_SIZE = 1 << 20
PART_SUFFIX = ".part"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DownloadResult:
    """Outcome of a completed artifact download."""

    url: str
    path: Path
    size: int
    sha256: str
    etag: Optional[str] = None
    last_modified: Optional[str] = None


def _open_part_file(destination: Path) -> Tuple[Path, BinaryIO]:
    fd, name = tempfile.mkstemp(
        dir=destination.parent, prefix=f".{destination.name}.", suffix=PART_SUFFIX
    )
    return Path(name), os.fdopen(fd, "wb")


def sha256_file(path: Path) -> str:
    """Return the hex SHA-256 digest of ``path``."""

    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def download_artifact(
    url: str,
    destination: Path,
    *,
    client: Optional[httpx.Client] = None,
) -> DownloadResult:
    """Download ``url`` to ``destination`` atomically.

    Raises:
        DownloadFailure: On transport errors or a non-success response.
        StorageError: When the part file cannot be written or moved into place.
    """

    http = client if client is not None else get_http_client()
    part_path: Optional[Path] = None
    digest = hashlib.sha256()
    size = 0

    def discard() -> None:
        if part_path is not None:
            part_path.unlink(missing_ok=True)

    try:
        with http.stream("GET", url) as response:
            if not response.is_success:
                raise DownloadFailure(
                    f"Artifact request returned HTTP {response.status_code}",
                    url=url,
                    status_code=response.status_code,
                )
            etag = response.headers.get("ETag")
            last_modified = response.headers.get("Last-Modified")
            part_path, stream = _open_part_file(destination)
            with stream:
                for chunk in response.iter_bytes(CHUNK_SIZE):
                    if not chunk:
                        continue
                    stream.write(chunk)
                    digest.update(chunk)
                    size += len(chunk)
                stream.flush()
                os.fsync(stream.fileno())
    except DownloadFailure:
        discard()
        raise
    except httpx.HTTPError as exc:
        discard()
        raise DownloadFailure(f"Could not download artifact: {exc}", url=url) from exc
    except OSError as exc:
        discard()
        logger.error(
            "filesystem error during download",
            extra={"stage": "download", "url": url, "path": str(destination), "error": str(exc)},
        )
        raise StorageError(f"Failed to write download for {destination}: {exc}") from exc
    except BaseException:
        discard()
        raise

    try:
        os.replace(part_path, destination)
    except OSError as exc:
        discard()
        logger.error(
            "filesystem error finalising download",
            extra={"stage": "download", "url": url, "path": str(destination), "error": str(exc)},
        )
        raise StorageError(f"Failed to finalise download {destination}: {exc}") from exc

    result = DownloadResult(
        url=url,
        path=destination,
        size=size,
        sha256=digest.hexdigest(),
        etag=etag,
        last_modified=last_modified,
    )
    logger.debug(
        "artifact downloaded",
        extra={"stage": "download", "url": url, "path": str(destination), "size": size},
    )
    return result
