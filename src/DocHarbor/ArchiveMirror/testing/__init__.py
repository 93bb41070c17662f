"""Testing helpers for the archive mirror.

Utilities here let tests run the resolver, downloader, and cache against
in-memory HTTP transports and throwaway archives instead of patching internals.
"""

from __future__ import annotations

import contextlib
import io
import zipfile
from pathlib import Path
from typing import Iterator, Mapping, Optional, Union

import httpx

from ..net import configure_http_client, reset_http_client
from ..settings import HttpSettings

__all__ = ["use_mock_http_client", "build_archive", "archive_bytes", "metadata_xml"]


@contextlib.contextmanager
def use_mock_http_client(
    transport: httpx.BaseTransport,
    *,
    settings: Optional[HttpSettings] = None,
    **client_kwargs,
) -> Iterator[httpx.Client]:
    """Temporarily install a shared HTTPX client backed by ``transport``."""

    client = httpx.Client(transport=transport, **client_kwargs)
    configure_http_client(client=client, settings=settings)
    try:
        yield client
    finally:
        reset_http_client()
        client.close()


def archive_bytes(members: Mapping[str, Union[str, bytes]]) -> bytes:
    """Return the bytes of a zip archive holding ``members``."""

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, content in members.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def build_archive(path: Path, members: Mapping[str, Union[str, bytes]]) -> Path:
    """Write a zip archive holding ``members`` to ``path``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(archive_bytes(members))
    return path


def metadata_xml(
    *,
    artifact_id: str = "foo-api",
    version: str = "1.0-SNAPSHOT",
    timestamp: Optional[str] = "20240101.120000",
    build_number: Optional[int] = 3,
    group_id: str = "org.example",
) -> bytes:
    """Render a minimal ``maven-metadata.xml`` document."""

    snapshot = ""
    if timestamp is not None:
        build = f"<buildNumber>{build_number}</buildNumber>" if build_number is not None else ""
        snapshot = f"<snapshot><timestamp>{timestamp}</timestamp>{build}</snapshot>"
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        "<metadata>"
        f"<groupId>{group_id}</groupId>"
        f"<artifactId>{artifact_id}</artifactId>"
        f"<version>{version}</version>"
        f"<versioning>{snapshot}<lastUpdated>20240101120000</lastUpdated></versioning>"
        "</metadata>"
    ).encode("utf-8")
