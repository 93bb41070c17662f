# === NAVMAP v1 ===
# {
#   "module": "DocHarbor.ArchiveMirror.metadata",
#   "purpose": "Fetch and parse maven-metadata.xml to locate the newest snapshot build",
#   "sections": [
#     {"id": "models", "name": "Metadata Models", "anchor": "MOD", "kind": "api"},
#     {"id": "parse-metadata", "name": "parse_metadata", "anchor": "function-parse-metadata", "kind": "function"},
#     {"id": "snapshot-artifact-name", "name": "snapshot_artifact_name", "anchor": "function-snapshot-artifact-name", "kind": "function"},
#     {"id": "metadata-resolver", "name": "MetadataResolver", "anchor": "class-metadataresolver", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Repository metadata resolution for moving (SNAPSHOT) versions.

A snapshot repository publishes one ``maven-metadata.xml`` per artifact
version directory::

    <metadata>
      <groupId>org.example</groupId>
      <artifactId>foo-api</artifactId>
      <version>1.0-SNAPSHOT</version>
      <versioning>
        <snapshot>
          <timestamp>20240101.120000</timestamp>
          <buildNumber>3</buildNumber>
        </snapshot>
      </versioning>
    </metadata>

The timestamp and build number identify the concrete build that replaces
``-SNAPSHOT`` in the artifact file name.  The resolver never retries; the
refresh schedule owns retry cadence.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Optional

import httpx

from .errors import MetadataResolutionError
from .net import get_http_client

__all__ = [
    "METADATA_FILENAME",
    "SNAPSHOT_SUFFIX",
    "SnapshotDescriptor",
    "RepositoryMetadata",
    "parse_metadata",
    "snapshot_artifact_name",
    "MetadataResolver",
]

METADATA_FILENAME = "maven-metadata.xml"
SNAPSHOT_SUFFIX = "-SNAPSHOT"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotDescriptor:
    """Concrete build coordinates of the latest snapshot."""

    timestamp: str
    build_number: int


@dataclass(frozen=True)
class RepositoryMetadata:
    """Subset of a repository metadata document relevant to snapshot resolution."""

    artifact_id: str
    version: str
    group_id: Optional[str] = None
    snapshot: Optional[SnapshotDescriptor] = None

    @property
    def base_version(self) -> str:
        """Version with the ``-SNAPSHOT`` qualifier removed."""

        return self.version.replace(SNAPSHOT_SUFFIX, "")


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child(element: ET.Element, name: str) -> Optional[ET.Element]:
    for child in element:
        if _local_name(child.tag) == name:
            return child
    return None


def _child_text(element: ET.Element, name: str) -> Optional[str]:
    child = _child(element, name)
    if child is None or child.text is None:
        return None
    text = child.text.strip()
    return text or None


def parse_metadata(payload: bytes) -> RepositoryMetadata:
    """Parse a ``maven-metadata.xml`` document.

    Namespaced documents are accepted.  A missing ``<snapshot>`` element, or one
    without a timestamp, yields ``snapshot=None``; structural problems raise.

    Raises:
        MetadataResolutionError: If the document is not well-formed XML or lacks
            the artifact id or version.
    """

    try:
        root = ET.fromstring(payload)
    except ET.ParseError as exc:
        raise MetadataResolutionError(f"Malformed metadata document: {exc}") from exc

    if _local_name(root.tag) != "metadata":
        raise MetadataResolutionError(f"Unexpected metadata root element <{_local_name(root.tag)}>")

    artifact_id = _child_text(root, "artifactId")
    version = _child_text(root, "version")
    if artifact_id is None or version is None:
        raise MetadataResolutionError("Metadata document lacks artifactId or version")

    snapshot: Optional[SnapshotDescriptor] = None
    versioning = _child(root, "versioning")
    snapshot_element = _child(versioning, "snapshot") if versioning is not None else None
    if snapshot_element is not None:
        timestamp = _child_text(snapshot_element, "timestamp")
        build_text = _child_text(snapshot_element, "buildNumber")
        if timestamp is not None:
            try:
                build_number = int(build_text) if build_text is not None else 0
            except ValueError as exc:
                raise MetadataResolutionError(
                    f"Snapshot build number is not an integer: {build_text!r}"
                ) from exc
            snapshot = SnapshotDescriptor(timestamp=timestamp, build_number=build_number)

    return RepositoryMetadata(
        artifact_id=artifact_id,
        version=version,
        group_id=_child_text(root, "groupId"),
        snapshot=snapshot,
    )


def snapshot_artifact_name(
    metadata: RepositoryMetadata,
    *,
    classifier: str = "javadoc",
    extension: str = "jar",
) -> str:
    """Return the file name of the snapshot build described by ``metadata``.

    Example:
        ``foo-api-1.0-20240101.120000-3-javadoc.jar``
    """

    if metadata.snapshot is None:
        raise MetadataResolutionError(
            f"No snapshot build recorded for {metadata.artifact_id} {metadata.version}"
        )
    snapshot = metadata.snapshot
    return (
        f"{metadata.artifact_id}-{metadata.base_version}-{snapshot.timestamp}-"
        f"{snapshot.build_number}-{classifier}.{extension}"
    )


class MetadataResolver:
    """Fetch repository metadata and extract the latest snapshot coordinates."""

    def __init__(self, client: Optional[httpx.Client] = None) -> None:
        self._client = client

    @property
    def client(self) -> httpx.Client:
        return self._client if self._client is not None else get_http_client()

    def fetch(self, url: str) -> RepositoryMetadata:
        """Fetch and parse the metadata document at ``url``.

        Raises:
            MetadataResolutionError: On transport failure, a non-success
                response, or a malformed document.
        """

        try:
            response = self.client.get(url)
        except httpx.HTTPError as exc:
            raise MetadataResolutionError(f"Could not fetch metadata: {exc}", url=url) from exc
        if not response.is_success:
            raise MetadataResolutionError(
                f"Metadata request returned HTTP {response.status_code}", url=url
            )
        try:
            return parse_metadata(response.content)
        except MetadataResolutionError as exc:
            raise MetadataResolutionError(str(exc), url=url) from exc

    def resolve(self, url: str) -> RepositoryMetadata:
        """Return metadata for ``url`` guaranteed to carry a snapshot descriptor.

        Raises:
            MetadataResolutionError: For every failure of :meth:`fetch` and when
                the document has no snapshot descriptor.
        """

        metadata = self.fetch(url)
        if metadata.snapshot is None:
            raise MetadataResolutionError(
                f"No snapshot build recorded for {metadata.artifact_id} {metadata.version}",
                url=url,
            )
        logger.debug(
            "resolved snapshot",
            extra={
                "stage": "resolve",
                "url": url,
                "timestamp": metadata.snapshot.timestamp,
                "build_number": metadata.snapshot.build_number,
            },
        )
        return metadata
