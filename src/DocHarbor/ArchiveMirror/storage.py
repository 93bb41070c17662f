"""On-disk layout of mirrored artifacts.

The storage tree is the only coupling between the refresher (sole writer) and
the archive cache (reader)::

    {root}/{project}/{version}.jar    downloaded archive
    {root}/{project}/{version}.json   download manifest (URL, sha256, headers)

Writers must never expose a partially written file at either path; both the
archive and the manifest are written to a sibling temporary file first and
moved into place with :func:`os.replace`.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import StorageError

__all__ = [
    "ARCHIVE_SUFFIX",
    "MANIFEST_SUFFIX",
    "ArchiveStorage",
    "validate_identifier",
]

ARCHIVE_SUFFIX = ".jar"
MANIFEST_SUFFIX = ".json"

logger = logging.getLogger(__name__)


def validate_identifier(value: str, *, kind: str = "identifier") -> str:
    """Return ``value`` if it is usable as a single path segment.

    Raises:
        ValueError: If ``value`` is empty, a relative path marker, or contains a
            path separator or NUL byte.
    """

    if not value or not value.strip():
        raise ValueError(f"{kind} must not be empty")
    if value in {".", ".."} or value.startswith("."):
        raise ValueError(f"{kind} must not start with '.': {value!r}")
    if "/" in value or "\\" in value or "\x00" in value or os.sep in value:
        raise ValueError(f"{kind} must not contain path separators: {value!r}")
    return value


class ArchiveStorage:
    """Local filesystem tree holding one archive per project/version pair."""

    def __init__(self, root: Path) -> None:
        self.root: Path = Path(root)

    def __repr__(self) -> str:
        return f"ArchiveStorage(root={str(self.root)!r})"

    def project_dir(self, project: str) -> Path:
        """Return the directory holding every version of ``project``."""

        return self.root / validate_identifier(project, kind="project")

    def artifact_path(self, project: str, version: str) -> Path:
        """Return the archive path for ``project``/``version``."""

        safe_version = validate_identifier(version, kind="version")
        return self.project_dir(project) / f"{safe_version}{ARCHIVE_SUFFIX}"

    def manifest_path(self, project: str, version: str) -> Path:
        """Return the download manifest path for ``project``/``version``."""

        safe_version = validate_identifier(version, kind="version")
        return self.project_dir(project) / f"{safe_version}{MANIFEST_SUFFIX}"

    def ensure_project_dir(self, project: str) -> Path:
        """Create the project directory if needed and return it."""

        directory = self.project_dir(project)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Could not create directory {directory}: {exc}") from exc
        return directory

    def has_artifact(self, project: str, version: str) -> bool:
        """Return ``True`` when a regular archive file exists for the pair."""

        return self.artifact_path(project, version).is_file()

    def read_manifest(self, project: str, version: str) -> Optional[Dict[str, Any]]:
        """Return the stored download manifest, or ``None`` when absent or unreadable."""

        path = self.manifest_path(project, version)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning(
                "ignoring unreadable manifest",
                extra={"stage": "storage", "path": str(path), "error": str(exc)},
            )
            return None
        return payload if isinstance(payload, dict) else None

    def write_manifest(self, project: str, version: str, manifest: Dict[str, Any]) -> Path:
        """Atomically write ``manifest`` next to the archive."""

        path = self.manifest_path(project, version)
        tmp_path = path.with_suffix(path.suffix + ".part")
        try:
            tmp_path.write_text(json.dumps(manifest, indent=2, sort_keys=True), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Could not write manifest {path}: {exc}") from exc
        return path

    def available_projects(self) -> List[str]:
        """List project directories present in the tree."""

        if not self.root.is_dir():
            return []
        return sorted(entry.name for entry in self.root.iterdir() if entry.is_dir())

    def available_versions(self, project: str) -> List[str]:
        """List versions of ``project`` that have a stored archive."""

        base = self.project_dir(project)
        if not base.is_dir():
            return []
        return sorted(
            entry.name[: -len(ARCHIVE_SUFFIX)]
            for entry in base.iterdir()
            if entry.is_file() and entry.name.endswith(ARCHIVE_SUFFIX)
        )
