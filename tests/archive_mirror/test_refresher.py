# === NAVMAP v1 ===
# {
#   "module": "tests.archive_mirror.test_refresher",
#   "purpose": "Refresh cycle behaviour against a mock snapshot repository",
#   "sections": [
#     {"id": "fixtures", "name": "Repository Fixtures", "anchor": "FIX", "kind": "helpers"},
#     {"id": "snapshot", "name": "Snapshot Refresh", "anchor": "SNP", "kind": "tests"},
#     {"id": "failures", "name": "Failure Containment", "anchor": "FLR", "kind": "tests"}
#   ]
# }
# === /NAVMAP ===

"""Tests for :mod:`DocHarbor.ArchiveMirror.refresher`."""

from __future__ import annotations

import hashlib
import threading
from pathlib import Path
from typing import Dict, List

import httpx
import pytest
from filelock import FileLock

from DocHarbor.ArchiveMirror.cache import ArchiveCache, ArchiveKey
from DocHarbor.ArchiveMirror.download import download_artifact
from DocHarbor.ArchiveMirror.refresher import LOCK_FILENAME, ArtifactRefresher, RefreshStatus
from DocHarbor.ArchiveMirror.settings import MirrorSettings
from DocHarbor.ArchiveMirror.storage import ArchiveStorage
from DocHarbor.ArchiveMirror.testing import archive_bytes, metadata_xml, use_mock_http_client

# --- Repository Fixtures ---

FOO_BASE = "https://repo.example.org/snapshots/org/example/foo-api/1.0-SNAPSHOT"
BAR_BASE = "https://repo.example.org/snapshots/org/example/bar-api/2.0-SNAPSHOT"


class FakeRepository:
    """In-memory snapshot repository served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.documents: Dict[str, httpx.Response] = {}
        self.requests: List[str] = []

    def publish(self, base: str, *, artifact_id: str, version: str, timestamp: str, build: int, members) -> str:
        self.documents[f"{base}/maven-metadata.xml"] = httpx.Response(
            200,
            content=metadata_xml(
                artifact_id=artifact_id, version=version, timestamp=timestamp, build_number=build
            ),
        )
        base_version = version.replace("-SNAPSHOT", "")
        url = f"{base}/{artifact_id}-{base_version}-{timestamp}-{build}-javadoc.jar"
        self.documents[url] = httpx.Response(200, content=archive_bytes(members))
        return url

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        response = self.documents.get(url)
        if response is None:
            return httpx.Response(404)
        return httpx.Response(response.status_code, content=response.content)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def count(self, suffix: str) -> int:
        return sum(1 for url in self.requests if url.endswith(suffix))


def _settings(storage_root: Path, **endpoints) -> MirrorSettings:
    return MirrorSettings(
        storage=storage_root,
        endpoints=[{"name": name, "versions": versions} for name, versions in endpoints.items()],
    )


def _snapshot(name: str, base: str) -> dict:
    return {"name": name, "type": "snapshot", "asset_url": base + "/{asset}"}


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def storage_root(tmp_path: Path) -> Path:
    return tmp_path / "storage"


# --- Snapshot Refresh ---


def test_snapshot_is_downloaded_and_served_by_cache(repository, storage_root) -> None:
    url = repository.publish(
        FOO_BASE,
        artifact_id="foo-api",
        version="1.0-SNAPSHOT",
        timestamp="20240101.120000",
        build=3,
        members={"index.html": "<html>foo dev</html>"},
    )
    settings = _settings(storage_root, foo=[_snapshot("dev", FOO_BASE)])
    refresher = ArtifactRefresher(settings)

    with use_mock_http_client(repository.transport()):
        report = refresher.refresh_all()

    assert "20240101.120000" in url and "-3-" in url
    assert [(o.project, o.version, o.status) for o in report.outcomes] == [
        ("foo", "dev", RefreshStatus.UPDATED)
    ]
    assert report.outcomes[0].url == url
    assert report.finished_at is not None and not report.skipped
    assert repository.requests == [f"{FOO_BASE}/maven-metadata.xml", url]

    archive = storage_root / "foo" / "dev.jar"
    assert archive.is_file()
    assert list(archive.parent.glob("*.part")) == []

    manifest = refresher.storage.read_manifest("foo", "dev")
    assert manifest["url"] == url
    assert manifest["timestamp"] == "20240101.120000"
    assert manifest["build_number"] == 3
    assert manifest["size"] == archive.stat().st_size

    cache = ArchiveCache(ArchiveStorage(storage_root))
    try:
        handle = cache.get(ArchiveKey("foo", "dev"))
        assert handle.read_bytes("index.html") == b"<html>foo dev</html>"
    finally:
        cache.close()


def test_unchanged_snapshot_is_not_downloaded_again(repository, storage_root) -> None:
    url = repository.publish(
        FOO_BASE, artifact_id="foo-api", version="1.0-SNAPSHOT", timestamp="20240101.120000", build=3,
        members={"index.html": "v1"},
    )
    refresher = ArtifactRefresher(_settings(storage_root, foo=[_snapshot("dev", FOO_BASE)]))

    with use_mock_http_client(repository.transport()):
        first = refresher.refresh_all()
        second = refresher.refresh_all()

    assert first.outcomes[0].status is RefreshStatus.UPDATED
    assert second.outcomes[0].status is RefreshStatus.UNCHANGED
    assert repository.count("maven-metadata.xml") == 2
    assert repository.requests.count(url) == 1


def test_modified_archive_on_disk_is_downloaded_again(repository, storage_root) -> None:
    repository.publish(
        FOO_BASE, artifact_id="foo-api", version="1.0-SNAPSHOT", timestamp="20240101.120000", build=3,
        members={"index.html": "v1"},
    )
    refresher = ArtifactRefresher(_settings(storage_root, foo=[_snapshot("dev", FOO_BASE)]))

    with use_mock_http_client(repository.transport()):
        refresher.refresh_all()
        (storage_root / "foo" / "dev.jar").write_bytes(b"tampered")
        report = refresher.refresh_all()

    assert report.outcomes[0].status is RefreshStatus.UPDATED
    assert (storage_root / "foo" / "dev.jar").read_bytes() != b"tampered"


def test_new_snapshot_build_replaces_archive(repository, storage_root) -> None:
    repository.publish(
        FOO_BASE, artifact_id="foo-api", version="1.0-SNAPSHOT", timestamp="20240101.120000", build=3,
        members={"index.html": "build 3"},
    )
    refresher = ArtifactRefresher(_settings(storage_root, foo=[_snapshot("dev", FOO_BASE)]))

    with use_mock_http_client(repository.transport()):
        refresher.refresh_all()
        newer = repository.publish(
            FOO_BASE, artifact_id="foo-api", version="1.0-SNAPSHOT", timestamp="20240102.080000", build=4,
            members={"index.html": "build 4"},
        )
        report = refresher.refresh_all()

    assert report.outcomes[0].status is RefreshStatus.UPDATED
    assert report.outcomes[0].url == newer
    assert refresher.storage.read_manifest("foo", "dev")["build_number"] == 4


def test_release_versions_are_left_alone(repository, storage_root) -> None:
    settings = _settings(
        storage_root,
        foo=[{"name": "1.0", "type": "release", "asset_url": "https://repo.example.org/releases/foo/1.0/"}],
    )
    refresher = ArtifactRefresher(settings)

    with use_mock_http_client(repository.transport()):
        report = refresher.refresh_all()

    assert report.outcomes[0].status is RefreshStatus.SKIPPED
    assert repository.requests == []
    assert not (storage_root / "foo").exists()


def test_project_filter_limits_cycle(repository, storage_root) -> None:
    repository.publish(
        BAR_BASE, artifact_id="bar-api", version="2.0-SNAPSHOT", timestamp="20240101.000000", build=1,
        members={"index.html": "bar"},
    )
    settings = _settings(
        storage_root, foo=[_snapshot("dev", FOO_BASE)], bar=[_snapshot("dev", BAR_BASE)]
    )

    with use_mock_http_client(repository.transport()):
        report = ArtifactRefresher(settings).refresh_all(["bar"])

    assert [o.project for o in report.outcomes] == ["bar"]
    assert repository.count("maven-metadata.xml") == 1


# --- Failure Containment ---


def test_failure_in_one_version_does_not_stop_the_cycle(repository, storage_root) -> None:
    repository.publish(
        BAR_BASE, artifact_id="bar-api", version="2.0-SNAPSHOT", timestamp="20240101.000000", build=1,
        members={"index.html": "bar"},
    )
    settings = _settings(
        storage_root, foo=[_snapshot("dev", FOO_BASE)], bar=[_snapshot("dev", BAR_BASE)]
    )

    with use_mock_http_client(repository.transport()):
        report = ArtifactRefresher(settings).refresh_all()

    statuses = {(o.project, o.version): o.status for o in report.outcomes}
    assert statuses == {("foo", "dev"): RefreshStatus.FAILED, ("bar", "dev"): RefreshStatus.UPDATED}
    assert [o.project for o in report.failed] == ["foo"]
    assert report.counts() == {"updated": 1, "unchanged": 0, "skipped": 0, "failed": 1}
    assert (storage_root / "bar" / "dev.jar").is_file()
    assert not (storage_root / "foo" / "dev.jar").exists()


def test_failed_download_keeps_previous_archive(repository, storage_root) -> None:
    repository.publish(
        FOO_BASE, artifact_id="foo-api", version="1.0-SNAPSHOT", timestamp="20240101.120000", build=3,
        members={"index.html": "good"},
    )
    refresher = ArtifactRefresher(_settings(storage_root, foo=[_snapshot("dev", FOO_BASE)]))
    archive = storage_root / "foo" / "dev.jar"

    with use_mock_http_client(repository.transport()):
        refresher.refresh_all()
        before = archive.read_bytes()
        manifest_before = refresher.storage.read_manifest("foo", "dev")
        broken = repository.publish(
            FOO_BASE, artifact_id="foo-api", version="1.0-SNAPSHOT", timestamp="20240103.000000", build=5,
            members={"index.html": "never seen"},
        )
        repository.documents[broken] = httpx.Response(500)
        report = refresher.refresh_all()

    assert report.outcomes[0].status is RefreshStatus.FAILED
    assert report.outcomes[0].url == broken
    assert archive.read_bytes() == before
    assert refresher.storage.read_manifest("foo", "dev") == manifest_before
    assert list(archive.parent.glob("*.part")) == []


def test_unusable_storage_root_fails_version(repository, tmp_path) -> None:
    repository.publish(
        FOO_BASE, artifact_id="foo-api", version="1.0-SNAPSHOT", timestamp="20240101.120000", build=3,
        members={"index.html": "x"},
    )
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("occupied")

    with use_mock_http_client(repository.transport()):
        report = ArtifactRefresher(_settings(blocker, foo=[_snapshot("dev", FOO_BASE)])).refresh_all()

    assert report.outcomes[0].status is RefreshStatus.FAILED
    assert repository.count(".jar") == 0


def test_unexpected_error_is_contained(repository, storage_root) -> None:
    for base, artifact in ((FOO_BASE, "foo-api"), (BAR_BASE, "bar-api")):
        repository.publish(
            base, artifact_id=artifact, version="1.0-SNAPSHOT", timestamp="20240101.120000", build=1,
            members={"index.html": artifact},
        )
    calls = []

    def flaky_fetcher(url, destination):
        calls.append(url)
        if "foo-api" in url:
            raise KeyError("unexpected")
        return download_artifact(url, destination)

    settings = _settings(
        storage_root, foo=[_snapshot("dev", FOO_BASE)], bar=[_snapshot("dev", BAR_BASE)]
    )
    with use_mock_http_client(repository.transport()):
        report = ArtifactRefresher(settings, fetcher=flaky_fetcher).refresh_all()

    assert [o.status for o in report.outcomes] == [RefreshStatus.FAILED, RefreshStatus.UPDATED]
    assert "unexpected" in report.outcomes[0].reason
    assert len(calls) == 2


def test_overlapping_cycle_is_skipped(repository, storage_root) -> None:
    repository.publish(
        FOO_BASE, artifact_id="foo-api", version="1.0-SNAPSHOT", timestamp="20240101.120000", build=3,
        members={"index.html": "x"},
    )
    nested = []

    def reentrant_fetcher(url, destination):
        nested.append(refresher.refresh_all())
        return download_artifact(url, destination)

    refresher = ArtifactRefresher(
        _settings(storage_root, foo=[_snapshot("dev", FOO_BASE)]), fetcher=reentrant_fetcher
    )
    with use_mock_http_client(repository.transport()):
        report = refresher.refresh_all()

    assert report.outcomes[0].status is RefreshStatus.UPDATED
    assert len(nested) == 1
    assert nested[0].skipped
    assert nested[0].outcomes == []


def test_refreshers_sharing_storage_do_not_overlap(repository, storage_root) -> None:
    url = repository.publish(
        FOO_BASE, artifact_id="foo-api", version="1.0-SNAPSHOT", timestamp="20240101.120000", build=3,
        members={"index.html": "first writer"},
    )
    settings = _settings(storage_root, foo=[_snapshot("dev", FOO_BASE)])
    downloading = threading.Event()
    resume = threading.Event()

    def paused_fetcher(artifact_url, destination):
        downloading.set()
        assert resume.wait(timeout=5.0)
        return download_artifact(artifact_url, destination)

    first = ArtifactRefresher(settings, fetcher=paused_fetcher)
    second = ArtifactRefresher(settings)
    reports = []

    with use_mock_http_client(repository.transport()):
        worker = threading.Thread(target=lambda: reports.append(first.refresh_all()))
        worker.start()
        try:
            assert downloading.wait(timeout=5.0)
            overlapping = second.refresh_all()
        finally:
            resume.set()
            worker.join(timeout=5.0)

    assert overlapping.skipped
    assert overlapping.outcomes == []
    assert overlapping.finished_at is not None
    assert [o.status for o in reports[0].outcomes] == [RefreshStatus.UPDATED]
    assert repository.requests.count(url) == 1

    archive = storage_root / "foo" / "dev.jar"
    assert archive.read_bytes() == repository.documents[url].content
    assert first.storage.read_manifest("foo", "dev")["sha256"] == hashlib.sha256(archive.read_bytes()).hexdigest()
    assert list(archive.parent.glob("*.part")) == []


def test_cycle_is_skipped_while_storage_lock_is_held_elsewhere(repository, storage_root) -> None:
    repository.publish(
        FOO_BASE, artifact_id="foo-api", version="1.0-SNAPSHOT", timestamp="20240101.120000", build=3,
        members={"index.html": "x"},
    )
    refresher = ArtifactRefresher(_settings(storage_root, foo=[_snapshot("dev", FOO_BASE)]))
    storage_root.mkdir(parents=True)
    held = FileLock(str(storage_root / LOCK_FILENAME))

    with use_mock_http_client(repository.transport()):
        with held:
            blocked = refresher.refresh_all()
        after = refresher.refresh_all()

    assert blocked.skipped
    assert blocked.outcomes == []
    assert not after.skipped
    assert [o.status for o in after.outcomes] == [RefreshStatus.UPDATED]
    assert repository.count("maven-metadata.xml") == 1


def test_timeout_fails_only_the_affected_version(repository, storage_root) -> None:
    repository.publish(
        BAR_BASE, artifact_id="bar-api", version="2.0-SNAPSHOT", timestamp="20240101.000000", build=1,
        members={"index.html": "bar"},
    )

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url).startswith(FOO_BASE):
            raise httpx.ReadTimeout("timed out reading metadata", request=request)
        return repository.handler(request)

    settings = _settings(
        storage_root, foo=[_snapshot("dev", FOO_BASE)], bar=[_snapshot("dev", BAR_BASE)]
    )
    with use_mock_http_client(httpx.MockTransport(handler)):
        report = ArtifactRefresher(settings).refresh_all()

    assert [(o.project, o.status) for o in report.outcomes] == [
        ("foo", RefreshStatus.FAILED),
        ("bar", RefreshStatus.UPDATED),
    ]
    assert "timed out" in report.outcomes[0].reason
    assert (storage_root / "bar" / "dev.jar").is_file()
