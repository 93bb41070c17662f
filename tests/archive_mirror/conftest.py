"""Shared fixtures for the archive_mirror test suite."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import pytest

from DocHarbor.ArchiveMirror.cache import ArchiveKey
from DocHarbor.ArchiveMirror.logging_utils import LOGGER_NAME
from DocHarbor.ArchiveMirror.net import reset_http_client
from DocHarbor.ArchiveMirror.storage import ArchiveStorage


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ManualExecutor(Executor):
    """Executor that queues submissions until :meth:`run_pending` is called."""

    def __init__(self) -> None:
        self.pending: List[Tuple[Future, Callable, tuple, dict]] = []
        self._shutdown = False

    def submit(self, fn, /, *args, **kwargs) -> Future:  # type: ignore[override]
        if self._shutdown:
            raise RuntimeError("cannot schedule new futures after shutdown")
        future: Future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run_pending(self) -> int:
        ran = 0
        while self.pending:
            future, fn, args, kwargs = self.pending.pop(0)
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as exc:  # pragma: no cover - surfaced through the future
                future.set_exception(exc)
            ran += 1
        return ran

    def shutdown(self, wait: bool = True, *, cancel_futures: bool = False) -> None:
        self._shutdown = True


class FakeHandle:
    """Archive handle stand-in that counts close calls."""

    def __init__(self, key: ArchiveKey, path: Path, *, fail_close: bool = False) -> None:
        self.key = key
        self.path = path
        self.content = path.read_bytes()
        self.close_calls = 0
        self.fail_close = fail_close

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    def close(self) -> None:
        self.close_calls += 1
        if self.fail_close:
            raise OSError("simulated close failure")


class RecordingOpener:
    """Opener producing :class:`FakeHandle` objects and recording every call."""

    def __init__(self, *, fail_close: bool = False, gate: Optional[threading.Event] = None) -> None:
        self.calls: List[ArchiveKey] = []
        self.handles: List[FakeHandle] = []
        self.fail_close = fail_close
        self.gate = gate
        self._lock = threading.Lock()

    def __call__(self, key: ArchiveKey, path: Path) -> FakeHandle:
        with self._lock:
            self.calls.append(key)
        if self.gate is not None:
            assert self.gate.wait(timeout=5), "opener gate was never released"
        handle = FakeHandle(key, path, fail_close=self.fail_close)
        with self._lock:
            self.handles.append(handle)
        return handle


@pytest.fixture(autouse=True)
def _isolated_http_client():
    """Ensure no test leaks a configured HTTP client into the next."""

    reset_http_client()
    yield
    reset_http_client()


@pytest.fixture(autouse=True)
def _restore_mirror_logger():
    """Undo handler and propagation changes made by ``setup_logging``."""

    logger = logging.getLogger(LOGGER_NAME)
    handlers = list(logger.handlers)
    level = logger.level
    propagate = logger.propagate
    yield
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture
def storage(tmp_path: Path) -> ArchiveStorage:
    return ArchiveStorage(tmp_path / "storage")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def executor() -> ManualExecutor:
    return ManualExecutor()


@pytest.fixture
def opener() -> RecordingOpener:
    return RecordingOpener()


@pytest.fixture
def opener_factory() -> Callable[..., RecordingOpener]:
    """Build openers with custom close behaviour or a release gate."""

    return RecordingOpener
