"""Structured logging for the archive mirror.

Every module logs through ``logging.getLogger(__name__)`` below
:data:`LOGGER_NAME` and attaches context through ``extra`` (``project``,
``version``, ``stage``, ``url`` and friends).  :func:`setup_logging` installs
a console handler and, optionally, a rotating JSON-lines file that
:class:`JSONFormatter` renders one record per line.
"""

from __future__ import annotations

import gzip
import json
import logging
import shutil
import sys
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional, Tuple

__all__ = ["LOGGER_NAME", "JSONFormatter", "setup_logging"]

LOGGER_NAME = "DocHarbor.ArchiveMirror"
LOG_FILE_PATTERN = "docharbor-{date}.jsonl"

_CONTEXT_FIELDS = ("project", "version", "stage", "url", "cause", "error")
_OPTIONAL_FIELDS = ("size", "sha256", "counts", "status", "released", "skipped_ticks")
_MANAGED_ATTR = "_docharbor_managed"
_CONSOLE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """Render a record as a single JSON object.

    Context fields are always present (``null`` when unset) so log consumers
    can rely on a fixed shape; counters such as ``size`` only appear when a
    call site supplied them.
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: Dict[str, object] = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update({name: getattr(record, name, None) for name in _CONTEXT_FIELDS})
        for name in _OPTIONAL_FIELDS:
            if getattr(record, name, None) is not None:
                entry[name] = getattr(record, name)
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _gzip_in_place(path: Path) -> Path:
    target = path.with_name(path.name + ".gz")
    with path.open("rb") as raw, gzip.open(target, "wb") as packed:
        shutil.copyfileobj(raw, packed)
    path.unlink()
    return target


def _expire_logs(log_dir: Path, retention_days: int) -> Tuple[int, int]:
    """Gzip JSON logs past retention and delete gzipped ones past retention.

    Returns the number of files compressed and deleted.
    """

    cutoff = time.time() - retention_days * 86400
    compressed = deleted = 0
    for path in sorted(log_dir.glob("*.jsonl.gz")):
        if path.stat().st_mtime < cutoff:
            path.unlink(missing_ok=True)
            deleted += 1
    for path in sorted(log_dir.glob("*.jsonl")):
        if path.stat().st_mtime < cutoff:
            _gzip_in_place(path)
            compressed += 1
    return compressed, deleted


def _mark(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _MANAGED_ATTR, True)
    return handler


def _console_handler(json_console: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if json_console else logging.Formatter(_CONSOLE_FORMAT))
    return _mark(handler)


def _file_handler(log_dir: Path, max_log_size_mb: int) -> logging.Handler:
    date = datetime.now(timezone.utc).strftime("%Y%m%d")
    handler = RotatingFileHandler(
        log_dir / LOG_FILE_PATTERN.format(date=date),
        maxBytes=max_log_size_mb * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    handler.setFormatter(JSONFormatter())
    return _mark(handler)


def _drop_managed_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if not getattr(handler, _MANAGED_ATTR, False):
            continue
        logger.removeHandler(handler)
        # stream handlers borrow stderr; only file handlers own their stream
        if isinstance(handler, logging.FileHandler):
            handler.close()


def setup_logging(
    *,
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    json_console: bool = False,
    retention_days: int = 30,
    max_log_size_mb: int = 100,
    propagate: bool = False,
) -> logging.Logger:
    """Configure the mirror logger and return it.

    Handlers installed by an earlier call are replaced, so the function is
    safe to call again after settings change.  When ``log_dir`` is given,
    JSON logs older than ``retention_days`` are gzipped and gzipped logs older
    than that are removed before the new file handler opens.
    """

    logger = logging.getLogger(LOGGER_NAME)
    numeric = logging.getLevelName((level or "INFO").upper())
    logger.setLevel(numeric if isinstance(numeric, int) else logging.INFO)
    _drop_managed_handlers(logger)
    logger.addHandler(_console_handler(json_console))

    expired: Tuple[int, int] = (0, 0)
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        expired = _expire_logs(log_dir, retention_days)
        logger.addHandler(_file_handler(log_dir, max_log_size_mb))

    logger.propagate = propagate
    if any(expired):
        logger.debug(
            "expired old log files",
            extra={"stage": "logging", "compressed": expired[0], "deleted": expired[1]},
        )
    return logger
