"""Logging setup with per-request correlation ids.

Concurrent requests interleave their records in one log file, so every
record carries the id of the request that produced it. The orchestrator
opens a :func:`request_scope` around each request; records logged outside
any request show ``-``.
"""

from __future__ import annotations

import contextvars
import itertools
import logging
import logging.handlers
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Mapping, TextIO

__all__ = [
    "RequestIdFilter",
    "current_request_id",
    "get_log_path",
    "request_scope",
    "setup_logging",
]

LOG_DIR_ENV = "STREAMRELAY_LOG_DIR"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(request_id)s | %(name)s | %(message)s"

_DEFAULT_LOG_DIR = Path.home() / ".streamrelay" / "logs"
_NO_REQUEST = "-"

# Transport libraries stay at WARNING; the SDK logs its retries at INFO.
_LIBRARY_FLOORS: Mapping[str, int] = {
    "asyncio": logging.WARNING,
    "httpcore": logging.WARNING,
    "httpx": logging.WARNING,
    "openai": logging.INFO,
}

_request_id: contextvars.ContextVar[str] = contextvars.ContextVar("streamrelay_request_id", default=_NO_REQUEST)
_request_counter = itertools.count(1)
_log_path: Path | None = None


class RequestIdFilter(logging.Filter):
    """Stamps ``record.request_id`` from the active request scope."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = _request_id.get()
        return True


def current_request_id() -> str:
    return _request_id.get()


@contextmanager
def request_scope(request_id: str | None = None) -> Iterator[str]:
    """Tag records logged inside the block with *request_id*.

    A fresh ``req-N`` id is allocated when none is given. Scopes nest; the
    outer id is restored on exit.
    """
    token = _request_id.set(request_id or f"req-{next(_request_counter)}")
    try:
        yield _request_id.get()
    finally:
        _request_id.reset(token)


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console_stream: TextIO | None = None,
    console_level: int = logging.WARNING,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Route records to ``streamrelay.log`` and stderr, returning the file path.

    The console only shows ``console_level`` and above so streamed answers
    on stdout are not interleaved with routine progress messages. Calling
    again without ``force`` keeps the existing configuration.
    """
    global _log_path
    if _log_path is not None and not force:
        return _log_path

    directory = Path(log_dir or os.environ.get(LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / "streamrelay.log"

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    request_filter = RequestIdFilter()

    file_handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(level)
    console_handler = logging.StreamHandler(console_stream)
    console_handler.setLevel(max(level, console_level))
    for handler in (file_handler, console_handler):
        handler.setFormatter(formatter)
        handler.addFilter(request_filter)

    logging.basicConfig(level=level, handlers=[file_handler, console_handler], force=True)
    logging.captureWarnings(True)
    for name, floor in _LIBRARY_FLOORS.items():
        logging.getLogger(name).setLevel(max(level, floor))

    _log_path = path
    return path


def get_log_path() -> Path | None:
    return _log_path
