"""Logging bootstrap and per-exchange log context."""

from __future__ import annotations

import logging
import logging.handlers
import os
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Iterator

__all__ = ["bind_exchange", "current_exchange", "get_log_path", "get_logger", "setup_logging"]

_HOME_LOG_DIR = Path.home() / ".parley" / "logs"
_LOG_FILE = "parley.log"
_LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(exchange_id)s] %(name)s: %(message)s"
_QUIET_LIBRARIES: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai", "anthropic")
_NO_EXCHANGE = "-"

_exchange_id: ContextVar[str] = ContextVar("parley_exchange_id", default=_NO_EXCHANGE)
_active_path: Path | None = None


class _ExchangeFilter(logging.Filter):
    """Stamps each record with the id of the exchange that produced it."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.exchange_id = _exchange_id.get()
        return True


@contextmanager
def bind_exchange(message_id: str) -> Iterator[None]:
    """Tag log records emitted inside the block (and its tasks) with *message_id*."""

    token = _exchange_id.set(message_id)
    try:
        yield
    finally:
        _exchange_id.reset(token)


def current_exchange() -> str | None:
    value = _exchange_id.get()
    return None if value == _NO_EXCHANGE else value


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Route root logging to a rotating ``parley.log`` and, optionally, stderr.

    Repeated calls are no-ops returning the active log path unless *force* is
    set. ``PARLEY_LOG_DIR`` replaces the default ``~/.parley/logs`` directory
    when *log_dir* is not given.
    """

    global _active_path
    if _active_path is not None and not force:
        return _active_path

    directory = Path(log_dir or os.environ.get("PARLEY_LOG_DIR") or _HOME_LOG_DIR).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / _LOG_FILE

    handlers = _build_handlers(path, level, console=console, max_bytes=max_bytes, backup_count=backup_count)
    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    # Library chatter stays at WARNING even when the root is in DEBUG.
    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _active_path = path
    return path


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_log_path() -> Path | None:
    """Return the log file configured by :func:`setup_logging`, if any."""

    return _active_path


def _build_handlers(
    path: Path,
    level: int,
    *,
    console: bool,
    max_bytes: int,
    backup_count: int,
) -> list[logging.Handler]:
    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    stamp = _ExchangeFilter()
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        # stderr keeps stdout free for streamed frames
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(stamp)
    return handlers
