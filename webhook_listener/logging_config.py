"""Logging setup: stderr for the journal or a terminal, plus an optional rotating file.

Call ``setup_logging()`` once at startup.  All modules use ``logging.getLogger(__name__)``.

When stderr is connected to the systemd journal (``JOURNAL_STREAM`` is set),
lines carry ``<N>`` syslog priority prefixes instead of timestamps and colors;
journald records its own timestamps.
"""

from __future__ import annotations

import atexit
import logging
import os
import queue
import sys
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path

from webhook_listener.log_context import ContextFilter

MAX_BYTES = 5 * 1024 * 1024  # 5 MB per file
BACKUP_COUNT = 3
LOG_FILE_NAME = "webhook-listener.log"

TERMINAL_FMT = "%(asctime)s %(levelname)s %(name)s: %(ctx)s%(message)s"
JOURNAL_FMT = "%(name)s: %(ctx)s%(message)s"
FILE_FMT = "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d: %(ctx)s%(message)s"
TERMINAL_DATE_FMT = "%H:%M:%S"
FILE_DATE_FMT = "%Y-%m-%d %H:%M:%S"

# Libraries whose INFO output is noise for a one-shot daemon.
_QUIET_LOGGERS = ("asyncio", "aiohttp.access", "aiohttp.server")

# sd-daemon(3) priorities.
_SYSLOG_PRIORITY = {
    logging.DEBUG: 7,
    logging.INFO: 6,
    logging.WARNING: 4,
    logging.ERROR: 3,
    logging.CRITICAL: 2,
}

_LEVEL_COLORS = {
    logging.DEBUG: "\x1b[36m",
    logging.INFO: "\x1b[32m",
    logging.WARNING: "\x1b[33m",
    logging.ERROR: "\x1b[31m",
    logging.CRITICAL: "\x1b[35m",
}
_RESET = "\x1b[0m"

logger = logging.getLogger(__name__)

_file_listener: QueueListener | None = None
_atexit_registered: bool = False


def _stop_queue_listener() -> None:
    """Flush and stop the file-writer thread, if one is running."""
    global _file_listener  # noqa: PLW0603
    if _file_listener is not None:
        _file_listener.stop()
        _file_listener = None


class _TerminalFormatter(logging.Formatter):
    """Fixed-width level names, colored when writing to a TTY."""

    def __init__(self, use_color: bool) -> None:
        super().__init__(TERMINAL_FMT, datefmt=TERMINAL_DATE_FMT)
        self._use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        padded = f"{levelname:<8}"
        if self._use_color:
            padded = f"{_LEVEL_COLORS.get(record.levelno, '')}{padded}{_RESET}"
        record.levelname = padded
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class _JournalFormatter(logging.Formatter):
    """Prefix every line with its syslog priority so journald can classify it."""

    def __init__(self) -> None:
        super().__init__(JOURNAL_FMT)

    def format(self, record: logging.LogRecord) -> str:
        priority = _SYSLOG_PRIORITY.get(record.levelno)
        if priority is None:
            priority = 3 if record.levelno > logging.WARNING else 6
        prefix = f"<{priority}>"
        return "\n".join(prefix + line for line in super().format(record).splitlines())


def _under_journal() -> bool:
    return bool(os.environ.get("JOURNAL_STREAM"))


def _stderr_handler(level: int, ctx_filter: logging.Filter) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(ctx_filter)
    if _under_journal():
        handler.setFormatter(_JournalFormatter())
    else:
        handler.setFormatter(_TerminalFormatter(use_color=sys.stderr.isatty()))
    return handler


def _start_file_logging(log_dir: Path, ctx_filter: logging.Filter) -> logging.Handler:
    """Return a queue handler feeding a rotating file written from a background thread."""
    global _file_listener, _atexit_registered  # noqa: PLW0603

    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_dir / LOG_FILE_NAME,
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(FILE_FMT, datefmt=FILE_DATE_FMT))

    records: queue.Queue[logging.LogRecord] = queue.Queue()
    queue_handler = QueueHandler(records)
    queue_handler.setLevel(logging.DEBUG)
    queue_handler.addFilter(ctx_filter)

    _file_listener = QueueListener(records, file_handler, respect_handler_level=True)
    _file_listener.start()
    if not _atexit_registered:
        atexit.register(_stop_queue_listener)
        _atexit_registered = True
    return queue_handler


def resolve_level(name: str) -> int:
    """Map a level name from the config file to a ``logging`` level (INFO if unknown)."""
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(
    level: int = logging.INFO,
    verbose: bool = False,
    log_dir: Path | None = None,
) -> None:
    """Configure the root logger. Safe to call again, e.g. after the config is read.

    Args:
        level: Minimum level for stderr output.
        verbose: Force DEBUG regardless of *level*.
        log_dir: Also write ``webhook-listener.log`` here (always at DEBUG).
    """
    if verbose:
        level = logging.DEBUG

    _stop_queue_listener()
    ctx_filter = ContextFilter()

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG if log_dir is not None else level)
    root.addHandler(_stderr_handler(level, ctx_filter))
    if log_dir is not None:
        root.addHandler(_start_file_logging(log_dir, ctx_filter))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug(
        "Logging initialized (level=%s, file=%s)",
        logging.getLevelName(level),
        log_dir / LOG_FILE_NAME if log_dir is not None else "none",
    )
