"""Per-task log prefixes: ``[op:req:event]``.

Each HTTP request handler tags itself ``http`` with a request number (404s
included) and, once the header is read, the event. Dispatched commands run as
tasks created from that handler, so they inherit the request number and event
and retag the operation as ``cmd``.
"""

from __future__ import annotations

import dataclasses
import logging
from contextvars import ContextVar

_EVENT_WIDTH = 32


@dataclasses.dataclass(frozen=True)
class LogContext:
    operation: str | None = None
    request_id: int | None = None
    event: str | None = None

    def prefix(self) -> str:
        parts = [
            part
            for part in (
                self.operation,
                str(self.request_id) if self.request_id is not None else None,
                self.event[:_EVENT_WIDTH] if self.event else None,
            )
            if part
        ]
        return f"[{':'.join(parts)}] " if parts else ""


_current: ContextVar[LogContext] = ContextVar("webhook_listener_log_context", default=LogContext())


def current_log_context() -> LogContext:
    return _current.get()


def set_log_context(
    *,
    operation: str | None = None,
    request_id: int | None = None,
    event: str | None = None,
) -> None:
    """Update the given fields for the running task; others keep their value."""
    changes = {
        key: value
        for key, value in (
            ("operation", operation),
            ("request_id", request_id),
            ("event", event),
        )
        if value is not None
    }
    _current.set(dataclasses.replace(_current.get(), **changes))


def reset_log_context() -> None:
    _current.set(LogContext())


class ContextFilter(logging.Filter):
    """Adds ``record.ctx`` for formats using ``%(ctx)s``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.ctx = _current.get().prefix()
        return True
