"""Project-level exception hierarchy."""

from __future__ import annotations

from enum import Enum


class ListenerError(Exception):
    """Base for all webhook-listener exceptions."""


class ConfigError(ListenerError):
    """Configuration file could not be read, decoded or validated."""


class ActivationErrorKind(Enum):
    """Closed set of socket-activation failure modes."""

    MISSING_VARIABLE = "Required environment variable missing or unreadable"
    NOT_A_NUMBER = "Could not parse number in environment variable"
    DIFFERENT_PROCESS = "Environment variables are meant for a different process (pid mismatch)"
    INVALID_VALUE = "Environment variable has an invalid value"
    SYSCALL_FAILED = "Calling system function on socket failed"


class ActivationError(ListenerError):
    """Socket activation handshake failed."""

    def __init__(self, kind: ActivationErrorKind, detail: str = "") -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)
