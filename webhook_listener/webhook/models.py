"""Webhook request and dispatch result models."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass


@dataclass(frozen=True)
class WebhookRequest:
    """An authenticated-or-not inbound webhook; lives for one request."""

    event: str
    headers: Mapping[str, str]
    body: bytes


@dataclass(frozen=True)
class DispatchResult:
    """Immutable outcome of one dispatched command."""

    event: str
    command: str
    args: tuple[str, ...]
    returncode: int | None
    status: str  # "success" | "error:exit_<n>" | "error:signal_<n>" | "error:spawn"

    @property
    def ok(self) -> bool:
        return self.status == "success"


def status_for_returncode(returncode: int) -> str:
    """Map an asyncio return code (negative when killed by a signal) to a status string."""
    if returncode == 0:
        return "success"
    if returncode < 0:
        return f"error:signal_{-returncode}"
    return f"error:exit_{returncode}"
