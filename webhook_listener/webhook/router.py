"""Event routing: match an event name against the configured command rules."""

from __future__ import annotations

from collections.abc import Iterable

from webhook_listener.config import CommandRule


def match_rules(rules: Iterable[CommandRule], event: str) -> list[CommandRule]:
    """Return every rule whose event equals *event*, in configuration order."""
    return [rule for rule in rules if rule.event == event]
