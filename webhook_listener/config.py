"""Listener configuration loaded from a JSON file."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SecretBytes,
    ValidationError,
    field_validator,
    model_validator,
)

from webhook_listener.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_MAX_BODY_BYTES = 64 * 1024

OutputPolicy = Literal["inherit", "discard", "log"]

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([a-zA-Z]+)")

_UNIT_SECONDS: dict[str, float] = {
    "ns": 1e-9,
    "nsec": 1e-9,
    "us": 1e-6,
    "usec": 1e-6,
    "ms": 1e-3,
    "msec": 1e-3,
    "s": 1.0,
    "sec": 1.0,
    "secs": 1.0,
    "second": 1.0,
    "seconds": 1.0,
    "m": 60.0,
    "min": 60.0,
    "mins": 60.0,
    "minute": 60.0,
    "minutes": 60.0,
    "h": 3600.0,
    "hr": 3600.0,
    "hrs": 3600.0,
    "hour": 3600.0,
    "hours": 3600.0,
    "d": 86400.0,
    "day": 86400.0,
    "days": 86400.0,
    "w": 604800.0,
    "week": 604800.0,
    "weeks": 604800.0,
}


def parse_duration(text: str) -> float:
    """Parse a humantime-style duration (``"20min"``, ``"1h 30m"``, ``"500ms"``) into seconds.

    Every number must carry a unit. Raises ``ValueError`` on malformed input.
    """
    stripped = text.strip()
    total = 0.0
    pos = 0
    for match in _DURATION_RE.finditer(stripped):
        if stripped[pos : match.start()].strip():
            break
        unit = _UNIT_SECONDS.get(match.group(2))
        if unit is None:
            msg = f"unknown time unit '{match.group(2)}' in duration '{text}'"
            raise ValueError(msg)
        total += float(match.group(1)) * unit
        pos = match.end()
    if pos == 0 or stripped[pos:].strip():
        msg = f"invalid duration '{text}'"
        raise ValueError(msg)
    return total


class CommandRule(BaseModel):
    """An event/command pair. ``command`` runs whenever ``event`` is received."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    event: str
    command: str
    args: tuple[str, ...] = ()


class ListenerConfig(BaseModel):
    """Top-level configuration, immutable once loaded."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    secret_file: Path | None = Field(
        default=None,
        validation_alias=AliasChoices("secret_file", "secret_path"),
    )
    secret: SecretBytes | None = None
    commands: tuple[CommandRule, ...] = ()
    max_idle_time: float | None = None
    max_body_bytes: int = Field(default=DEFAULT_MAX_BODY_BYTES, gt=0)
    command_output: OutputPolicy = "inherit"
    log_level: str = "INFO"

    @field_validator("max_idle_time", mode="before")
    @classmethod
    def _parse_idle_time(cls, value: object) -> object:
        if isinstance(value, str):
            return parse_duration(value)
        return value

    @field_validator("max_idle_time")
    @classmethod
    def _idle_time_positive(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            msg = "max_idle_time must be positive"
            raise ValueError(msg)
        return value

    @model_validator(mode="after")
    def _one_secret_source(self) -> ListenerConfig:
        if self.secret_file is None and self.secret is None:
            msg = "either secret_file or secret is required"
            raise ValueError(msg)
        if self.secret_file is not None and self.secret is not None:
            msg = "secret_file and secret are mutually exclusive"
            raise ValueError(msg)
        return self

    @property
    def secret_bytes(self) -> bytes:
        """Raw shared secret (empty until loaded)."""
        return self.secret.get_secret_value() if self.secret is not None else b""


def load_config(path: Path) -> ListenerConfig:
    """Read, validate and resolve the configuration at *path*.

    The secret file is read as raw bytes, without trimming. Relative paths
    resolve against the working directory of the daemon.
    """
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        msg = f"io error: {exc}"
        raise ConfigError(msg) from exc
    except json.JSONDecodeError as exc:
        msg = f"decoding error: {exc}"
        raise ConfigError(msg) from exc

    try:
        config = ListenerConfig.model_validate(raw)
    except ValidationError as exc:
        msg = f"invalid configuration: {exc}"
        raise ConfigError(msg) from exc

    if config.secret_file is not None:
        if not config.secret_file.is_absolute():
            logger.warning(
                "secret_file is a relative path (%s); it resolves against the working directory",
                config.secret_file,
            )
        try:
            data = config.secret_file.read_bytes()
        except OSError as exc:
            msg = f"io error: cannot read secret file {config.secret_file}: {exc}"
            raise ConfigError(msg) from exc
        config = config.model_copy(update={"secret": SecretBytes(data)})

    if not config.secret_bytes:
        logger.warning("Shared secret is empty; any sender knowing this can sign requests")
    logger.info("Config loaded: %d command rule(s) from %s", len(config.commands), path)
    return config
