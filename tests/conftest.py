"""Shared test fixtures."""

from __future__ import annotations

import hashlib
import hmac
import shutil
import socket
import tempfile
from collections.abc import Iterator
from pathlib import Path

import pytest
from pydantic import SecretBytes

from webhook_listener.config import CommandRule, ListenerConfig

SECRET = b"It's a Secret to Everybody"


def sign(body: bytes, secret: bytes = SECRET) -> str:
    """GitHub-style ``X-Hub-Signature-256`` value for *body*."""
    return "sha256=" + hmac.new(secret, body, hashlib.sha256).hexdigest()


def make_config(*rules: CommandRule, **overrides: object) -> ListenerConfig:
    data: dict[str, object] = {"secret": SecretBytes(SECRET), "commands": rules}
    data.update(overrides)
    return ListenerConfig(**data)  # type: ignore[arg-type]


@pytest.fixture
def short_tmp() -> Iterator[Path]:
    """Short temp dir: UNIX socket paths are limited to ~108 bytes."""
    path = Path(tempfile.mkdtemp(prefix="wl-", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def unix_listener(short_tmp: Path) -> Iterator[socket.socket]:
    """A bound, listening, non-blocking AF_UNIX stream socket."""
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.bind(str(short_tmp / "hook.sock"))
    sock.listen()
    sock.setblocking(False)
    yield sock
    sock.close()
