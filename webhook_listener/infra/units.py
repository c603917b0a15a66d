"""Systemd unit generation for socket-activated deployment."""

from __future__ import annotations

import shutil
import sys
from pathlib import Path

SERVICE_NAME = "webhook-listener"
DEFAULT_SOCKET_PATH = "/run/webhook-listener.sock"


def find_binary() -> str:
    """Path of the installed entry point, falling back to ``python -m``."""
    binary = shutil.which(SERVICE_NAME)
    if binary:
        return binary
    return f"{sys.executable} -m webhook_listener"


def generate_socket_unit(socket_path: str = DEFAULT_SOCKET_PATH) -> str:
    """Generate the ``.socket`` unit that owns the listening UNIX socket."""
    return f"""\
[Unit]
Description=Socket for receiving webhook requests
PartOf={SERVICE_NAME}.service

[Socket]
ListenStream={socket_path}

[Install]
WantedBy=sockets.target
"""


def generate_service_unit(
    binary: str,
    config_path: Path,
    *,
    user: str | None = None,
    group: str | None = None,
) -> str:
    """Generate the ``.service`` unit started on the first connection."""
    identity = ""
    if user:
        identity += f"User={user}\n"
    if group:
        identity += f"Group={group}\n"
    return f"""\
[Unit]
Description=Listening for webhook requests
After=network.target {SERVICE_NAME}.socket
Requires={SERVICE_NAME}.socket

[Service]
Type=simple
ExecStart={binary} {config_path}
{identity}"""
