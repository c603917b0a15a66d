"""Daemon side of systemd socket activation.

The init process opens the listening socket, passes it down at descriptor 3
onwards and describes it through ``LISTEN_PID``, ``LISTEN_FDS`` and
``LISTEN_FDNAMES``. The checks mirror ``sd_listen_fds(3)``.
"""

from __future__ import annotations

import logging
import os
import re
import socket
from collections.abc import MutableMapping
from dataclasses import dataclass

from webhook_listener.errors import ActivationError, ActivationErrorKind
from webhook_listener.infra.sockets import is_socket_unix

logger = logging.getLogger(__name__)

VAR_PID = "LISTEN_PID"
VAR_FDS = "LISTEN_FDS"
VAR_NAMES = "LISTEN_FDNAMES"

# Number of the first passed file descriptor.
LISTEN_FDS_START = 3

_UNKNOWN_NAME = "unknown"
_INT_RE = re.compile(r"[+-]?[0-9]+")


@dataclass(frozen=True)
class ActivationEnv:
    """Snapshot of the activation variables, taken once at startup."""

    pid: str | None
    fds: str | None
    names: str | None

    @classmethod
    def from_environ(cls, environ: MutableMapping[str, str] | None = None) -> ActivationEnv:
        env = os.environ if environ is None else environ
        return cls(pid=env.get(VAR_PID), fds=env.get(VAR_FDS), names=env.get(VAR_NAMES))


@dataclass(frozen=True)
class InheritedDescriptor:
    """A descriptor handed down by the init process."""

    fd: int
    pid: int
    index: int
    name: str | None = None


def _parse_int(var: str, raw: str | None) -> int:
    if raw is None:
        raise ActivationError(ActivationErrorKind.MISSING_VARIABLE, f"${var} is not set")
    if not _INT_RE.fullmatch(raw):
        raise ActivationError(ActivationErrorKind.NOT_A_NUMBER, f"${var}={raw!r}")
    return int(raw)


def _check_pid(env: ActivationEnv) -> int:
    pid = _parse_int(VAR_PID, env.pid)
    if pid != os.getpid():
        raise ActivationError(
            ActivationErrorKind.DIFFERENT_PROCESS,
            f"${VAR_PID}={pid}, current pid is {os.getpid()}",
        )
    return pid


def _check_count(env: ActivationEnv) -> int:
    count = _parse_int(VAR_FDS, env.fds)
    if count < 0:
        raise ActivationError(ActivationErrorKind.INVALID_VALUE, f"${VAR_FDS}={count}")
    return count


def _set_cloexec(fds: range) -> None:
    for fd in fds:
        try:
            os.set_inheritable(fd, False)
        except OSError as exc:
            raise ActivationError(
                ActivationErrorKind.SYSCALL_FAILED, f"set close-on-exec on fd {fd}: {exc}"
            ) from exc


def clear_activation_env(environ: MutableMapping[str, str] | None = None) -> None:
    """Remove the activation variables so nested supervisors are not confused."""
    env = os.environ if environ is None else environ
    for var in (VAR_PID, VAR_FDS, VAR_NAMES):
        env.pop(var, None)


def _collect(env: ActivationEnv, start: int) -> list[InheritedDescriptor]:
    pid = _check_pid(env)
    count = _check_count(env)
    fds = range(start, start + count)
    _set_cloexec(fds)
    logger.debug("Inherited %d descriptor(s) starting at fd %d", count, start)
    return [InheritedDescriptor(fd=fd, pid=pid, index=i) for i, fd in enumerate(fds)]


def listen_fds(
    unset_environment: bool = True,
    *,
    environ: MutableMapping[str, str] | None = None,
    start: int = LISTEN_FDS_START,
) -> list[InheritedDescriptor]:
    """Return the descriptors passed in by the init process.

    Every inherited descriptor is marked close-on-exec, since the protocol
    leaves them inheritable and they would otherwise leak into spawned
    commands. Removes the activation variables from *environ* when
    *unset_environment* is true. Raises ``ActivationError``.
    """
    descriptors = _collect(ActivationEnv.from_environ(environ), start)
    if unset_environment:
        clear_activation_env(environ)
    return descriptors


def listen_fds_with_names(
    unset_environment: bool = True,
    *,
    environ: MutableMapping[str, str] | None = None,
    start: int = LISTEN_FDS_START,
) -> dict[str, InheritedDescriptor]:
    """Like `listen_fds`, keyed by the names in ``LISTEN_FDNAMES``.

    Without ``LISTEN_FDNAMES`` every descriptor is named ``"unknown"``, so
    only the last one survives in the mapping.
    """
    env = ActivationEnv.from_environ(environ)
    descriptors = _collect(env, start)
    if env.names is None:
        names = [_UNKNOWN_NAME] * len(descriptors)
    else:
        names = env.names.split(":") if descriptors or env.names else []
    if len(names) != len(descriptors):
        raise ActivationError(
            ActivationErrorKind.INVALID_VALUE,
            f"${VAR_NAMES} lists {len(names)} name(s) for {len(descriptors)} descriptor(s)",
        )
    if unset_environment:
        clear_activation_env(environ)
    return {
        name: InheritedDescriptor(fd=d.fd, pid=d.pid, index=d.index, name=name)
        for name, d in zip(names, descriptors, strict=True)
    }


def _fatal(message: str) -> SystemExit:
    logger.error(message)
    logger.error("This tool only works with systemd socket activation.")
    return SystemExit(1)


def claim_listener(
    *,
    environ: MutableMapping[str, str] | None = None,
    start: int = LISTEN_FDS_START,
) -> socket.socket:
    """Take ownership of the single listening socket handed down by systemd.

    The process cannot continue without it: every failure is logged and
    raises ``SystemExit(1)``. The returned socket is non-blocking.
    """
    try:
        descriptors = listen_fds(True, environ=environ, start=start)
    except ActivationError as exc:
        logger.warning("Socket activation failed: %s", exc)
        descriptors = []

    if len(descriptors) != 1:
        amount = "few" if len(descriptors) < 1 else "many"
        raise _fatal(f"Too {amount} sockets passed from systemd ({len(descriptors)})")

    fd = descriptors[0].fd
    try:
        valid = is_socket_unix(fd, socket.SOCK_STREAM, listening=True)
    except ActivationError as exc:
        logger.warning("Could not inspect inherited fd %d: %s", fd, exc)
        valid = False
    if not valid:
        raise _fatal(f"The socket from systemd (fd {fd}) is not a listening streaming UNIX socket")

    listener = socket.socket(fileno=fd)
    listener.setblocking(False)
    logger.info("Acquired listening socket from systemd (fd=%d)", fd)
    return listener
