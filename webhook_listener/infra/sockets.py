"""Descriptor predicates used to vet sockets inherited from an init process.

Each check takes a raw file descriptor and optional filters; a filter left as
``None`` is not checked. Syscall failures raise
``ActivationError(SYSCALL_FAILED)``.
"""

from __future__ import annotations

import contextlib
import errno
import os
import socket
import stat
import sys
from collections.abc import Iterator

from webhook_listener.errors import ActivationError, ActivationErrorKind

# Darwin does not support SO_ACCEPTCONN at the SOL_SOCKET level.
_ACCEPTCONN_SUPPORTED = hasattr(socket, "SO_ACCEPTCONN") and sys.platform != "darwin"

_INET_FAMILIES = frozenset({socket.AF_INET, socket.AF_INET6})


def _syscall_failed(what: str, exc: OSError) -> ActivationError:
    return ActivationError(ActivationErrorKind.SYSCALL_FAILED, f"{what}: {exc}")


def _fstat(fd: int) -> os.stat_result:
    try:
        return os.fstat(fd)
    except OSError as exc:
        raise _syscall_failed(f"fstat({fd})", exc) from exc


@contextlib.contextmanager
def _borrowed(fd: int) -> Iterator[socket.socket]:
    """Yield a socket object on a duplicate of *fd*; the original stays untouched."""
    try:
        sock = socket.socket(fileno=os.dup(fd))
    except OSError as exc:
        raise _syscall_failed(f"socket({fd})", exc) from exc
    try:
        yield sock
    finally:
        sock.close()


def _is_socket_internal(
    sock: socket.socket,
    socktype: socket.SocketKind | None,
    listening: bool | None,
) -> bool:
    if socktype is not None:
        try:
            typ = sock.getsockopt(socket.SOL_SOCKET, socket.SO_TYPE)
        except OSError as exc:
            raise _syscall_failed("getsockopt(SO_TYPE)", exc) from exc
        if typ != socktype:
            return False

    if listening is not None and _ACCEPTCONN_SUPPORTED:
        try:
            acc = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ACCEPTCONN)
        except OSError as exc:
            if exc.errno != errno.ENOPROTOOPT:
                raise _syscall_failed("getsockopt(SO_ACCEPTCONN)", exc) from exc
        else:
            if bool(acc) != listening:
                return False

    return True


def is_socket(
    fd: int,
    family: socket.AddressFamily | None = None,
    socktype: socket.SocketKind | None = None,
    listening: bool | None = None,
) -> bool:
    """Whether *fd* is a socket; family, type and listening state must match when given."""
    if not stat.S_ISSOCK(_fstat(fd).st_mode):
        return False
    with _borrowed(fd) as sock:
        if not _is_socket_internal(sock, socktype, listening):
            return False
        return family is None or sock.family == family


def is_socket_inet(
    fd: int,
    family: socket.AddressFamily | None = None,
    socktype: socket.SocketKind | None = None,
    listening: bool | None = None,
    port: int | None = None,
) -> bool:
    """Whether *fd* is an Internet socket (IPv4 or IPv6) matching the given filters."""
    if not stat.S_ISSOCK(_fstat(fd).st_mode):
        return False
    with _borrowed(fd) as sock:
        if not _is_socket_internal(sock, socktype, listening):
            return False
        sock_family = sock.family
        if sock_family not in _INET_FAMILIES:
            return False
        if family is not None and sock_family != family:
            return False
        if port is not None:
            try:
                bound_port = sock.getsockname()[1]
            except OSError as exc:
                raise _syscall_failed("getsockname", exc) from exc
            if bound_port != port:
                return False
    return True


def is_socket_unix(
    fd: int,
    socktype: socket.SocketKind | None = None,
    listening: bool | None = None,
    path: str | None = None,  # noqa: ARG001
) -> bool:
    """Whether *fd* is an ``AF_UNIX`` socket matching the given filters.

    Path checking is not supported; *path* is accepted and ignored.
    """
    if not stat.S_ISSOCK(_fstat(fd).st_mode):
        return False
    with _borrowed(fd) as sock:
        if not _is_socket_internal(sock, socktype, listening):
            return False
        return sock.family == socket.AF_UNIX


def is_fifo(fd: int, path: str | None = None) -> bool:
    """Whether *fd* is a FIFO. With *path*, it must also be the same file."""
    fs = _fstat(fd)
    if not stat.S_ISFIFO(fs.st_mode):
        return False
    if path is not None:
        try:
            path_stat = os.stat(path)
        except OSError:
            return False
        return path_stat.st_dev == fs.st_dev and path_stat.st_ino == fs.st_ino
    return True


def is_special(fd: int, path: str | None = None) -> bool:
    """Whether *fd* is a regular file or character device. With *path*, it must match."""
    fs = _fstat(fd)
    if not (stat.S_ISREG(fs.st_mode) or stat.S_ISCHR(fs.st_mode)):
        return False
    if path is not None:
        try:
            path_stat = os.stat(path)
        except OSError:
            return False
        if stat.S_ISREG(fs.st_mode) and stat.S_ISREG(path_stat.st_mode):
            return path_stat.st_dev == fs.st_dev and path_stat.st_ino == fs.st_ino
        if stat.S_ISCHR(fs.st_mode) and stat.S_ISCHR(path_stat.st_mode):
            return path_stat.st_rdev == fs.st_rdev
        return False
    return True
