from __future__ import annotations

import errno
import logging
import socket
from typing import Optional

from .errors import SocketError, describe_os_error

LISTEN_BACKLOG = 1
WILDCARD_HOST = "0.0.0.0"


def acquire_transport_socket(
    family: int = socket.AF_INET,
    sock_type: int = socket.SOCK_STREAM,
    protocol: int = 0,
) -> socket.socket:
    try:
        return socket.socket(family, sock_type, protocol)
    except OSError as exc:
        raise SocketError(describe_os_error("socket allocation failed", exc)) from exc


def enable_keepalive(sock: socket.socket) -> None:
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
    except OSError as exc:
        raise SocketError(
            describe_os_error("can't set KEEPALIVE for socket", exc)
        ) from exc


def open_listener(logger: logging.Logger) -> socket.socket:
    sock = acquire_transport_socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        try:
            sock.bind((WILDCARD_HOST, 0))
        except OSError as exc:
            raise SocketError(
                describe_os_error("bind to local address failed", exc)
            ) from exc
        try:
            sock.listen(LISTEN_BACKLOG)
        except OSError as exc:
            raise SocketError(describe_os_error("listen failed", exc)) from exc
    except SocketError:
        sock.close()
        raise
    logger.info("Listening for the rendezvous on port %s", listener_port(sock))
    return sock


def listener_port(sock: socket.socket) -> int:
    try:
        return sock.getsockname()[1]
    except OSError as exc:
        raise SocketError(describe_os_error("getsockname failed", exc)) from exc


class Connection:
    def __init__(self, sock: socket.socket, peer: Optional[object] = None) -> None:
        self._sock = sock
        self.peer = peer
        self.read_open = True
        self.write_open = True

    def fileno(self) -> int:
        return self._sock.fileno()

    def shutdown_write(self) -> None:
        if not self.write_open:
            return
        self._shutdown(socket.SHUT_WR, "shutdown(SHUT_WR) failed")
        self.write_open = False

    def shutdown_read(self) -> None:
        if not self.read_open:
            return
        self._shutdown(socket.SHUT_RD, "shutdown(SHUT_RD) failed")
        self.read_open = False

    def _shutdown(self, how: int, action: str) -> None:
        try:
            self._sock.shutdown(how)
        except OSError as exc:
            # The peer already tore the connection down; nothing left to close.
            if exc.errno == errno.ENOTCONN:
                return
            raise SocketError(describe_os_error(action, exc)) from exc

    def close(self) -> None:
        self._sock.close()

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
