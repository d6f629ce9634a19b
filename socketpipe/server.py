"""Remote side of the rendezvous.

Started by the gateway as ``socketpipe -s <address> <port> <command...>``.
It connects back to the client, makes the connection its standard input and
output, and hands over to the remote command. Nothing of socketpipe runs in
this process once the command starts.
"""

from __future__ import annotations

import logging
import os
import re
import socket
import subprocess
from typing import Tuple

from .config import RendezvousAddress
from .errors import ExecutionError, SocketError, UsageError, describe_os_error
from .transport import acquire_transport_socket, enable_keepalive

PORT_RE = re.compile(r"[0-9]+")


def parse_server_arguments(argv: list[str]) -> Tuple[RendezvousAddress, list[str]]:
    if len(argv) < 3:
        raise UsageError("-s expects a host, a port and a command")
    host, port_text, command = argv[0], argv[1], list(argv[2:])
    if not PORT_RE.fullmatch(port_text):
        raise UsageError(f"bad port specification: {port_text}")
    return RendezvousAddress(host, int(port_text)), command


def connect_back(address: RendezvousAddress, logger: logging.Logger) -> socket.socket:
    # No connect timeout.
    try:
        candidates = socket.getaddrinfo(
            address.host, address.port, socket.AF_UNSPEC, socket.SOCK_STREAM
        )
    except socket.gaierror as exc:
        raise SocketError(
            describe_os_error(f"cannot resolve {address.host}", exc)
        ) from exc
    last_error: OSError = OSError(f"no addresses for {address.host}")
    for family, sock_type, proto, _, sockaddr in candidates:
        sock = acquire_transport_socket(family, sock_type, proto)
        try:
            sock.connect(sockaddr)
        except OSError as exc:
            logger.debug("connect(%s) failed.", sockaddr, exc_info=True)
            sock.close()
            last_error = exc
            continue
        try:
            enable_keepalive(sock)
        except SocketError:
            sock.close()
            raise
        logger.info("Connected back to %s:%s", address.host, address.port)
        return sock
    raise SocketError(describe_os_error(f"connect({address.host}) failed", last_error))


def redirect_standard_streams(sock: socket.socket) -> None:
    fd = sock.fileno()
    try:
        os.dup2(fd, 0)
    except OSError as exc:
        raise ExecutionError(describe_os_error("input redirection failed", exc)) from exc
    try:
        os.dup2(fd, 1)
    except OSError as exc:
        raise ExecutionError(describe_os_error("output redirection failed", exc)) from exc


def delegate(command: list[str], logger: logging.Logger) -> int:
    for handler in logger.handlers:
        handler.flush()
    if os.name == "posix":
        try:
            os.execvp(command[0], command)
        except OSError as exc:
            raise ExecutionError(
                describe_os_error(f"exec({command[0]}) failed", exc)
            ) from exc
    try:
        return subprocess.call(command)
    except OSError as exc:
        raise ExecutionError(
            describe_os_error(f"execution of {command[0]} failed", exc)
        ) from exc


def run_server(argv: list[str], logger: logging.Logger) -> int:
    address, command = parse_server_arguments(argv)
    sock = connect_back(address, logger)
    try:
        redirect_standard_streams(sock)
    finally:
        sock.close()
    return delegate(command, logger)
