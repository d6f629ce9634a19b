from __future__ import annotations

import logging
import shlex
import socket
import subprocess
from typing import Optional

from .config import (
    PipelineConfig,
    RendezvousAddress,
    RoleCommand,
    compose_remote_command,
)
from .errors import (
    AcceptTimeoutError,
    AddressResolutionError,
    ExecutionError,
    SocketError,
    describe_os_error,
)
from .lifecycle import GATEWAY, ChildProcess, LifecycleTracker, PipelineResult
from .pipeline import StandardInputBackup, launch_pipeline, spawn_role
from .transport import (
    Connection,
    enable_keepalive,
    listener_port,
    open_listener,
)

# Echoes the client address of the remote login session. Sent as one token;
# ssh hands it to the remote shell verbatim.
ADDRESS_LOOKUP_COMMAND = 'set -- $SSH_CLIENT && printf %s "$1"'


def resolve_local_address(login: RoleCommand, logger: logging.Logger) -> str:
    command = [*login, ADDRESS_LOOKUP_COMMAND]
    logger.info("Looking up local address: %s", shlex.join(command))
    try:
        result = subprocess.run(
            command,
            check=False,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as exc:
        raise ExecutionError(
            describe_os_error(f"execution of {command[0]} failed", exc)
        ) from exc
    tokens = (result.stdout or "").split()
    if result.returncode != 0 or not tokens:
        raise AddressResolutionError(
            f"Error executing [{shlex.join(command)}] to get our IP address "
            f"(exit {result.returncode}, output {result.stdout.strip()!r})"
        )
    logger.info("Remote host sees us as %s", tokens[0])
    return tokens[0]


def spawn_gateway(
    command: list[str], batch: bool, logger: logging.Logger
) -> ChildProcess:
    if batch:
        # Non-interactive login clients flip the blocking mode of an inherited
        # stdout and insist on reading stdin; give them the null device.
        return spawn_role(
            GATEWAY,
            tuple(command),
            logger,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
        )
    return spawn_role(GATEWAY, tuple(command), logger)


def accept_connection(
    listener: socket.socket, timeout: Optional[float], logger: logging.Logger
) -> Connection:
    try:
        listener.settimeout(timeout)
        sock, peer = listener.accept()
    except socket.timeout as exc:
        raise AcceptTimeoutError(
            f"Client connection timeout of {timeout:g}s expired"
        ) from exc
    except OSError as exc:
        raise SocketError(describe_os_error("accept failed", exc)) from exc
    try:
        sock.settimeout(None)
        enable_keepalive(sock)
    except Exception:
        sock.close()
        raise
    logger.info("Accepted connection from %s:%s", peer[0], peer[1])
    return Connection(sock, peer)


def run_client(config: PipelineConfig, logger: logging.Logger) -> PipelineResult:
    config.validate()
    tracker = LifecycleTracker(logger)
    with StandardInputBackup(config.batch, logger) as stdin_backup:
        try:
            host = config.local_address or resolve_local_address(config.login, logger)
            listener = open_listener(logger)
            try:
                address = RendezvousAddress(host, listener_port(listener))
                command = compose_remote_command(config, address)
                tracker.track(spawn_gateway(command, config.batch, logger))
                connection = accept_connection(listener, config.timeout, logger)
            finally:
                listener.close()
            with connection:
                tracker.attach(connection)
                launch_pipeline(config, connection, stdin_backup.source, tracker, logger)
                result = tracker.wait_all()
        except BaseException:
            tracker.terminate_all()
            raise
    logger.info("Pipeline finished with status %s %s", result.exit_status, result.statuses)
    return result
