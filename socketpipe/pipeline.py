from __future__ import annotations

import errno
import logging
import os
import shlex
import subprocess
from typing import Optional

from .config import PipelineConfig, RoleCommand
from .errors import ExecutionError, describe_os_error
from .lifecycle import CONSUMER, PRODUCER, ChildProcess, LifecycleTracker
from .transport import Connection

# A file descriptor, subprocess.DEVNULL, or None to inherit.
StreamSource = Optional[int]


# Slot 0 points at the null device while the context is open; the original
# stdin is kept aside for the producer.
class StandardInputBackup:
    def __init__(self, batch: bool, logger: logging.Logger) -> None:
        self._batch = batch
        self._logger = logger
        self._backup: Optional[int] = None
        self.source: StreamSource = None

    def __enter__(self) -> "StandardInputBackup":
        if not self._batch and os.isatty(0):
            return self
        try:
            self._backup = os.dup(0)
        except OSError as exc:
            if exc.errno != errno.EBADF:
                raise ExecutionError(describe_os_error("stdin backup failed", exc)) from exc
            self._logger.debug("stdin is closed; the producer reads from the null device.")
            self.source = subprocess.DEVNULL
            return self
        try:
            null_fd = os.open(os.devnull, os.O_RDWR)
            try:
                os.dup2(null_fd, 0)
            finally:
                os.close(null_fd)
        except OSError as exc:
            os.close(self._backup)
            self._backup = None
            raise ExecutionError(describe_os_error("detaching stdin failed", exc)) from exc
        self.source = self._backup
        self._logger.debug("stdin detached; backup kept on fd %s.", self._backup)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._backup is None:
            return
        try:
            os.dup2(self._backup, 0)
        finally:
            os.close(self._backup)
            self._backup = None
            self.source = None


def spawn_role(
    role: str,
    command: RoleCommand,
    logger: logging.Logger,
    **streams: StreamSource,
) -> ChildProcess:
    argv = list(command)
    try:
        proc = subprocess.Popen(argv, **streams)
    except (OSError, ValueError) as exc:
        raise ExecutionError(
            describe_os_error(f"execution of {argv[0]} failed", exc)
        ) from exc
    logger.info("Started %s (pid %s): %s", role, proc.pid, shlex.join(argv))
    return ChildProcess(role=role, process=proc)


def launch_pipeline(
    config: PipelineConfig,
    connection: Connection,
    input_source: StreamSource,
    tracker: LifecycleTracker,
    logger: logging.Logger,
) -> None:
    if config.input:
        tracker.track(
            spawn_role(
                PRODUCER,
                config.input,
                logger,
                stdin=input_source,
                stdout=connection.fileno(),
            )
        )
    if config.output:
        tracker.track(
            spawn_role(
                CONSUMER,
                config.output,
                logger,
                stdin=connection.fileno(),
            )
        )
