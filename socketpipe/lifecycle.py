from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

from .errors import WaitError, describe_os_error
from .transport import Connection

GATEWAY = "gateway"
PRODUCER = "producer"
CONSUMER = "consumer"

TERMINATE_GRACE_SECONDS = 5

Waiter = Callable[[int, int], Tuple[int, int]]


@dataclass
class ChildProcess:
    role: str
    process: subprocess.Popen
    exit_status: Optional[int] = None

    @property
    def pid(self) -> int:
        return self.process.pid


@dataclass(frozen=True)
class PipelineResult:
    exit_status: int
    statuses: Dict[str, int] = field(default_factory=dict)


def exit_code_from_status(status: int) -> int:
    if os.WIFEXITED(status):
        return os.WEXITSTATUS(status)
    if os.WIFSIGNALED(status):
        return 128 + os.WTERMSIG(status)
    return 1


def terminate_process(proc: subprocess.Popen, logger: logging.Logger) -> None:
    if proc.poll() is not None:
        return
    try:
        proc.terminate()
        proc.wait(timeout=TERMINATE_GRACE_SECONDS)
    except Exception:
        try:
            proc.kill()
        except Exception:
            logger.debug("Failed to kill process %s.", proc.pid, exc_info=True)


class LifecycleTracker:
    """Waits for every spawned role and closes the connection behind them.

    The producer owns the write direction and the consumer the read
    direction; each is shut down exactly once, when its owner completes.
    The gateway never touches the data directions.
    """

    def __init__(
        self,
        logger: logging.Logger,
        connection: Optional[Connection] = None,
        waiter: Waiter = os.waitpid,
    ) -> None:
        self._logger = logger
        self._connection = connection
        self._waiter = waiter
        self._children: Dict[int, ChildProcess] = {}

    def attach(self, connection: Connection) -> None:
        self._connection = connection

    def track(self, child: ChildProcess) -> ChildProcess:
        self._children[child.pid] = child
        return child

    @property
    def outstanding(self) -> int:
        return sum(1 for child in self._children.values() if child.exit_status is None)

    def find(self, role: str) -> Optional[ChildProcess]:
        for child in self._children.values():
            if child.role == role:
                return child
        return None

    def wait_all(self) -> PipelineResult:
        while self.outstanding:
            try:
                pid, status = self._waiter(-1, 0)
            except OSError as exc:
                raise WaitError(describe_os_error("wait failed", exc)) from exc
            self.record_completion(pid, status)
        return self.result()

    def record_completion(self, pid: int, status: int) -> Optional[ChildProcess]:
        child = self._children.get(pid)
        if child is None or child.exit_status is not None:
            self._logger.debug("Ignoring completion of untracked process %s.", pid)
            return None
        child.exit_status = exit_code_from_status(status)
        # Reaped here; keep Popen from waiting on a pid it no longer owns.
        child.process.returncode = child.exit_status
        self._logger.info(
            "%s (pid %s) exited with status %s.", child.role, pid, child.exit_status
        )
        if child.role == PRODUCER:
            self._require_connection().shutdown_write()
            self._logger.debug("Connection write direction shut down.")
        elif child.role == CONSUMER:
            self._require_connection().shutdown_read()
            self._logger.debug("Connection read direction shut down.")
        return child

    def _require_connection(self) -> Connection:
        if self._connection is None:
            raise WaitError("data role completed before a connection was attached")
        return self._connection

    def result(self) -> PipelineResult:
        authority = self.find(CONSUMER) or self.find(GATEWAY)
        if authority is None or authority.exit_status is None:
            raise WaitError("no exit status available for the pipeline")
        statuses = {
            child.role: child.exit_status
            for child in self._children.values()
            if child.exit_status is not None
        }
        return PipelineResult(exit_status=authority.exit_status, statuses=statuses)

    def terminate_all(self) -> None:
        for child in self._children.values():
            if child.exit_status is None:
                self._logger.info("Terminating %s (pid %s).", child.role, child.pid)
                terminate_process(child.process, self._logger)
