from __future__ import annotations

import math
import os
import shlex
from dataclasses import dataclass
from typing import Optional, Tuple

from .errors import UsageError

RoleCommand = Tuple[str, ...]

DEFAULT_REMOTE_PROGRAM = "socketpipe"
REMOTE_PROGRAM_ENV = "SOCKETPIPE_REMOTE_PROGRAM"
SERVER_FLAG = "-s"


@dataclass(frozen=True)
class RendezvousAddress:
    host: str
    port: int

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 65535:
            raise UsageError(f"port out of range: {self.port}")


@dataclass(frozen=True)
class PipelineConfig:
    input: Optional[RoleCommand] = None
    output: Optional[RoleCommand] = None
    remote: Optional[RoleCommand] = None
    login: Optional[RoleCommand] = None
    batch: bool = False
    timeout: Optional[float] = None
    local_address: Optional[str] = None
    remote_program: RoleCommand = (DEFAULT_REMOTE_PROGRAM,)

    def validate(self) -> "PipelineConfig":
        if not self.remote:
            raise UsageError("must specify remote command")
        if not self.login:
            raise UsageError("must specify remote login method")
        if not self.input and not self.output:
            raise UsageError("must specify a local input or output process")
        if self.timeout is not None and (
            not math.isfinite(self.timeout) or self.timeout <= 0
        ):
            raise UsageError(f"timeout must be a positive number of seconds: {self.timeout}")
        if not self.remote_program:
            raise UsageError("remote program can not be empty")
        return self


def default_remote_program() -> RoleCommand:
    raw = (os.environ.get(REMOTE_PROGRAM_ENV) or "").strip()
    if not raw:
        return (DEFAULT_REMOTE_PROGRAM,)
    return split_remote_program(raw)


def split_remote_program(raw: str) -> RoleCommand:
    try:
        return tuple(shlex.split(raw))
    except ValueError as exc:
        raise UsageError(f"bad remote program: {exc}") from exc


def compose_remote_command(
    config: PipelineConfig, address: RendezvousAddress
) -> list[str]:
    # ssh may re-split these tokens on the far side; they are passed as-is here.
    if not config.login or not config.remote:
        raise UsageError("remote command and login method are required")
    return [
        *config.login,
        *config.remote_program,
        SERVER_FLAG,
        address.host,
        str(address.port),
        *config.remote,
    ]
