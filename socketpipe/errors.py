from __future__ import annotations

from typing import Optional


class SocketpipeError(Exception):
    exit_code = 2


class UsageError(SocketpipeError):
    exit_code = 1


class AddressResolutionError(SocketpipeError):
    pass


class SocketError(SocketpipeError):
    pass


class ExecutionError(SocketpipeError):
    pass


class AcceptTimeoutError(SocketpipeError, TimeoutError):
    pass


class WaitError(SocketpipeError):
    pass


def describe_os_error(action: str, exc: BaseException) -> str:
    reason: Optional[str] = getattr(exc, "strerror", None) or str(exc) or type(exc).__name__
    return f"{action}: {reason}"
