"""Rendezvous TCP pipelines between local processes and a remote command."""

from .config import PipelineConfig, RendezvousAddress
from .errors import (
    AcceptTimeoutError,
    AddressResolutionError,
    ExecutionError,
    SocketError,
    SocketpipeError,
    UsageError,
    WaitError,
)
from .lifecycle import PipelineResult
from .rendezvous import run_client
from .server import run_server

__version__ = "1.0.0"

__all__ = [
    "AcceptTimeoutError",
    "AddressResolutionError",
    "ExecutionError",
    "PipelineConfig",
    "PipelineResult",
    "RendezvousAddress",
    "SocketError",
    "SocketpipeError",
    "UsageError",
    "WaitError",
    "run_client",
    "run_server",
]
