"""Transports: the only layer that reaches a remote host."""

from outpost.transport.base import (
    ByteStream,
    CommandResult,
    SSHTarget,
    StreamInfo,
    SyncResult,
    Transport,
)
from outpost.transport.local import LocalTransport
from outpost.transport.ssh import SSHTransport

__all__ = [
    "ByteStream",
    "CommandResult",
    "LocalTransport",
    "SSHTarget",
    "SSHTransport",
    "StreamInfo",
    "SyncResult",
    "Transport",
]
