"""Transport data types and the interface every transport implements."""

from __future__ import annotations

import hashlib
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

_SHA256_RE = re.compile(r"^([0-9a-fA-F]{64})\b")


@dataclass(frozen=True)
class SSHTarget:
    """Explicit connection parameters for one host alias.

    Passed into every transport call, so concurrent operations against
    different hosts never share credentials or config state.  Unset fields
    fall through to whatever the OpenSSH config in ``config_paths`` (or
    asyncssh's default ``~/.ssh/config``) says for the alias.
    """

    alias: str
    hostname: str | None = None
    username: str | None = None
    port: int | None = None
    client_keys: tuple[str, ...] = ()
    known_hosts: str | None = None
    agent_forwarding: bool = False
    config_paths: tuple[str, ...] = ()
    connect_timeout: float = 10.0

    def connect_kwargs(self) -> dict:
        kwargs: dict = {
            "host": self.hostname or self.alias,
            "agent_forwarding": self.agent_forwarding,
        }
        if self.port:
            kwargs["port"] = self.port
        if self.username:
            kwargs["username"] = self.username
        if self.client_keys:
            kwargs["client_keys"] = list(self.client_keys)
        if self.known_hosts:
            kwargs["known_hosts"] = self.known_hosts
        if self.config_paths:
            kwargs["config"] = list(self.config_paths)
        return kwargs


@dataclass
class CommandResult:
    stdout: str = ""
    stderr: str = ""
    exit_status: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass
class SyncResult:
    remote_path: str
    method: str  # "sftp", "scp", "copy" or "unchanged"
    transferred: int = 0
    checksum: str = ""


@dataclass
class StreamInfo:
    """Diagnostics collected from a session's remote command."""

    exit_status: int | None = None
    stderr_tail: list[str] = field(default_factory=list)


class ByteStream(Protocol):
    """Bidirectional byte pipe to a remote command.  Knows nothing of records."""

    async def readline(self) -> bytes:
        ...

    def write(self, data: bytes) -> None:
        ...

    async def drain(self) -> None:
        ...

    def close(self) -> None:
        ...

    async def wait_closed(self) -> None:
        ...

    @property
    def info(self) -> StreamInfo:
        ...


class Transport(Protocol):
    """The three primitives the deployment layer builds on."""

    async def run_command(
        self, target: SSHTarget, command: str, timeout: float, check: bool = False,
    ) -> CommandResult:
        ...

    async def sync_file(
        self, target: SSHTarget, local_path: Path, remote_path: str, timeout: float,
    ) -> SyncResult:
        ...

    async def open_session(self, target: SSHTarget, remote_command: str, timeout: float) -> ByteStream:
        ...


# ── Helpers shared by transports ──────────────────────────────────


def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 16), b""):
            digest.update(chunk)
    return digest.hexdigest()


def checksum_command(remote_path: str) -> str:
    """Shell snippet printing the SHA-256 of *remote_path*, or nothing."""
    q = shlex.quote(remote_path)
    return f"sha256sum -- {q} 2>/dev/null || shasum -a 256 -- {q} 2>/dev/null || true"


def parse_checksum(output: str) -> str | None:
    match = _SHA256_RE.match(output.strip())
    return match.group(1).lower() if match else None
