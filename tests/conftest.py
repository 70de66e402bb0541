"""pytest configuration and shared fakes for Outpost tests.

No test talks to a real SSH server.  ``InProcessAgentStream`` runs a real
:class:`AgentService` behind an in-memory duplex pipe, and ``FakeTransport``
simulates one remote host: its files, their modes, and the agent that
starts when an installed binary is run with ``--stdio``.
"""

import asyncio
import hashlib
import shlex

import pytest

from outpost.agent.service import AgentService
from outpost.errors import AuthFailed, CommandFailed, SyncFailed, Unreachable
from outpost.protocol import (
    CapabilityTag,
    ContainersListResponse,
    NetListenersResponse,
    ProcessesSummary,
    ServicesListResponse,
    StaticConfig,
    SysInfo,
)
from outpost.transport.base import CommandResult, StreamInfo, SyncResult


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


# ------------------------------------------------------------------ #
# Canned probes
# ------------------------------------------------------------------ #

async def _sys_info(params):
    return SysInfo(os="linux", kernel="6.1.0", arch="x86_64", uptime_secs=3600, hostname="web1")


async def _static_config(params):
    return StaticConfig(cpu_count=4, mem_total_bytes=8 * 1024 ** 3, os_release='ID=debian\n')


async def _services_list(params):
    return ServicesListResponse(services=[], baseline="debian", baseline_skipped=["ssh.service"])


async def _containers_list(params):
    return ContainersListResponse(runtime="docker", containers=[])


async def _net_listeners(params):
    return NetListenersResponse(listeners=[])


async def _processes_summary(params):
    return ProcessesSummary(total=42, running=1, sleeping=41, threads=90)


def canned_probes() -> dict:
    return {
        CapabilityTag.SYS_INFO: _sys_info,
        CapabilityTag.STATIC_CONFIG: _static_config,
        CapabilityTag.SERVICES_LIST: _services_list,
        CapabilityTag.CONTAINERS_LIST: _containers_list,
        CapabilityTag.NET_LISTENERS: _net_listeners,
        CapabilityTag.PROCESSES_SUMMARY: _processes_summary,
    }


@pytest.fixture
def probes():
    return canned_probes()


# ------------------------------------------------------------------ #
# In-memory agent streams
# ------------------------------------------------------------------ #

class _AgentSideWriter:
    def __init__(self, client_reader: asyncio.StreamReader):
        self._client_reader = client_reader

    def write(self, data: bytes) -> None:
        self._client_reader.feed_data(data)

    async def drain(self) -> None:
        pass


class InProcessAgentStream:
    """Client-side ByteStream wired to an AgentService running in a task."""

    def __init__(self, probes=None, version="1.2.0"):
        self._to_agent = asyncio.StreamReader()
        self._to_client = asyncio.StreamReader()
        self.service = AgentService(
            self._to_agent, _AgentSideWriter(self._to_client),
            probes=probes if probes is not None else canned_probes(),
            version=version,
        )
        self.written = bytearray()
        self.closed = False
        self._task = asyncio.ensure_future(self._run())

    async def _run(self):
        try:
            await self.service.serve()
        finally:
            self._to_client.feed_eof()

    @property
    def info(self) -> StreamInfo:
        return StreamInfo(exit_status=0 if self._task.done() else None)

    async def readline(self) -> bytes:
        return await self._to_client.readline()

    def write(self, data: bytes) -> None:
        if self.closed:
            raise Unreachable("stream closed")
        self.written.extend(data)
        self._to_agent.feed_data(data)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._to_agent.feed_eof()

    async def wait_closed(self) -> None:
        self.close()
        await self._task


class ScriptedStream:
    """ByteStream that replays fixed output lines, then EOF."""

    def __init__(self, lines=(), exit_status=None, stderr=()):
        self._lines = list(lines)
        self._exit_status = exit_status
        self._stderr = list(stderr)
        self.written = bytearray()
        self.closed = False

    @property
    def info(self) -> StreamInfo:
        return StreamInfo(exit_status=self._exit_status, stderr_tail=self._stderr)

    async def readline(self) -> bytes:
        if not self._lines:
            return b""
        return self._lines.pop(0)

    def write(self, data: bytes) -> None:
        self.written.extend(data)

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        self.close()


class HangingStream(ScriptedStream):
    """ByteStream whose reads never complete."""

    async def readline(self) -> bytes:
        await asyncio.Event().wait()
        return b""


# ------------------------------------------------------------------ #
# Fake remote host
# ------------------------------------------------------------------ #

def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class FakeTransport:
    """One simulated remote host.

    An installed agent is any executable file whose content is
    ``outpost-agent <version>``; running it with ``--stdio`` starts an
    in-process agent reporting that version.
    """

    def __init__(self, uid=1000, uname="Linux x86_64"):
        self.uid = uid
        self.uname = uname
        self.files: dict[str, bytes] = {}
        self.modes: dict[str, int] = {}
        self.dirs: set[str] = set()
        self.commands: list[str] = []
        self.syncs: list[SyncResult] = []
        self.sessions: list = []
        self.probes = None
        self.failure = None  # exception instance raised by every call
        self.fail_sync = False
        self.fail_chmod = False
        self.agent_broken = False  # installed binaries never answer
        self.corrupt_uploads = False

    def install(self, path: str, version: str, mode: int = 0o700) -> None:
        self.files[path] = f"outpost-agent {version}\n".encode()
        self.modes[path] = mode

    @property
    def remote_writes(self) -> int:
        return sum(1 for s in self.syncs if s.method != "unchanged")

    def _check_reachable(self):
        if self.failure is not None:
            raise self.failure

    async def run_command(self, target, command, timeout, check=False):
        self._check_reachable()
        self.commands.append(command)
        result = self._execute(command)
        if check and not result.ok:
            raise CommandFailed(f"{command} failed", exit_status=result.exit_status, stderr=result.stderr)
        return result

    def _execute(self, command: str) -> CommandResult:
        if command.startswith("id -u"):
            return CommandResult(stdout=f"{self.uid}\n{self.uname}\n")
        if command.startswith("mkdir -p"):
            self.dirs.add(shlex.split(command)[3])
            return CommandResult()
        if command.startswith("chmod 700 -- "):
            path = shlex.split(command)[3]
            if self.fail_chmod:
                return CommandResult(stderr="Operation not permitted", exit_status=1)
            if path not in self.files:
                return CommandResult(stderr="No such file or directory", exit_status=1)
            self.modes[path] = 0o700
            return CommandResult()
        if command.startswith("sha256sum"):
            path = shlex.split(command)[2]
            if path not in self.files:
                return CommandResult()
            return CommandResult(stdout=f"{_sha256(self.files[path])}  {path}\n")
        if command.startswith("if test -x"):
            path = shlex.split(command)[3].rstrip(";")
            if path not in self.files or not self.modes.get(path, 0) & 0o100:
                return CommandResult()
            version = self.files[path].decode().split()[-1]
            return CommandResult(stdout=f"executable\n{version}\n")
        return CommandResult(stderr=f"unknown command: {command}", exit_status=127)

    async def sync_file(self, target, local_path, remote_path, timeout):
        self._check_reachable()
        data = open(local_path, "rb").read()
        digest = _sha256(data)
        if self.fail_sync:
            raise SyncFailed("sftp and scp both failed")
        if _sha256(self.files.get(remote_path, b"")) == digest and remote_path in self.files:
            result = SyncResult(remote_path, "unchanged", 0, digest)
        else:
            self.files[remote_path] = (b"#" if self.corrupt_uploads else b"") + data
            self.modes.setdefault(remote_path, 0o600)
            result = SyncResult(remote_path, "sftp", len(data), digest)
        self.syncs.append(result)
        return result

    async def open_session(self, target, remote_command, timeout):
        self._check_reachable()
        path = shlex.split(remote_command)[0]
        installed = path in self.files and self.modes.get(path, 0) & 0o100
        if not installed or self.agent_broken:
            stream = ScriptedStream(exit_status=127, stderr=[f"sh: 1: {path}: not found"])
        else:
            version = self.files[path].decode().split()[-1]
            stream = InProcessAgentStream(probes=self.probes, version=version)
        self.sessions.append(stream)
        return stream


@pytest.fixture
def fake_host():
    return FakeTransport()


@pytest.fixture
def artifact_root(tmp_path):
    """Artifact cache root holding an ``any`` build of agent 1.2.0."""
    root = tmp_path / "artifacts"
    path = root / "any" / "1.2.0" / "outpost-agent"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"outpost-agent 1.2.0\n")
    return root


@pytest.fixture
def unreachable():
    return Unreachable("Cannot reach web1: Connection refused")


@pytest.fixture
def auth_failed():
    return AuthFailed("Authentication failed for web1: Permission denied")
