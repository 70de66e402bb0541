"""Deployment manager: get a compatible agent running on a host.

    Lookup   read the HostRecord for the alias, if any
    Probe    open a session on the remembered (or default) path and require
             HelloAck within the quick-connect timeout
    Decide   on a miss or version mismatch return NeedsDeployment and stop
    Deploy   only when the caller asks: sync the artifact, fix permissions,
             verify the checksum, then Probe exactly once more
    Connected  hand back the live session and record the outcome

Nothing deploys without an explicit :meth:`DeploymentManager.deploy` call.
Library errors raised underneath are turned into result values here, after
the HostRecord has been updated.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
import shlex
import shutil
import tempfile
import zipapp
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Union

from outpost import AGENT_BINARY, PRODUCT, __version__
from outpost.errors import (
    ArtifactUnavailable,
    CommandFailed,
    DeploymentError,
    DeploymentVerificationFailed,
    OutpostError,
    PermissionSetupFailed,
    ProtocolError,
    TransportError,
)
from outpost.hosts import HostRecord, HostStateStore, utc_now
from outpost.protocol import VersionInfo
from outpost.session import AgentSession
from outpost.transport.base import SSHTarget, Transport, checksum_command, file_sha256, parse_checksum

logger = logging.getLogger(__name__)

ANY_TRIPLE = "any"


@dataclass
class DeployTimeouts:
    quick_connect: float = 2.0
    command: float = 15.0
    sync: float = 120.0


# ── Outcomes ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class Missing:
    """No runnable agent answered at the probed path."""

    detail: str = ""


@dataclass(frozen=True)
class Incompatible:
    """An agent answered but with a different version."""

    found: VersionInfo


@dataclass
class Connected:
    session: AgentSession
    version: VersionInfo
    deployed: bool = False
    remote_path: str = ""


@dataclass
class NeedsDeployment:
    alias: str
    reason: Union[Missing, Incompatible]


@dataclass
class ConnectFailed:
    alias: str
    error: OutpostError


@dataclass
class DeployFailed:
    alias: str
    error: OutpostError


ConnectOutcome = Union[Connected, NeedsDeployment, ConnectFailed]
DeployOutcome = Union[Connected, DeployFailed]


@dataclass
class AgentStatus:
    """Point-in-time view of the agent on a host.  Never persisted.

    ``present`` means an executable agent answered ``--version``; a file
    that exists without the execute bit reports ``present=False``.  The
    version comes from ``--version`` alone, so its capability set is empty.
    """

    present: bool
    version: VersionInfo | None = None
    installed_path: str | None = None
    executable: bool = False

    def to_dict(self) -> dict:
        return {
            "present": self.present,
            "version": self.version.version if self.version else None,
            "installed_path": self.installed_path,
            "executable": self.executable,
        }


# ── Remote layout ─────────────────────────────────────────────────


def install_path(version: str, is_root: bool = False) -> str:
    """Where the agent for *version* lives on the remote host.

    The non-root path is relative so it resolves against the login
    directory for both the shell and SFTP.
    """
    if is_root:
        base = f"/usr/local/lib/{PRODUCT}/agent"
    else:
        base = f".local/share/{PRODUCT}/agent"
    return posixpath.join(base, version, AGENT_BINARY)


def agent_command(remote_path: str) -> str:
    path = remote_path if "/" in remote_path else "./" + remote_path
    return f"{shlex.quote(path)} --stdio"


def target_triple(uname: str) -> str:
    """Map ``uname -sm`` output (``Linux x86_64``) to ``linux-x86_64``."""
    parts = uname.split()
    if len(parts) < 2:
        return ANY_TRIPLE
    return f"{parts[0].lower()}-{parts[1].lower()}"


# ── Local artifacts ───────────────────────────────────────────────


class ArtifactCache:
    """Local agent builds keyed by ``<root>/<triple>/<version>/outpost-agent``.

    A build for the ``any`` triple runs on every host with a Python 3
    interpreter.  For this package's own version one is produced on demand
    as a zipapp of the ``outpost`` package.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def path_for(self, triple: str, version: str) -> Path:
        return self.root / triple / version / AGENT_BINARY

    def resolve(self, triple: str, version: str) -> Path:
        for candidate in (triple, ANY_TRIPLE):
            path = self.path_for(candidate, version)
            if path.is_file():
                return path
        if version == __version__:
            return self.build_zipapp()
        raise ArtifactUnavailable(
            f"No agent artifact for {triple} version {version} under {self.root}"
        )

    def build_zipapp(self) -> Path:
        target = self.path_for(ANY_TRIPLE, __version__)
        target.parent.mkdir(parents=True, exist_ok=True)
        package_dir = Path(__file__).resolve().parent

        logger.info("Building agent zipapp %s", target)
        with tempfile.TemporaryDirectory(prefix="outpost-build-") as staging:
            shutil.copytree(
                package_dir,
                Path(staging) / package_dir.name,
                ignore=shutil.ignore_patterns("__pycache__", "*.pyc"),
            )
            partial = target.with_suffix(".part")
            zipapp.create_archive(
                staging,
                target=partial,
                interpreter="/usr/bin/env python3",
                main="outpost.agent.__main__:run",
            )
            partial.replace(target)
        return target


# ── Manager ───────────────────────────────────────────────────────


class DeploymentManager:
    """Turns "I want a working agent on host H" into a live session."""

    def __init__(
        self,
        transport: Transport,
        store: HostStateStore,
        artifacts: ArtifactCache,
        targets: Callable[[str], SSHTarget] | None = None,
        expected_version: str = __version__,
        timeouts: DeployTimeouts | None = None,
    ) -> None:
        self.transport = transport
        self.store = store
        self.artifacts = artifacts
        self._targets = targets or (lambda alias: SSHTarget(alias=alias))
        self.expected_version = expected_version
        self.timeouts = timeouts or DeployTimeouts()

    @classmethod
    def from_config(cls, config, transport: Transport | None = None) -> "DeploymentManager":
        if transport is None:
            from outpost.transport.ssh import SSHTransport
            transport = SSHTransport()
        return cls(
            transport=transport,
            store=HostStateStore(config.state_dir),
            artifacts=ArtifactCache(config.artifact_dir),
            targets=config.target_for,
            timeouts=DeployTimeouts(
                quick_connect=config.quick_connect_timeout,
                command=config.command_timeout,
                sync=config.sync_timeout,
            ),
        )

    def _probe_path(self, record: HostRecord | None) -> str:
        if record and record.remote_path:
            return record.remote_path
        return install_path(self.expected_version)

    async def _probe(self, alias: str, target: SSHTarget, path: str, timeout: float) -> tuple[AgentSession, VersionInfo]:
        # One deadline covers connecting, starting the agent and its HelloAck.
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        stream = await self.transport.open_session(target, agent_command(path), timeout)
        session = AgentSession(stream, alias=alias)
        try:
            version = await session.handshake(self.expected_version, max(deadline - loop.time(), 0.0))
        except BaseException:
            await session.close()
            raise
        return session, version

    # ── Record updates ────────────────────────────────────────────

    def _mark_ok(self, alias: str, path: str) -> None:
        record = self.store.get(alias) or HostRecord(alias=alias, remote_path=path)
        record.last_seen_ok = True
        self.store.put(record)

    def _mark_failed(self, alias: str) -> None:
        record = self.store.get(alias)
        if record is None:
            return
        record.last_seen_ok = False
        self.store.put(record)

    # ── Connect ───────────────────────────────────────────────────

    async def connect(self, alias: str, timeout: float | None = None) -> ConnectOutcome:
        """Probe for a compatible agent.  Never deploys."""
        timeout = self.timeouts.quick_connect if timeout is None else timeout
        target = self._targets(alias)
        record = self.store.get(alias)
        path = self._probe_path(record)

        try:
            session, version = await self._probe(alias, target, path, timeout)
        except TransportError as exc:
            logger.info("connect %s: %s", alias, exc)
            self._mark_failed(alias)
            return ConnectFailed(alias, exc)
        except ProtocolError as exc:
            logger.info("connect %s: no usable agent at %s (%s)", alias, path, exc)
            self._mark_failed(alias)
            return NeedsDeployment(alias, Missing(str(exc)))

        if not version.compatible_with(self.expected_version):
            await session.close()
            logger.info("connect %s: agent %s found, expected %s", alias, version.version, self.expected_version)
            self._mark_failed(alias)
            return NeedsDeployment(alias, Incompatible(version))

        self._mark_ok(alias, path)
        logger.info("connect %s: fast path, agent %s at %s", alias, version.version, path)
        return Connected(session, version, deployed=False, remote_path=path)

    # ── Deploy ────────────────────────────────────────────────────

    async def deploy(self, alias: str) -> DeployOutcome:
        """Install the expected agent version and probe it once.

        Safe to repeat: a host already at this version gets an unchanged
        sync and a fresh session.
        """
        target = self._targets(alias)
        try:
            return await self._deploy(alias, target)
        except OutpostError as exc:
            error = exc
        except OSError as exc:
            error = DeploymentError(f"Local failure while deploying to {alias}: {exc}")
        logger.warning("deploy %s failed: %s", alias, error)
        self._mark_failed(alias)
        return DeployFailed(alias, error)

    async def _deploy(self, alias: str, target: SSHTarget) -> Connected:
        t = self.timeouts
        version = self.expected_version
        logger.info("deploy %s: starting (agent %s)", alias, version)

        ident = await self.transport.run_command(target, "id -u; uname -sm", t.command, check=True)
        lines = ident.stdout.splitlines() + ["", ""]
        is_root = lines[0].strip() == "0"
        triple = target_triple(lines[1])
        try:
            artifact = self.artifacts.resolve(triple, version)
        except OSError as exc:
            raise ArtifactUnavailable(f"Cannot prepare agent artifact for {triple}: {exc}") from exc

        remote_path = install_path(version, is_root)
        remote_dir = posixpath.dirname(remote_path)
        q_dir, q_path = shlex.quote(remote_dir), shlex.quote(remote_path)

        try:
            await self.transport.run_command(
                target, f"mkdir -p -- {q_dir} && chmod 700 -- {q_dir}", t.command, check=True,
            )
        except CommandFailed as exc:
            raise PermissionSetupFailed(f"Cannot prepare {remote_dir} on {alias}: {exc}") from exc

        synced = await self.transport.sync_file(target, artifact, remote_path, t.sync)

        try:
            await self.transport.run_command(target, f"chmod 700 -- {q_path}", t.command, check=True)
        except CommandFailed as exc:
            raise PermissionSetupFailed(f"Cannot make {remote_path} executable on {alias}: {exc}") from exc

        checksum = synced.checksum or file_sha256(artifact)
        if synced.method != "unchanged":
            check = await self.transport.run_command(target, checksum_command(remote_path), t.command)
            remote_sum = parse_checksum(check.stdout)
            if remote_sum is None:
                logger.warning("deploy %s: could not read remote checksum of %s", alias, remote_path)
            elif remote_sum != checksum:
                logger.warning(
                    "deploy %s: checksum mismatch for %s (local %s, remote %s)",
                    alias, remote_path, checksum[:12], remote_sum[:12],
                )

        try:
            session, found = await self._probe(alias, target, remote_path, t.quick_connect)
        except OutpostError as exc:
            raise DeploymentVerificationFailed(f"Agent did not start after deploy to {alias}: {exc}") from exc
        if not found.compatible_with(version):
            await session.close()
            raise DeploymentVerificationFailed(
                f"Deployed agent on {alias} reports {found.version}, expected {version}"
            )

        record = self.store.get(alias) or HostRecord(alias=alias)
        record.last_deployed_version = version
        record.last_deployed_at = utc_now()
        record.remote_path = remote_path
        record.remote_checksum = checksum
        record.last_seen_ok = True
        self.store.put(record)

        logger.info("deploy %s: done via %s, agent %s at %s", alias, synced.method, version, remote_path)
        return Connected(session, found, deployed=True, remote_path=remote_path)

    # ── Conveniences ──────────────────────────────────────────────

    async def ensure(
        self,
        alias: str,
        approve: Callable[[NeedsDeployment], Awaitable[bool]],
    ) -> Union[Connected, NeedsDeployment, ConnectFailed, DeployFailed]:
        """Connect, asking *approve* before deploying when needed.

        A declined deployment returns the NeedsDeployment unchanged.
        """
        outcome = await self.connect(alias)
        if not isinstance(outcome, NeedsDeployment):
            return outcome
        if not await approve(outcome):
            logger.info("deploy %s: declined", alias)
            return outcome
        return await self.deploy(alias)

    async def check(self, alias: str) -> AgentStatus:
        """Ask the agent binary for ``--version`` without starting a session."""
        target = self._targets(alias)
        path = self._probe_path(self.store.get(alias))
        q = shlex.quote(path)
        result = await self.transport.run_command(
            target,
            f"if test -x {q}; then echo executable; {q} --version 2>/dev/null; fi",
            self.timeouts.command,
        )
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        executable = bool(lines) and lines[0] == "executable"
        version = VersionInfo(lines[1]) if executable and len(lines) > 1 else None
        return AgentStatus(
            present=version is not None,
            version=version,
            installed_path=path,
            executable=executable,
        )
