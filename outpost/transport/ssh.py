"""SSH transport built on asyncssh.

Every call opens its own connection from the explicit :class:`SSHTarget`
and closes it before returning (sessions close theirs on release).  There
is no pooling and no retry; failures surface as :class:`TransportError`
subclasses and the caller decides what to do.
"""

from __future__ import annotations

import asyncio
import collections
import contextlib
import logging
import time
from pathlib import Path
from typing import AsyncIterator

import asyncssh

from outpost.errors import AuthFailed, CommandFailed, SyncFailed, Timeout, TransportError, Unreachable
from outpost.transport.base import (
    CommandResult,
    SSHTarget,
    StreamInfo,
    SyncResult,
    checksum_command,
    file_sha256,
    parse_checksum,
)

logger = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 20


def map_ssh_error(exc: BaseException, target: SSHTarget) -> TransportError:
    """Translate an asyncssh/socket failure into the transport taxonomy."""
    where = target.alias
    if isinstance(exc, TransportError):
        return exc
    if isinstance(exc, asyncio.TimeoutError):
        return Timeout(f"Timed out talking to {where}")
    if isinstance(exc, asyncssh.PermissionDenied):
        return AuthFailed(f"Authentication failed for {where}: {exc.reason}")
    if isinstance(exc, asyncssh.HostKeyNotVerifiable):
        return AuthFailed(f"Host key for {where} could not be verified: {exc.reason}")
    if isinstance(exc, asyncssh.DisconnectError):
        return Unreachable(f"Disconnected from {where}: {exc.reason}")
    if isinstance(exc, OSError):
        return Unreachable(f"Cannot reach {where}: {exc.strerror or exc}")
    return Unreachable(f"SSH failure for {where}: {exc}")


def _text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class SSHByteStream:
    """Byte pipe over an asyncssh process; owns the connection."""

    def __init__(self, conn: asyncssh.SSHClientConnection, process: asyncssh.SSHClientProcess) -> None:
        self._conn = conn
        self._process = process
        self._closed = False
        self._stderr_tail: collections.deque[str] = collections.deque(maxlen=_STDERR_TAIL_LINES)
        self._stderr_task = asyncio.ensure_future(self._pump_stderr())

    async def _pump_stderr(self) -> None:
        try:
            while True:
                line = await self._process.stderr.readline()
                if not line:
                    return
                text = _text(line).rstrip()
                self._stderr_tail.append(text)
                logger.debug("remote stderr: %s", text)
        except (asyncssh.Error, OSError):
            return

    @property
    def info(self) -> StreamInfo:
        return StreamInfo(exit_status=self._process.exit_status, stderr_tail=list(self._stderr_tail))

    async def readline(self) -> bytes:
        try:
            return await self._process.stdout.readline()
        except (asyncssh.Error, OSError) as exc:
            raise Unreachable(f"Session read failed: {exc}") from exc

    def write(self, data: bytes) -> None:
        try:
            self._process.stdin.write(data)
        except (asyncssh.Error, OSError) as exc:
            raise Unreachable(f"Session write failed: {exc}") from exc

    async def drain(self) -> None:
        try:
            await self._process.stdin.drain()
        except (asyncssh.Error, OSError) as exc:
            raise Unreachable(f"Session write failed: {exc}") from exc

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._process.close()
        self._conn.close()

    async def wait_closed(self) -> None:
        self.close()
        with contextlib.suppress(asyncssh.Error, OSError):
            await self._conn.wait_closed()
        self._stderr_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._stderr_task


class SSHTransport:
    """Run commands, sync files and open sessions through asyncssh."""

    async def _connect(self, target: SSHTarget, timeout: float) -> asyncssh.SSHClientConnection:
        kwargs = target.connect_kwargs()
        logger.debug("ssh connect: alias=%s host=%s", target.alias, kwargs["host"])
        try:
            return await asyncio.wait_for(
                asyncssh.connect(connect_timeout=min(timeout, target.connect_timeout), **kwargs),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, asyncssh.Error, OSError) as exc:
            raise map_ssh_error(exc, target) from exc

    @contextlib.asynccontextmanager
    async def _connection(self, target: SSHTarget, timeout: float) -> AsyncIterator[asyncssh.SSHClientConnection]:
        conn = await self._connect(target, timeout)
        try:
            yield conn
        finally:
            conn.close()
            with contextlib.suppress(asyncssh.Error, OSError):
                await conn.wait_closed()

    # ── Commands ──────────────────────────────────────────────────

    async def run_command(
        self, target: SSHTarget, command: str, timeout: float, check: bool = False,
    ) -> CommandResult:
        started = time.monotonic()
        async with self._connection(target, timeout) as conn:
            try:
                completed = await asyncio.wait_for(conn.run(command, check=False), timeout=timeout)
            except (asyncio.TimeoutError, asyncssh.Error, OSError) as exc:
                raise map_ssh_error(exc, target) from exc

        exit_status = completed.exit_status if completed.exit_status is not None else -1
        result = CommandResult(
            stdout=_text(completed.stdout),
            stderr=_text(completed.stderr),
            exit_status=exit_status,
        )
        logger.debug(
            "run_command: alias=%s elapsed=%.2fs exit=%s stdout_len=%d stderr_len=%d cmd=%s",
            target.alias, time.monotonic() - started, exit_status,
            len(result.stdout), len(result.stderr), command,
        )
        if check and not result.ok:
            raise CommandFailed(
                f"Command failed on {target.alias} (exit {exit_status}): {result.stderr.strip()[:300]}",
                exit_status=exit_status,
                stderr=result.stderr,
            )
        return result

    # ── File sync ─────────────────────────────────────────────────

    async def sync_file(
        self, target: SSHTarget, local_path: Path, remote_path: str, timeout: float,
    ) -> SyncResult:
        """Make *remote_path* a copy of *local_path*.

        Skips the transfer when the remote SHA-256 already matches.  Tries
        SFTP (upload to ``.part`` then rename) and falls back to scp within
        the same call when the SFTP subsystem is unavailable.
        """
        local_path = Path(local_path)
        try:
            digest = file_sha256(local_path)
            size = local_path.stat().st_size
        except OSError as exc:
            raise SyncFailed(f"Cannot read {local_path}: {exc.strerror or exc}") from exc

        async with self._connection(target, timeout) as conn:
            try:
                probe = await asyncio.wait_for(conn.run(checksum_command(remote_path), check=False), timeout)
            except (asyncio.TimeoutError, asyncssh.Error, OSError) as exc:
                raise map_ssh_error(exc, target) from exc
            if parse_checksum(_text(probe.stdout)) == digest:
                logger.info("sync_file: %s:%s already up to date", target.alias, remote_path)
                return SyncResult(remote_path, "unchanged", 0, digest)

            try:
                await asyncio.wait_for(self._sftp_put(conn, local_path, remote_path), timeout)
                method = "sftp"
            except asyncio.TimeoutError as exc:
                raise Timeout(f"Upload to {target.alias} timed out") from exc
            except (asyncssh.SFTPError, asyncssh.ChannelOpenError) as exc:
                logger.info("sync_file: SFTP unavailable on %s (%s), falling back to scp", target.alias, exc)
                try:
                    await asyncio.wait_for(asyncssh.scp(str(local_path), (conn, remote_path)), timeout)
                except asyncio.TimeoutError as scp_exc:
                    raise Timeout(f"Upload to {target.alias} timed out") from scp_exc
                except (asyncssh.Error, OSError) as scp_exc:
                    raise SyncFailed(f"Upload to {target.alias}:{remote_path} failed (sftp, scp): {scp_exc}") from scp_exc
                method = "scp"
            except asyncssh.Error as exc:
                raise map_ssh_error(exc, target) from exc
            except OSError as exc:
                raise SyncFailed(f"Upload to {target.alias}:{remote_path} failed: {exc}") from exc

        logger.info("sync_file: %s -> %s:%s via %s (%d bytes)", local_path, target.alias, remote_path, method, size)
        return SyncResult(remote_path, method, size, digest)

    @staticmethod
    async def _sftp_put(conn: asyncssh.SSHClientConnection, local_path: Path, remote_path: str) -> None:
        partial = remote_path + ".part"
        async with conn.start_sftp_client() as sftp:
            await sftp.put(str(local_path), partial)
            try:
                await sftp.posix_rename(partial, remote_path)
            except asyncssh.SFTPOpUnsupported:
                if await sftp.exists(remote_path):
                    await sftp.remove(remote_path)
                await sftp.rename(partial, remote_path)

    # ── Sessions ──────────────────────────────────────────────────

    async def open_session(self, target: SSHTarget, remote_command: str, timeout: float) -> SSHByteStream:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        conn = await self._connect(target, timeout)
        try:
            process = await asyncio.wait_for(
                conn.create_process(remote_command, encoding=None),
                max(deadline - loop.time(), 0.0),
            )
        except (asyncio.TimeoutError, asyncssh.Error, OSError) as exc:
            conn.close()
            raise map_ssh_error(exc, target) from exc
        logger.debug("open_session: alias=%s cmd=%s", target.alias, remote_command)
        return SSHByteStream(conn, process)
