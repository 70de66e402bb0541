"""Transport against the local machine.

Implements the same three operations as :class:`SSHTransport` with local
subprocesses and file copies.  Relative remote paths resolve against
``root`` (the home directory by default), mirroring how an SSH login
starts in the remote home.  Used for ``--local`` runs.
"""

from __future__ import annotations

import asyncio
import collections
import contextlib
import logging
import os
import shutil
import tempfile
import time
from pathlib import Path

from outpost.errors import CommandFailed, SyncFailed, Timeout, Unreachable
from outpost.protocol import MAX_RECORD_BYTES
from outpost.transport.base import CommandResult, SSHTarget, StreamInfo, SyncResult, file_sha256

logger = logging.getLogger(__name__)


class LocalByteStream:
    """Byte pipe over a local subprocess."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self._closed = False
        self._stderr_tail: collections.deque[str] = collections.deque(maxlen=20)
        self._stderr_task = asyncio.ensure_future(self._pump_stderr())

    async def _pump_stderr(self) -> None:
        assert self._process.stderr is not None
        while True:
            line = await self._process.stderr.readline()
            if not line:
                return
            self._stderr_tail.append(line.decode("utf-8", errors="replace").rstrip())

    @property
    def info(self) -> StreamInfo:
        return StreamInfo(exit_status=self._process.returncode, stderr_tail=list(self._stderr_tail))

    async def readline(self) -> bytes:
        assert self._process.stdout is not None
        return await self._process.stdout.readline()

    def write(self, data: bytes) -> None:
        assert self._process.stdin is not None
        try:
            self._process.stdin.write(data)
        except (ConnectionError, RuntimeError) as exc:
            raise Unreachable(f"Session write failed: {exc}") from exc

    async def drain(self) -> None:
        assert self._process.stdin is not None
        try:
            await self._process.stdin.drain()
        except ConnectionError as exc:
            raise Unreachable(f"Session write failed: {exc}") from exc

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._process.stdin is not None and not self._process.stdin.is_closing():
            self._process.stdin.close()

    async def wait_closed(self) -> None:
        self.close()
        try:
            await asyncio.wait_for(self._process.wait(), timeout=2.0)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                self._process.kill()
            await self._process.wait()
        with contextlib.suppress(asyncio.CancelledError):
            await self._stderr_task


class LocalTransport:
    def __init__(self, root: Path | None = None) -> None:
        self.root = Path(root) if root is not None else Path.home()

    def _resolve(self, remote_path: str) -> Path:
        path = Path(os.path.expanduser(remote_path))
        return path if path.is_absolute() else self.root / path

    async def run_command(
        self, target: SSHTarget, command: str, timeout: float, check: bool = False,
    ) -> CommandResult:
        started = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                cwd=self.root,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise Unreachable(f"Cannot run local shell: {exc}") from exc
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise Timeout(f"Local command timed out after {timeout:.1f}s") from exc

        result = CommandResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_status=proc.returncode if proc.returncode is not None else -1,
        )
        logger.debug(
            "run_command: alias=%s elapsed=%.2fs exit=%s stdout_len=%d stderr_len=%d cmd=%s",
            target.alias, time.monotonic() - started, result.exit_status,
            len(result.stdout), len(result.stderr), command,
        )
        if check and not result.ok:
            raise CommandFailed(
                f"Local command failed (exit {result.exit_status}): {result.stderr.strip()[:300]}",
                exit_status=result.exit_status,
                stderr=result.stderr,
            )
        return result

    async def sync_file(
        self, target: SSHTarget, local_path: Path, remote_path: str, timeout: float,
    ) -> SyncResult:
        source = Path(local_path)
        dest = self._resolve(remote_path)
        digest = file_sha256(source)
        if dest.is_file() and file_sha256(dest) == digest:
            return SyncResult(remote_path, "unchanged", 0, digest)

        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".part")
            try:
                with os.fdopen(fd, "wb") as out, open(source, "rb") as src:
                    shutil.copyfileobj(src, out)
                shutil.copymode(source, tmp)
                os.replace(tmp, dest)
            except BaseException:
                with contextlib.suppress(OSError):
                    os.unlink(tmp)
                raise
        except OSError as exc:
            raise SyncFailed(f"Copy to {dest} failed: {exc}") from exc

        size = source.stat().st_size
        logger.info("sync_file: %s -> %s (%d bytes)", source, dest, size)
        return SyncResult(remote_path, "copy", size, digest)

    async def open_session(self, target: SSHTarget, remote_command: str, timeout: float) -> LocalByteStream:
        try:
            proc = await asyncio.wait_for(
                asyncio.create_subprocess_shell(
                    remote_command,
                    cwd=self.root,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    limit=MAX_RECORD_BYTES,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise Timeout("Local session did not start in time") from exc
        except OSError as exc:
            raise Unreachable(f"Cannot start local session: {exc}") from exc
        logger.debug("open_session: local cmd=%s", remote_command)
        return LocalByteStream(proc)
