"""Tests for the SSH and local transports."""

from __future__ import annotations

import asyncio
import hashlib
import shlex
import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import asyncssh
import pytest

import outpost
from outpost.errors import AuthFailed, CommandFailed, SyncFailed, Timeout, Unreachable
from outpost.session import AgentSession
from outpost.transport.base import SSHTarget, checksum_command, file_sha256, parse_checksum
from outpost.transport.local import LocalTransport
from outpost.transport.ssh import SSHTransport, map_ssh_error

TARGET = SSHTarget(alias="web1")


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #

class FakeCompleted:
    def __init__(self, stdout="", stderr="", exit_status=0):
        self.stdout = stdout
        self.stderr = stderr
        self.exit_status = exit_status


class FakeSFTP:
    def __init__(self, files, rename_supported=True, put_error=None):
        self.files = files
        self.rename_supported = rename_supported
        self.put_error = put_error
        self.ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def put(self, local, remote):
        self.ops.append(("put", remote))
        if self.put_error is not None:
            raise self.put_error
        with open(local, "rb") as f:
            self.files[remote] = f.read()

    async def posix_rename(self, old, new):
        if not self.rename_supported:
            raise asyncssh.SFTPOpUnsupported("posix-rename not supported")
        self.ops.append(("posix_rename", new))
        self.files[new] = self.files.pop(old)

    async def exists(self, path):
        return path in self.files

    async def remove(self, path):
        self.ops.append(("remove", path))
        del self.files[path]

    async def rename(self, old, new):
        self.ops.append(("rename", new))
        self.files[new] = self.files.pop(old)


class FakeConnection:
    def __init__(self, results=None, sftp=None, sftp_error=None):
        self.results = list(results or [])
        self.commands = []
        self.sftp = sftp
        self.sftp_error = sftp_error
        self.closed = False

    async def run(self, command, check=False):
        self.commands.append(command)
        return self.results.pop(0) if self.results else FakeCompleted()

    def start_sftp_client(self):
        if self.sftp_error is not None:
            raise self.sftp_error
        return self.sftp

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


def _patch_connect(conn):
    return patch.object(asyncssh, "connect", AsyncMock(return_value=conn))


# ------------------------------------------------------------------ #
# Targets and helpers
# ------------------------------------------------------------------ #

class TestSSHTarget:
    def test_minimal_kwargs(self):
        assert TARGET.connect_kwargs() == {"host": "web1", "agent_forwarding": False}

    def test_overrides(self):
        target = SSHTarget(
            alias="web1", hostname="10.0.0.5", username="deploy", port=2222,
            client_keys=("/keys/id_ed25519",), known_hosts="/keys/known_hosts",
            agent_forwarding=True, config_paths=("/etc/ssh/extra",),
        )
        assert target.connect_kwargs() == {
            "host": "10.0.0.5",
            "agent_forwarding": True,
            "port": 2222,
            "username": "deploy",
            "client_keys": ["/keys/id_ed25519"],
            "known_hosts": "/keys/known_hosts",
            "config": ["/etc/ssh/extra"],
        }


class TestChecksumHelpers:
    def test_parse_sha256sum_output(self):
        digest = "a" * 64
        assert parse_checksum(f"{digest}  /path/outpost-agent\n") == digest

    def test_parse_empty(self):
        assert parse_checksum("") is None
        assert parse_checksum("sha256sum: missing: No such file") is None

    def test_command_quotes_path(self):
        cmd = checksum_command("dir with space/agent")
        assert "'dir with space/agent'" in cmd
        assert cmd.endswith("|| true")

    def test_file_sha256(self, tmp_path):
        path = tmp_path / "blob"
        path.write_bytes(b"outpost")
        assert file_sha256(path) == hashlib.sha256(b"outpost").hexdigest()


class TestErrorMapping:
    def test_permission_denied(self):
        assert isinstance(map_ssh_error(asyncssh.PermissionDenied("bad key"), TARGET), AuthFailed)

    def test_host_key(self):
        assert isinstance(map_ssh_error(asyncssh.HostKeyNotVerifiable("changed"), TARGET), AuthFailed)

    def test_disconnect(self):
        exc = asyncssh.ConnectionLost("reset")
        assert isinstance(map_ssh_error(exc, TARGET), Unreachable)

    def test_socket_error(self):
        err = map_ssh_error(ConnectionRefusedError(111, "Connection refused"), TARGET)
        assert isinstance(err, Unreachable)
        assert "Connection refused" in str(err)

    def test_timeout(self):
        assert isinstance(map_ssh_error(asyncio.TimeoutError(), TARGET), Timeout)


# ------------------------------------------------------------------ #
# SSHTransport against a fake asyncssh connection
# ------------------------------------------------------------------ #

class TestSSHTransport:
    @pytest.mark.asyncio
    async def test_run_command(self):
        conn = FakeConnection([FakeCompleted(stdout="1000\n")])
        with _patch_connect(conn):
            result = await SSHTransport().run_command(TARGET, "id -u", timeout=1.0)
        assert result.stdout == "1000\n"
        assert result.ok
        assert conn.closed

    @pytest.mark.asyncio
    async def test_run_command_check(self):
        conn = FakeConnection([FakeCompleted(stderr="denied", exit_status=1)])
        with _patch_connect(conn), pytest.raises(CommandFailed) as info:
            await SSHTransport().run_command(TARGET, "chmod 700 x", timeout=1.0, check=True)
        assert info.value.exit_status == 1
        assert conn.closed

    @pytest.mark.asyncio
    async def test_missing_exit_status(self):
        conn = FakeConnection([FakeCompleted(exit_status=None)])
        with _patch_connect(conn):
            result = await SSHTransport().run_command(TARGET, "true", timeout=1.0)
        assert result.exit_status == -1

    @pytest.mark.asyncio
    async def test_connect_refused(self):
        mock = AsyncMock(side_effect=ConnectionRefusedError(111, "Connection refused"))
        with patch.object(asyncssh, "connect", mock), pytest.raises(Unreachable):
            await SSHTransport().run_command(TARGET, "true", timeout=1.0)

    @pytest.mark.asyncio
    async def test_auth_failure(self):
        mock = AsyncMock(side_effect=asyncssh.PermissionDenied("no keys"))
        with patch.object(asyncssh, "connect", mock), pytest.raises(AuthFailed):
            await SSHTransport().run_command(TARGET, "true", timeout=1.0)

    @pytest.mark.asyncio
    async def test_sync_skips_when_checksum_matches(self, tmp_path):
        local = tmp_path / "outpost-agent"
        local.write_bytes(b"agent")
        digest = hashlib.sha256(b"agent").hexdigest()
        sftp = FakeSFTP({})
        conn = FakeConnection([FakeCompleted(stdout=f"{digest}  x\n")], sftp=sftp)

        with _patch_connect(conn):
            result = await SSHTransport().sync_file(TARGET, local, "a/outpost-agent", timeout=1.0)

        assert result.method == "unchanged"
        assert result.transferred == 0
        assert sftp.ops == []

    @pytest.mark.asyncio
    async def test_sync_uploads_part_then_renames(self, tmp_path):
        local = tmp_path / "outpost-agent"
        local.write_bytes(b"agent")
        sftp = FakeSFTP({})
        conn = FakeConnection(sftp=sftp)

        with _patch_connect(conn):
            result = await SSHTransport().sync_file(TARGET, local, "a/outpost-agent", timeout=1.0)

        assert result.method == "sftp"
        assert result.transferred == 5
        assert sftp.ops == [("put", "a/outpost-agent.part"), ("posix_rename", "a/outpost-agent")]
        assert sftp.files == {"a/outpost-agent": b"agent"}

    @pytest.mark.asyncio
    async def test_sync_rename_fallback(self, tmp_path):
        local = tmp_path / "outpost-agent"
        local.write_bytes(b"new")
        sftp = FakeSFTP({"a/outpost-agent": b"old"}, rename_supported=False)
        conn = FakeConnection(sftp=sftp)

        with _patch_connect(conn):
            await SSHTransport().sync_file(TARGET, local, "a/outpost-agent", timeout=1.0)

        assert sftp.files == {"a/outpost-agent": b"new"}
        assert ("remove", "a/outpost-agent") in sftp.ops

    @pytest.mark.asyncio
    async def test_sync_falls_back_to_scp(self, tmp_path):
        local = tmp_path / "outpost-agent"
        local.write_bytes(b"agent")
        conn = FakeConnection(sftp_error=asyncssh.ChannelOpenError(1, "subsystem request failed"))
        scp = AsyncMock()

        with _patch_connect(conn), patch.object(asyncssh, "scp", scp):
            result = await SSHTransport().sync_file(TARGET, local, "a/outpost-agent", timeout=1.0)

        assert result.method == "scp"
        scp.assert_awaited_once_with(str(local), (conn, "a/outpost-agent"))

    @pytest.mark.asyncio
    async def test_sync_fails_when_both_fail(self, tmp_path):
        local = tmp_path / "outpost-agent"
        local.write_bytes(b"agent")
        conn = FakeConnection(sftp_error=asyncssh.ChannelOpenError(1, "subsystem request failed"))
        scp = AsyncMock(side_effect=asyncssh.SFTPFailure("scp: permission denied"))

        with _patch_connect(conn), patch.object(asyncssh, "scp", scp), pytest.raises(SyncFailed):
            await SSHTransport().sync_file(TARGET, local, "a/outpost-agent", timeout=1.0)

    @pytest.mark.asyncio
    async def test_sync_connection_lost_during_upload(self, tmp_path):
        local = tmp_path / "outpost-agent"
        local.write_bytes(b"agent")
        sftp = FakeSFTP({}, put_error=asyncssh.ConnectionLost("Connection lost"))
        conn = FakeConnection(sftp=sftp)

        with _patch_connect(conn), pytest.raises(Unreachable, match="Connection lost"):
            await SSHTransport().sync_file(TARGET, local, "a/outpost-agent", timeout=1.0)
        assert conn.closed

    @pytest.mark.asyncio
    async def test_sync_unreadable_local_file(self, tmp_path):
        conn = FakeConnection(sftp=FakeSFTP({}))
        with _patch_connect(conn), pytest.raises(SyncFailed, match="Cannot read"):
            await SSHTransport().sync_file(TARGET, tmp_path / "missing", "a/outpost-agent", timeout=1.0)


# ------------------------------------------------------------------ #
# LocalTransport
# ------------------------------------------------------------------ #

class TestLocalTransport:
    @pytest.mark.asyncio
    async def test_run_command_in_root(self, tmp_path):
        result = await LocalTransport(tmp_path).run_command(TARGET, "pwd", timeout=5.0)
        assert Path(result.stdout.strip()).resolve() == tmp_path.resolve()

    @pytest.mark.asyncio
    async def test_run_command_check(self, tmp_path):
        with pytest.raises(CommandFailed):
            await LocalTransport(tmp_path).run_command(TARGET, "exit 3", timeout=5.0, check=True)

    @pytest.mark.asyncio
    async def test_run_command_timeout(self, tmp_path):
        with pytest.raises(Timeout):
            await LocalTransport(tmp_path).run_command(TARGET, "sleep 5", timeout=0.1)

    @pytest.mark.asyncio
    async def test_sync_copy_then_unchanged(self, tmp_path):
        src = tmp_path / "src"
        src.write_bytes(b"agent")
        transport = LocalTransport(tmp_path / "home")

        first = await transport.sync_file(TARGET, src, ".local/agent/outpost-agent", timeout=5.0)
        second = await transport.sync_file(TARGET, src, ".local/agent/outpost-agent", timeout=5.0)

        assert first.method == "copy"
        assert second.method == "unchanged"
        assert (tmp_path / "home/.local/agent/outpost-agent").read_bytes() == b"agent"

    @pytest.mark.asyncio
    async def test_open_session_pipes_bytes(self, tmp_path):
        stream = await LocalTransport(tmp_path).open_session(TARGET, "cat", timeout=5.0)
        stream.write(b"ping\n")
        await stream.drain()
        assert await stream.readline() == b"ping\n"
        await stream.wait_closed()
        assert stream.info.exit_status == 0

    @pytest.mark.asyncio
    async def test_agent_session_carries_large_records(self, tmp_path):
        listing = tmp_path / "many"
        listing.mkdir()
        for i in range(1500):
            (listing / f"file-{i:05d}.txt").touch()

        package_root = Path(outpost.__file__).resolve().parent.parent
        command = (
            f"PYTHONPATH={shlex.quote(str(package_root))} "
            f"{shlex.quote(sys.executable)} -m outpost.agent --stdio"
        )
        stream = await LocalTransport(tmp_path).open_session(TARGET, command, timeout=5.0)
        async with AgentSession(stream, alias="local") as session:
            await session.handshake(outpost.__version__, timeout=10.0)
            response = await session.request("list_dir", {"path": str(listing)}, timeout=10.0)
            follow_up = await session.request("list_dir", {"path": str(listing), "max": 1}, timeout=10.0)

        assert response.ok
        assert len(response.data["entries"]) == 1500
        assert response.data["eof"] is True
        assert [e["name"] for e in follow_up.data["entries"]] == ["file-00000.txt"]
