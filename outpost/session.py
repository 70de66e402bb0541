"""Client side of an agent session.

Wraps a transport :class:`ByteStream` with the record protocol: reads the
agent's HelloAck, answers with Hello, then issues requests strictly one at
a time, correlating each reply by envelope id.
"""

from __future__ import annotations

import asyncio
import logging

from outpost import protocol
from outpost.errors import (
    AgentRequestError,
    AgentUnavailable,
    DecodeError,
    Timeout,
    UnexpectedMessageKind,
)
from outpost.protocol import Envelope, MessageKind, VersionInfo
from outpost.transport.base import ByteStream

logger = logging.getLogger(__name__)


class AgentSession:
    """A live, exclusively owned channel to one agent.

    Use as an async context manager, or call :meth:`close` on every exit
    path; closing releases the underlying SSH process and connection.
    """

    def __init__(self, stream: ByteStream, alias: str = "") -> None:
        self._stream = stream
        self.alias = alias
        self.version: VersionInfo | None = None
        self._next_id = 1
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> "AgentSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._stream.wait_closed()

    # ── Records ───────────────────────────────────────────────────

    async def _read_envelope(self) -> Envelope | None:
        """Next envelope from the agent, or None at end of stream."""
        while True:
            try:
                line = await self._stream.readline()
            except ValueError as exc:
                raise DecodeError(f"Agent record too large: {exc}") from exc
            if not line:
                return None
            if not line.strip():
                continue
            return protocol.decode(line)

    async def _send(self, envelope: Envelope) -> None:
        self._stream.write(protocol.encode(envelope))
        await self._stream.drain()

    def _ended(self, when: str) -> AgentUnavailable:
        info = self._stream.info
        detail = f"; stderr: {info.stderr_tail[-1]}" if info.stderr_tail else ""
        return AgentUnavailable(
            f"Agent stream ended {when} (exit status {info.exit_status}){detail}",
            exit_status=info.exit_status,
        )

    # ── Handshake ─────────────────────────────────────────────────

    async def handshake(self, client_version: str, timeout: float) -> VersionInfo:
        """Wait for HelloAck, reply with Hello and return the agent's VersionInfo."""
        try:
            envelope = await asyncio.wait_for(self._read_envelope(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise Timeout(f"No HelloAck within {timeout:.1f}s") from exc

        if envelope is None:
            raise self._ended("before HelloAck")
        if envelope.kind is not MessageKind.HELLO_ACK:
            raise UnexpectedMessageKind(f"Expected hello_ack as first record, got {envelope.kind.value}")

        ack = protocol.HelloAck.from_payload(envelope.payload)
        await self._send(protocol.hello(0, client_version))
        self.version = ack.version_info()
        logger.debug("handshake: alias=%s agent=%s", self.alias, self.version.version)
        return self.version

    # ── Requests ──────────────────────────────────────────────────

    async def request(self, op: str, params: dict | None = None, timeout: float = 30.0) -> protocol.Response:
        """Send one request and wait for its reply.

        Raises :class:`AgentRequestError` when the agent answers with an
        Error envelope and :class:`Timeout` when no reply arrives in time.
        A reply that arrives after its request timed out carries an old id
        and is discarded by the next call.
        """
        msg_id = self._next_id
        self._next_id += 1
        await self._send(protocol.request(msg_id, op, params))
        try:
            envelope = await asyncio.wait_for(self._await_reply(msg_id), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise Timeout(f"No reply to {op} (id {msg_id}) within {timeout:.1f}s") from exc

        if envelope.kind is MessageKind.ERROR:
            body = protocol.ErrorBody.from_payload(envelope.payload)
            raise AgentRequestError(body.code, body.message)
        if envelope.kind is not MessageKind.RESPONSE:
            raise UnexpectedMessageKind(f"Expected response to {op}, got {envelope.kind.value}")
        return protocol.Response.from_payload(envelope.payload)

    async def _await_reply(self, msg_id: int) -> Envelope:
        while True:
            envelope = await self._read_envelope()
            if envelope is None:
                raise self._ended(f"while waiting for reply {msg_id}")
            if envelope.id == msg_id:
                return envelope
            logger.warning(
                "Discarding stale %s record id=%d (waiting for %d)",
                envelope.kind.value, envelope.id, msg_id,
            )
