"""Agent request/response loop.

States: STARTING → AWAITING_HELLO → SERVING → TERMINATED

  STARTING        HelloAck is written before anything is read
  AWAITING_HELLO  only a Hello is accepted; requests get handshake_required
  SERVING         one Request in, exactly one Response/Error out, same id
  TERMINATED      stream closed or framing lost; nothing more is written

A failing probe is answered with ``Response{ok: false}`` and the session
keeps serving.  A line that is not a valid envelope gets an ``error`` with
id 0; only a lost frame (oversized record, broken stream) ends the session.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Awaitable, Callable, Protocol

from outpost import __version__
from outpost import protocol
from outpost.errors import DecodeError, ProbeError, UnexpectedMessageKind
from outpost.protocol import CapabilityTag, Envelope, MessageKind, Payload, VersionInfo

logger = logging.getLogger(__name__)

ProbeFunc = Callable[[dict], Awaitable[Payload]]


class LineReader(Protocol):
    async def readline(self) -> bytes:
        ...


class RecordWriter(Protocol):
    def write(self, data: bytes) -> Any:
        ...

    async def drain(self) -> None:
        ...


class State(enum.Enum):
    STARTING = "starting"
    AWAITING_HELLO = "awaiting_hello"
    SERVING = "serving"
    TERMINATED = "terminated"


class AgentService:
    """Single authoritative handler for one connected session."""

    def __init__(
        self,
        reader: LineReader,
        writer: RecordWriter,
        probes: dict[CapabilityTag, ProbeFunc] | None = None,
        version: str = __version__,
    ) -> None:
        if probes is None:
            from outpost.agent.probes import DEFAULT_PROBES
            probes = DEFAULT_PROBES
        self._reader = reader
        self._writer = writer
        self._probes = dict(probes)
        self._version = version
        self.state = State.STARTING
        self.client_version: str | None = None
        self.requests_served = 0

    @property
    def version_info(self) -> VersionInfo:
        return VersionInfo(self._version, frozenset(self._probes))

    async def serve(self) -> None:
        """Run the session until the stream closes."""
        try:
            await self._send(protocol.hello_ack(self.version_info))
            self.state = State.AWAITING_HELLO

            while True:
                try:
                    line = await self._reader.readline()
                except (ValueError, asyncio.LimitOverrunError) as exc:
                    logger.error("Record framing lost, terminating: %s", exc)
                    break
                if not line:
                    logger.info("Input closed after %d request(s)", self.requests_served)
                    break
                if not line.strip():
                    continue
                if not line.endswith(protocol.RECORD_TERMINATOR):
                    logger.warning("Discarding unterminated record at end of stream")
                    break

                try:
                    envelope = protocol.decode(line)
                except DecodeError as exc:
                    logger.warning("Undecodable record: %s", exc)
                    await self._send(protocol.error(0, DecodeError.kind, str(exc)))
                    continue

                await self._dispatch(envelope)
        except (ConnectionError, BrokenPipeError) as exc:
            logger.info("Output stream closed: %s", exc)
        finally:
            self.state = State.TERMINATED

    async def _dispatch(self, envelope: Envelope) -> None:
        if envelope.kind is MessageKind.HELLO:
            await self._on_hello(envelope)
            return

        if envelope.kind is not MessageKind.REQUEST:
            await self._send(protocol.error(
                envelope.id, UnexpectedMessageKind.kind,
                f"Agent does not accept {envelope.kind.value} messages",
            ))
            return

        if self.state is not State.SERVING:
            await self._send(protocol.error(
                envelope.id, "handshake_required", "Send hello before any request",
            ))
            return

        try:
            req = protocol.Request.from_payload(envelope.payload)
        except DecodeError as exc:
            await self._send(protocol.error(envelope.id, DecodeError.kind, str(exc)))
            return

        await self._send(await self.handle_request(envelope.id, req))
        self.requests_served += 1

    async def _on_hello(self, envelope: Envelope) -> None:
        if self.state is not State.AWAITING_HELLO:
            await self._send(protocol.error(
                envelope.id, UnexpectedMessageKind.kind, "Hello already received",
            ))
            return
        try:
            body = protocol.Hello.from_payload(envelope.payload)
        except DecodeError as exc:
            await self._send(protocol.error(envelope.id, DecodeError.kind, str(exc)))
            return
        self.client_version = body.client_version
        self.state = State.SERVING
        logger.info("Client %s connected to agent %s", body.client_version, self._version)

    async def handle_request(self, msg_id: int, req: protocol.Request) -> Envelope:
        """Run the probe for *req* and build the reply envelope."""
        try:
            tag = CapabilityTag(req.op)
        except ValueError:
            tag = None
        probe = self._probes.get(tag) if tag is not None else None
        if probe is None:
            return protocol.error(msg_id, "unsupported_operation", f"Unsupported operation: {req.op}")

        try:
            result = await probe(req.params)
        except ProbeError as exc:
            logger.info("Probe %s failed: %s", req.op, exc)
            return protocol.failure(msg_id, req.op, str(exc))
        except Exception as exc:
            logger.exception("Probe %s raised", req.op)
            return protocol.failure(msg_id, req.op, f"Internal error: {exc}")

        return protocol.response(msg_id, req.op, result.to_payload())

    async def _send(self, envelope: Envelope) -> None:
        self._writer.write(protocol.encode(envelope))
        await self._writer.drain()
