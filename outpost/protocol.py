"""Outpost wire protocol.

Every message is one envelope, encoded as a compact JSON object on a single
line terminated by ``\\n``::

    {"id": 3, "kind": "request", "payload": {"op": "sys_info", "params": {}}}

Kinds: ``hello``, ``hello_ack``, ``request``, ``response``, ``error``.

The agent speaks first: its first record is always ``hello_ack`` (id 0)
advertising its version and capabilities.  The client then sends ``hello``
and issues requests one at a time; the agent echoes each request ``id`` on
its ``response`` or ``error``.

Compatibility is additive: decoders ignore fields they do not know, and only
a missing *required* field is a decode failure.  Capability tags a newer
agent advertises but this build does not know are dropped silently.
"""

from __future__ import annotations

import dataclasses
import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar, Iterable

from outpost.errors import DecodeError

logger = logging.getLogger(__name__)

MAX_RECORD_BYTES = 4 * 1024 * 1024
RECORD_TERMINATOR = b"\n"


class CapabilityTag(str, enum.Enum):
    SYS_INFO = "sys_info"
    STATIC_CONFIG = "static_config"
    SERVICES_LIST = "services_list"
    CONTAINERS_LIST = "containers_list"
    NET_LISTENERS = "net_listeners"
    PROCESSES_SUMMARY = "processes_summary"
    LIST_DIR = "list_dir"
    # Reserved for streaming operations; no agent answers these yet.
    PROCESSES_STREAM = "processes_stream"
    LOGS_STREAM = "logs_stream"


# The fixed discovery battery, in issue order.
V1_BATTERY: tuple[CapabilityTag, ...] = (
    CapabilityTag.SYS_INFO,
    CapabilityTag.STATIC_CONFIG,
    CapabilityTag.SERVICES_LIST,
    CapabilityTag.CONTAINERS_LIST,
    CapabilityTag.NET_LISTENERS,
    CapabilityTag.PROCESSES_SUMMARY,
)

RESERVED_CAPABILITIES = frozenset({CapabilityTag.PROCESSES_STREAM, CapabilityTag.LOGS_STREAM})


class MessageKind(str, enum.Enum):
    HELLO = "hello"
    HELLO_ACK = "hello_ack"
    REQUEST = "request"
    RESPONSE = "response"
    ERROR = "error"


def parse_capabilities(values: Iterable[Any]) -> frozenset[CapabilityTag]:
    """Map wire strings to tags, dropping ones this build does not know."""
    tags = set()
    for value in values:
        try:
            tags.add(CapabilityTag(value))
        except ValueError:
            logger.debug("Ignoring unknown capability %r", value)
    return frozenset(tags)


@dataclass(frozen=True, eq=False)
class VersionInfo:
    """Agent version plus the capabilities it advertises.

    Two VersionInfo values are equal when their version strings match
    exactly; capability sets are only consulted through :meth:`supports`.
    """

    version: str
    capabilities: frozenset[CapabilityTag] = frozenset()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VersionInfo):
            return NotImplemented
        return self.version == other.version

    def __hash__(self) -> int:
        return hash(self.version)

    def compatible_with(self, expected_version: str) -> bool:
        return self.version == expected_version

    def supports(self, *tags: CapabilityTag) -> bool:
        return set(tags) <= self.capabilities

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "capabilities": sorted(tag.value for tag in self.capabilities),
        }


# ── Envelope ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class Envelope:
    id: int
    kind: MessageKind
    payload: dict = field(default_factory=dict)


def encode(envelope: Envelope) -> bytes:
    """Serialize *envelope* to one newline-terminated record."""
    record = {
        "id": envelope.id,
        "kind": MessageKind(envelope.kind).value,
        "payload": envelope.payload,
    }
    data = json.dumps(record, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return data + RECORD_TERMINATOR


def decode(data: bytes) -> Envelope:
    """Parse exactly one record.  Raises :class:`DecodeError` on any defect."""
    if len(data) > MAX_RECORD_BYTES:
        raise DecodeError(f"Record exceeds {MAX_RECORD_BYTES} bytes")
    if not data.endswith(RECORD_TERMINATOR):
        raise DecodeError("Record is not newline-terminated")
    body = data[: -len(RECORD_TERMINATOR)]
    if RECORD_TERMINATOR in body:
        raise DecodeError("More than one record in buffer")

    try:
        obj = json.loads(body.decode("utf-8"))
    except UnicodeDecodeError as exc:
        raise DecodeError(f"Record is not valid UTF-8: {exc}") from exc
    except ValueError as exc:
        raise DecodeError(f"Record is not valid JSON: {exc}") from exc

    if not isinstance(obj, dict):
        raise DecodeError("Record is not a JSON object")

    msg_id = obj.get("id")
    if isinstance(msg_id, bool) or not isinstance(msg_id, int) or msg_id < 0:
        raise DecodeError(f"Invalid envelope id: {msg_id!r}")

    try:
        kind = MessageKind(obj.get("kind"))
    except ValueError as exc:
        raise DecodeError(f"Unknown envelope kind: {obj.get('kind')!r}") from exc

    payload = obj.get("payload", {})
    if not isinstance(payload, dict):
        raise DecodeError("Envelope payload is not an object")

    return Envelope(id=msg_id, kind=kind, payload=payload)


# ── Typed payloads ────────────────────────────────────────────────


class Payload:
    """Mixin for dataclass payload bodies.

    ``from_payload`` keeps only the fields the dataclass declares and fails
    if a field without a default is absent.  Subclasses with nested
    dataclasses list them in ``_nested`` as ``{field_name: item_type}``.
    """

    _nested: ClassVar[dict[str, type]] = {}

    def to_payload(self) -> dict:
        return dataclasses.asdict(self)  # type: ignore[call-overload]

    @classmethod
    def from_payload(cls, data: Any):
        if not isinstance(data, dict):
            raise DecodeError(f"{cls.__name__} payload must be an object, got {type(data).__name__}")
        declared = dataclasses.fields(cls)  # type: ignore[arg-type]
        known = {f.name: data[f.name] for f in declared if f.name in data}
        missing = [
            f.name for f in declared
            if f.name not in known
            and f.default is dataclasses.MISSING
            and f.default_factory is dataclasses.MISSING
        ]
        if missing:
            raise DecodeError(f"{cls.__name__} payload missing required field(s): {', '.join(missing)}")
        for name, item_type in cls._nested.items():
            if name in known and known[name] is not None:
                items = known[name]
                if not isinstance(items, list):
                    raise DecodeError(f"{cls.__name__}.{name} must be a list")
                known[name] = [item_type.from_payload(item) for item in items]
        return cls(**known)


@dataclass
class Hello(Payload):
    client_version: str


@dataclass
class HelloAck(Payload):
    agent_version: str
    capabilities: list[str] = field(default_factory=list)

    def version_info(self) -> VersionInfo:
        return VersionInfo(self.agent_version, parse_capabilities(self.capabilities))


@dataclass
class Request(Payload):
    op: str
    params: dict = field(default_factory=dict)


@dataclass
class Response(Payload):
    """Answer to one request.  ``ok=False`` carries a per-operation failure."""

    op: str
    ok: bool
    data: dict | None = None
    reason: str | None = None


@dataclass
class ErrorBody(Payload):
    code: str
    message: str = ""


# ── Discovery results ─────────────────────────────────────────────


@dataclass
class SysInfo(Payload):
    os: str
    kernel: str
    arch: str
    uptime_secs: int
    hostname: str


@dataclass
class StaticConfig(Payload):
    cpu_count: int
    mem_total_bytes: int
    os_release: str | None = None


@dataclass
class ServiceInfo(Payload):
    name: str
    active_state: str
    sub_state: str
    description: str | None = None
    enabled: bool | None = None


@dataclass
class ServicesListResponse(Payload):
    services: list[ServiceInfo]
    baseline: str = ""
    # Names of units hidden because they belong to the distribution baseline.
    baseline_skipped: list[str] = field(default_factory=list)

    _nested: ClassVar[dict[str, type]] = {"services": ServiceInfo}

    @property
    def skipped_count(self) -> int:
        return len(self.baseline_skipped)


@dataclass
class ContainerInfo(Payload):
    id: str
    name: str
    image: str
    status: str


@dataclass
class ContainersListResponse(Payload):
    runtime: str
    containers: list[ContainerInfo] = field(default_factory=list)

    _nested: ClassVar[dict[str, type]] = {"containers": ContainerInfo}


@dataclass
class Listener(Payload):
    protocol: str
    address: str
    port: int
    inode: int | None = None


@dataclass
class NetListenersResponse(Payload):
    listeners: list[Listener] = field(default_factory=list)

    _nested: ClassVar[dict[str, type]] = {"listeners": Listener}


@dataclass
class ProcessInfo(Payload):
    pid: int
    name: str
    state: str
    rss_kb: int = 0


@dataclass
class ProcessesSummary(Payload):
    total: int
    running: int = 0
    sleeping: int = 0
    zombie: int = 0
    threads: int = 0
    top: list[ProcessInfo] = field(default_factory=list)

    _nested: ClassVar[dict[str, type]] = {"top": ProcessInfo}


@dataclass
class DirEntry(Payload):
    name: str
    path: str
    is_dir: bool
    size: int | None = None


@dataclass
class ListDirResponse(Payload):
    entries: list[DirEntry] = field(default_factory=list)
    eof: bool = True

    _nested: ClassVar[dict[str, type]] = {"entries": DirEntry}


RESPONSE_TYPES: dict[CapabilityTag, type[Payload]] = {
    CapabilityTag.SYS_INFO: SysInfo,
    CapabilityTag.STATIC_CONFIG: StaticConfig,
    CapabilityTag.SERVICES_LIST: ServicesListResponse,
    CapabilityTag.CONTAINERS_LIST: ContainersListResponse,
    CapabilityTag.NET_LISTENERS: NetListenersResponse,
    CapabilityTag.PROCESSES_SUMMARY: ProcessesSummary,
    CapabilityTag.LIST_DIR: ListDirResponse,
}


# ── Envelope constructors ─────────────────────────────────────────


def hello(msg_id: int, client_version: str) -> Envelope:
    return Envelope(msg_id, MessageKind.HELLO, Hello(client_version).to_payload())


def hello_ack(version: VersionInfo) -> Envelope:
    body = HelloAck(version.version, sorted(tag.value for tag in version.capabilities))
    return Envelope(0, MessageKind.HELLO_ACK, body.to_payload())


def request(msg_id: int, op: str, params: dict | None = None) -> Envelope:
    return Envelope(msg_id, MessageKind.REQUEST, Request(op, params or {}).to_payload())


def response(msg_id: int, op: str, data: dict) -> Envelope:
    return Envelope(msg_id, MessageKind.RESPONSE, Response(op, True, data=data).to_payload())


def failure(msg_id: int, op: str, reason: str) -> Envelope:
    return Envelope(msg_id, MessageKind.RESPONSE, Response(op, False, reason=reason).to_payload())


def error(msg_id: int, code: str, message: str) -> Envelope:
    return Envelope(msg_id, MessageKind.ERROR, ErrorBody(code, message).to_payload())
