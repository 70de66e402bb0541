"""Discovery orchestrator: run the fixed battery against a live session."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from outpost.errors import DecodeError, ProtocolError, TransportError
from outpost.protocol import RESPONSE_TYPES, V1_BATTERY, CapabilityTag, Payload
from outpost.session import AgentSession

logger = logging.getLogger(__name__)


@dataclass
class CapabilityOutcome:
    """Either a typed payload or the reason it could not be gathered."""

    payload: Payload | None = None
    failure: str | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass
class DiscoveryResult:
    per_capability: dict[CapabilityTag, CapabilityOutcome] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def succeeded(self) -> dict[CapabilityTag, Payload]:
        return {
            tag: outcome.payload
            for tag, outcome in self.per_capability.items()
            if outcome.ok and outcome.payload is not None
        }

    def failed(self) -> dict[CapabilityTag, str]:
        return {tag: outcome.failure for tag, outcome in self.per_capability.items() if outcome.failure is not None}

    def to_dict(self) -> dict:
        results = {}
        for tag, outcome in self.per_capability.items():
            if outcome.ok and outcome.payload is not None:
                results[tag.value] = {"ok": True, "data": outcome.payload.to_payload()}
            else:
                results[tag.value] = {"ok": False, "reason": outcome.failure}
        return {"results": results, "warnings": list(self.warnings)}


class DiscoveryOrchestrator:
    """Issue discovery requests one at a time and collect partial results.

    One capability failing, for any reason, never stops the others from
    being issued and recorded.
    """

    def __init__(self, request_timeout: float = 30.0) -> None:
        self.request_timeout = request_timeout

    async def run(
        self,
        session: AgentSession,
        capabilities: Iterable[CapabilityTag] | None = None,
        params: dict[CapabilityTag, dict] | None = None,
    ) -> DiscoveryResult:
        tags = list(capabilities) if capabilities is not None else list(V1_BATTERY)
        params = params or {}
        result = DiscoveryResult()

        def fail(tag: CapabilityTag, reason: str) -> None:
            result.per_capability[tag] = CapabilityOutcome(failure=reason)
            result.warnings.append(f"{tag.value}: {reason}")

        for tag in tags:
            if tag not in RESPONSE_TYPES:
                fail(tag, "not supported by this client")
                continue
            if session.version is not None and not session.version.supports(tag):
                fail(tag, "not advertised by agent")
                continue

            try:
                response = await session.request(tag.value, params.get(tag), timeout=self.request_timeout)
            except (ProtocolError, TransportError) as exc:
                logger.info("discovery %s on %s failed: %s", tag.value, session.alias or "session", exc)
                fail(tag, str(exc))
                continue

            if not response.ok:
                fail(tag, response.reason or "failed without a reason")
                continue

            try:
                payload = RESPONSE_TYPES[tag].from_payload(response.data or {})
            except DecodeError as exc:
                fail(tag, f"malformed response: {exc}")
                continue
            result.per_capability[tag] = CapabilityOutcome(payload=payload)

        logger.debug(
            "discovery on %s: %d ok, %d failed",
            session.alias or "session", len(result.succeeded()), len(result.failed()),
        )
        return result
