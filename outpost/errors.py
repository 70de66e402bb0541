"""Error taxonomy for Outpost.

Library layers raise these; the deployment manager and discovery
orchestrator turn them into result values for callers.

    OutpostError
      TransportError:   Unreachable, AuthFailed, CommandFailed, Timeout
      ProtocolError:    DecodeError, UnexpectedMessageKind, VersionMismatch,
                        AgentUnavailable, AgentRequestError
      DeploymentError:  SyncFailed, DeploymentVerificationFailed,
                        PermissionSetupFailed, ArtifactUnavailable
      ProbeError        (agent side, one capability)
"""

from __future__ import annotations


class OutpostError(Exception):
    """Base error for all Outpost operations."""


# ── Transport ─────────────────────────────────────────────────────


class TransportError(OutpostError):
    """Raised when the SSH mechanism fails. Never retried automatically."""

    kind = "transport"


class Unreachable(TransportError):
    """Network, DNS or connect failure."""

    kind = "unreachable"


class AuthFailed(TransportError):
    kind = "auth_failed"


class CommandFailed(TransportError):
    """A remote command exited with a non-zero status."""

    kind = "command_failed"

    def __init__(self, message: str, exit_status: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_status = exit_status
        self.stderr = stderr


class Timeout(TransportError):
    kind = "timeout"


# ── Protocol ──────────────────────────────────────────────────────


class ProtocolError(OutpostError):
    kind = "protocol"


class DecodeError(ProtocolError):
    """A record could not be parsed into an envelope or payload."""

    kind = "decode_failure"


class UnexpectedMessageKind(ProtocolError):
    kind = "unexpected_message_kind"


class VersionMismatch(ProtocolError):
    kind = "version_mismatch"

    def __init__(self, expected: str, found: str) -> None:
        super().__init__(f"Agent version {found!r} does not match expected {expected!r}")
        self.expected = expected
        self.found = found


class AgentUnavailable(ProtocolError):
    """The remote command ended before the agent said HelloAck."""

    kind = "agent_unavailable"

    def __init__(self, message: str, exit_status: int | None = None) -> None:
        super().__init__(message)
        self.exit_status = exit_status


class AgentRequestError(ProtocolError):
    """The agent answered a request with an Error envelope."""

    kind = "agent_error"

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


# ── Deployment ────────────────────────────────────────────────────


class DeploymentError(OutpostError):
    kind = "deployment"


class SyncFailed(DeploymentError):
    kind = "sync_failed"


class DeploymentVerificationFailed(DeploymentError):
    """The probe after a completed deploy still failed."""

    kind = "verification_failed"


class PermissionSetupFailed(DeploymentError):
    kind = "permission_setup_failed"


class ArtifactUnavailable(DeploymentError):
    """No local agent artifact exists for the requested target/version."""

    kind = "artifact_unavailable"


# ── Agent side ────────────────────────────────────────────────────


class ProbeError(OutpostError):
    """One discovery probe could not gather its data on this host."""
