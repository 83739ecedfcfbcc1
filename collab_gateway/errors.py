"""
Error taxonomy for the Collaborative Gateway.

Participant-level failures (spawn, handshake, transport, timeout, remote error,
termination) derive from ParticipantError. The orchestrator catches these at its
boundary and records them per participant; only AllParticipantsFailed is meant to
reach the gateway.

Author: Collaborative Gateway Project
License: MIT
"""

from typing import Any, Dict, Optional

__all__ = [
    'CollabGatewayError',
    'ParticipantError',
    'SpawnError',
    'UnknownParticipant',
    'RegistryClosed',
    'HandshakeTimeout',
    'TransportError',
    'TransportClosed',
    'CallTimeout',
    'RemoteError',
    'ClientTerminated',
    'ClientNotReady',
    'EncodingError',
    'DuplicateRequestId',
    'InvalidStateTransition',
    'ProtocolError',
    'ConfigError',
    'AllParticipantsFailed',
]


class CollabGatewayError(Exception):
    """Base class for every error raised by this package."""


# ============================================================================
# PARTICIPANT-LEVEL ERRORS
# ============================================================================

class ParticipantError(CollabGatewayError):
    """
    Failure attributable to a single participant.

    Attributes:
        identity: Participant the failure belongs to (may be None when raised
            below the client layer, e.g. by a bare endpoint)
        kind: Stable short name used in session error maps
    """

    kind = "ParticipantError"

    def __init__(self, message: str, identity: Optional[str] = None):
        self.identity = identity
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'kind': self.kind,
            'message': self.message,
        }


class SpawnError(ParticipantError):
    """The participant process could not be launched."""

    kind = "SpawnError"


class UnknownParticipant(SpawnError):
    """No spawn specification exists for the requested identity."""

    kind = "UnknownParticipant"


class RegistryClosed(SpawnError):
    """The registry has been shut down and no longer creates clients."""

    kind = "RegistryClosed"


class HandshakeTimeout(ParticipantError):
    """The participant did not answer `initialize` within the handshake window."""

    kind = "HandshakeTimeout"


class TransportError(ParticipantError):
    """The byte channel to the participant failed."""

    kind = "TransportError"


class TransportClosed(TransportError):
    """A write was attempted on a channel that is already closed."""

    kind = "TransportClosed"


class CallTimeout(ParticipantError):
    """A call did not receive its response in time."""

    kind = "CallTimeout"

    def __init__(self, message: str, identity: Optional[str] = None,
                 request_id: Any = None, timeout: Optional[float] = None):
        self.request_id = request_id
        self.timeout = timeout
        super().__init__(message, identity)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['timeout'] = self.timeout
        return data


class RemoteError(ParticipantError):
    """The participant answered with an error object."""

    kind = "RemoteError"

    def __init__(self, code: int, message: str, data: Any = None,
                 identity: Optional[str] = None):
        self.code = code
        self.data = data
        super().__init__(message, identity)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['code'] = self.code
        if self.data is not None:
            result['data'] = self.data
        return result


class ClientTerminated(ParticipantError):
    """The client was torn down while (or before) the call was in flight."""

    kind = "ClientTerminated"


class ClientNotReady(ParticipantError):
    """A call was issued before the handshake completed."""

    kind = "ClientNotReady"


# ============================================================================
# PROTOCOL AND PROGRAMMER ERRORS
# ============================================================================

class EncodingError(CollabGatewayError):
    """An envelope could not be serialized (circular or non-JSON values)."""


class DuplicateRequestId(CollabGatewayError, ValueError):
    """A caller-supplied correlation id is already pending or reserved."""

    def __init__(self, request_id: Any):
        self.request_id = request_id
        super().__init__(f"Correlation id {request_id!r} is already in use")


class InvalidStateTransition(CollabGatewayError):
    """A client lifecycle transition that the state machine does not allow."""

    def __init__(self, identity: str, current: Any, target: Any):
        self.identity = identity
        self.current = current
        self.target = target
        super().__init__(f"{identity}: invalid transition {current} -> {target}")


class ProtocolError(CollabGatewayError):
    """
    Raised by request handlers to produce a JSON-RPC error response.

    Attributes:
        code: JSON-RPC error code (see protocol.ErrorCode)
        message: Human readable message
        data: Optional structured detail
    """

    def __init__(self, code: int, message: str, data: Any = None):
        self.code = int(code)
        self.message = message
        self.data = data
        super().__init__(message)


class ConfigError(CollabGatewayError):
    """Configuration file or environment is invalid."""


# ============================================================================
# SESSION-LEVEL ERRORS
# ============================================================================

class AllParticipantsFailed(CollabGatewayError):
    """Phase 1 produced zero successful participants."""

    def __init__(self, errors: Dict[str, Dict[str, Any]]):
        self.errors = errors
        names = ", ".join(sorted(errors)) or "none requested"
        super().__init__(f"All participants failed: {names}")
