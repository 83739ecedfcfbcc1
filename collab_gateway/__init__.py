"""
Collaborative Gateway

A JSON-RPC gateway that fans analysis requests out to spawned participant
processes, runs an optional cross-review pass and synthesizes a consensus.

Modules:
- protocol: Envelopes, line codec, framing and correlation ids
- transport: Duplex byte channels (stdio, subprocess, in-memory)
- endpoint: Pending-call table and inbound dispatch over a transport
- client: Participant client lifecycle (spawn, handshake, calls, teardown)
- registry: One live client per participant identity
- orchestrator: Three-phase collaboration sessions
- consensus: Local and delegated Phase 3 strategies
- gateway: Inbound method dispatch and the stdio server
- config / schemas: Configuration loading and validation
- participant: Reference participant process
"""

from .protocol import (
    PROTOCOL_VERSION,
    GATEWAY_NAME,
    GATEWAY_VERSION,
    ErrorCode,
    ErrorObject,
    Request,
    Response,
    Notification,
    ParseError,
    encode,
    decode,
    LineBuffer,
    IdAllocator,
)

from .transport import (
    StreamTransport,
    open_stdio_transport,
    memory_pipe,
)

from .endpoint import ProtocolEndpoint

from .client import (
    ClientState,
    VALID_CLIENT_TRANSITIONS,
    TERMINAL_STATES,
    LIVE_STATES,
    SpawnSpec,
    ParticipantClient,
)

from .registry import ClientRegistry

from .consensus import (
    LocalConsensus,
    DelegatedConsensus,
)

from .orchestrator import (
    CollaborationSession,
    SessionResult,
    CollaborationOrchestrator,
)

from .gateway import (
    GatewayServer,
    build_gateway,
    serve_stdio,
)

from .config import (
    load_config,
    spawn_spec_provider,
    build_consensus,
)

from .errors import (
    CollabGatewayError,
    ParticipantError,
    SpawnError,
    UnknownParticipant,
    RegistryClosed,
    HandshakeTimeout,
    TransportError,
    TransportClosed,
    CallTimeout,
    RemoteError,
    ClientTerminated,
    ClientNotReady,
    EncodingError,
    DuplicateRequestId,
    InvalidStateTransition,
    ProtocolError,
    ConfigError,
    AllParticipantsFailed,
)

__version__ = GATEWAY_VERSION

__all__ = [
    # Protocol
    'PROTOCOL_VERSION',
    'GATEWAY_NAME',
    'GATEWAY_VERSION',
    'ErrorCode',
    'ErrorObject',
    'Request',
    'Response',
    'Notification',
    'ParseError',
    'encode',
    'decode',
    'LineBuffer',
    'IdAllocator',
    # Transport / endpoint
    'StreamTransport',
    'open_stdio_transport',
    'memory_pipe',
    'ProtocolEndpoint',
    # Clients
    'ClientState',
    'VALID_CLIENT_TRANSITIONS',
    'TERMINAL_STATES',
    'LIVE_STATES',
    'SpawnSpec',
    'ParticipantClient',
    'ClientRegistry',
    # Orchestration
    'LocalConsensus',
    'DelegatedConsensus',
    'CollaborationSession',
    'SessionResult',
    'CollaborationOrchestrator',
    # Gateway
    'GatewayServer',
    'build_gateway',
    'serve_stdio',
    'load_config',
    'spawn_spec_provider',
    'build_consensus',
    # Errors
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
