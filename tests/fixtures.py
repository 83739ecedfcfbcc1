"""
Test fixtures for collab_gateway testing.

Provides spawn specs for the real participant processes, in-process fakes for
the registry and clients, and helpers for driving a raw protocol peer.
"""

import asyncio
import json
import os
import sys
from typing import Any, Callable, Dict, List, Optional

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, ROOT)

from collab_gateway.client import ClientState, SpawnSpec
from collab_gateway.errors import UnknownParticipant
from collab_gateway.protocol import LineBuffer, decode
from collab_gateway.transport import StreamTransport

STUB_PARTICIPANT = os.path.join(os.path.dirname(os.path.abspath(__file__)), "stub_participant.py")


# ============================================================================
# SPAWN SPECS
# ============================================================================

def stub_spec(*flags: str, **overrides) -> SpawnSpec:
    """
    Spawn spec for tests/stub_participant.py.

    Args:
        flags: Command-line flags for the stub (e.g. "--no-handshake")
        overrides: SpawnSpec fields (short timeouts by default)
    """
    values = dict(handshake_timeout=5.0, call_timeout=5.0, grace_period=1.0, cwd=ROOT)
    values.update(overrides)
    return SpawnSpec(command=sys.executable, args=[STUB_PARTICIPANT, *flags], **values)


def participant_spec(persona: str = "alpha", delay: float = 0.0, **overrides) -> SpawnSpec:
    """Spawn spec for the bundled reference participant."""
    args = ["-m", "collab_gateway.participant", "--persona", persona]
    if delay:
        args += ["--delay", str(delay)]
    values = dict(handshake_timeout=10.0, call_timeout=10.0, grace_period=2.0, cwd=ROOT)
    values.update(overrides)
    return SpawnSpec(command=sys.executable, args=args, **values)


# ============================================================================
# FAKE CLIENT / REGISTRY
# ============================================================================

class FakeClient:
    """
    In-process stand-in for ParticipantClient.

    Args:
        identity: Participant identity
        spec: SpawnSpec (only style/tool are consulted)
        on_terminated: Registry hook, called once on close/kill
        handler: async or plain (method, params) -> result; may raise
        start_delay: Seconds start() takes
        start_error: Exception start() raises
        close_delay: Seconds close() takes (kill() is immediate)
    """

    def __init__(self, identity: str, spec: Optional[SpawnSpec] = None, on_terminated=None,
                 handler: Optional[Callable] = None, start_delay: float = 0.0,
                 start_error: Optional[BaseException] = None, close_delay: float = 0.0):
        self.identity = identity
        self.spec = spec or SpawnSpec(command="fake")
        self.on_terminated = on_terminated
        self.handler = handler
        self.start_delay = start_delay
        self.start_error = start_error
        self.close_delay = close_delay
        self.state = ClientState.SPAWNING
        self.calls: List[tuple] = []
        self.killed = False
        self._terminated = asyncio.Event()

    @property
    def is_live(self) -> bool:
        return self.state in (ClientState.READY, ClientState.IN_USE)

    @property
    def is_terminal(self) -> bool:
        return self.state in (ClientState.CLOSED, ClientState.FAILED)

    async def start(self):
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.start_error is not None:
            self._finish(ClientState.FAILED)
            raise self.start_error
        self.state = ClientState.READY
        return self

    async def call(self, method: str, params: Any = None, timeout: Optional[float] = None) -> Any:
        self.calls.append((method, params, timeout))
        if self.handler is None:
            return {"identity": self.identity, "method": method}
        result = self.handler(method, params)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    async def close(self):
        if self.is_terminal:
            return
        self.state = ClientState.CLOSING
        if self.close_delay:
            # kill() cuts the wait short
            try:
                await asyncio.wait_for(self._terminated.wait(), self.close_delay)
            except asyncio.TimeoutError:
                pass
        if not self.is_terminal:
            self._finish(ClientState.CLOSED)

    async def kill(self):
        self.killed = True
        if not self.is_terminal:
            self._finish(ClientState.FAILED)

    def crash(self):
        """Simulate an unexpected process exit."""
        self._finish(ClientState.FAILED)

    async def wait_closed(self):
        await self._terminated.wait()

    def info(self) -> Dict[str, Any]:
        return {'identity': self.identity, 'state': self.state.value}

    def _finish(self, state: ClientState):
        self.state = state
        self._terminated.set()
        if self.on_terminated is not None:
            self.on_terminated(self)


class FakeRegistry:
    """
    Registry stand-in for orchestrator tests.

    Args:
        handlers: identity -> (method, params) handler for that participant's client
        specs: identity -> SpawnSpec (defaults to a native-style spec)
        create_errors: identity -> list of exceptions raised by successive
            get_or_create calls before a client is handed out
    """

    def __init__(self, handlers: Optional[Dict[str, Callable]] = None,
                 specs: Optional[Dict[str, SpawnSpec]] = None,
                 create_errors: Optional[Dict[str, List[BaseException]]] = None):
        self.handlers = handlers or {}
        self.specs = specs or {}
        self.create_errors = {k: list(v) for k, v in (create_errors or {}).items()}
        self.clients: Dict[str, FakeClient] = {}
        self.requests: List[str] = []
        self.closed = False

    async def get_or_create(self, identity: str, spawn_spec=None):
        self.requests.append(identity)
        pending = self.create_errors.get(identity)
        if pending:
            raise pending.pop(0)
        if identity not in self.handlers and identity not in self.specs:
            raise UnknownParticipant(f"Unknown participant: {identity}", identity)
        client = self.clients.get(identity)
        if client is None or not client.is_live:
            client = FakeClient(identity, self.specs.get(identity), handler=self.handlers.get(identity))
            await client.start()
            self.clients[identity] = client
        return client

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {identity: client.info() for identity, client in self.clients.items()}

    async def close_all(self, deadline=None):
        self.closed = True
        closed = list(self.clients)
        self.clients.clear()
        return {"closed": closed, "killed": []}


def native_handler(identity: str):
    """Handler answering analyze/review/synthesize with small structured results."""
    def handle(method: str, params: Any) -> Any:
        if method == "analyze":
            return {"by": identity, "task": params["task"]}
        if method == "review":
            return {"by": identity, "peers": sorted(params["peers"])}
        if method == "synthesize":
            return {"by": identity, "results": sorted(params["results"])}
        raise AssertionError(f"unexpected method {method}")
    return handle


def failing_handler(error: BaseException):
    def handle(method: str, params: Any) -> Any:
        raise error
    return handle


# ============================================================================
# RAW PROTOCOL PEER
# ============================================================================

class BufferWriter:
    """StreamWriter stand-in that collects written bytes; reads stay independent."""

    def __init__(self):
        self.data = bytearray()
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("writer closed")
        self.data.extend(data)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    def messages(self) -> List[Any]:
        return [decode(line) for line in bytes(self.data).splitlines() if line.strip()]


def half_open_transport(name: str = "half-open"):
    """A StreamTransport whose read side the test feeds (and ends) directly."""
    reader = asyncio.StreamReader()
    writer = BufferWriter()
    return StreamTransport(reader, writer, name=name), reader, writer


class RawPeer:
    """
    Reads decoded envelopes from one side of a memory pipe and writes raw lines.

    Used to play the far end of a conversation byte-for-byte.
    """

    def __init__(self, transport: StreamTransport):
        self.transport = transport
        self.messages: asyncio.Queue = asyncio.Queue()
        self._buffer = LineBuffer()
        self.closed = asyncio.Event()
        transport.start(self._on_data, on_close=self.closed.set)

    def _on_data(self, chunk: bytes) -> None:
        for line in self._buffer.feed(chunk):
            self.messages.put_nowait(decode(line))

    async def next(self, timeout: float = 2.0):
        return await asyncio.wait_for(self.messages.get(), timeout)

    async def send(self, message: Any) -> None:
        if isinstance(message, (dict, list)):
            message = json.dumps(message)
        if isinstance(message, str):
            message = message.encode('utf-8')
        if not message.endswith(b"\n"):
            message += b"\n"
        await self.transport.write(message)
