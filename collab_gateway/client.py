"""
Participant Client Module

One ParticipantClient wraps one spawned child process, its StreamTransport and
its ProtocolEndpoint, and walks the lifecycle state machine:

    SPAWNING -> HANDSHAKING -> READY <-> IN_USE -> CLOSING -> CLOSED
         \\            \\          \\        \\          \\
          +------------+----------+--------+----------+--> FAILED

Readiness is decided by the initialize request/response pair only; the child's
stderr is drained and logged but never inspected.

Teardown (explicit close, unexpected exit, fatal transport error) resolves all
in-flight calls with ClientTerminated, closes stdin, sends SIGTERM and escalates
to SIGKILL after the grace period.

Author: Collaborative Gateway Project
License: MIT
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .endpoint import ProtocolEndpoint
from .errors import (
    CallTimeout,
    ClientNotReady,
    ClientTerminated,
    HandshakeTimeout,
    InvalidStateTransition,
    ParticipantError,
    RemoteError,
    SpawnError,
    TransportClosed,
    TransportError,
)
from .protocol import GATEWAY_NAME, GATEWAY_VERSION, PROTOCOL_VERSION
from .transport import StreamTransport

logger = logging.getLogger(__name__)

__all__ = [
    'DEFAULT_HANDSHAKE_TIMEOUT',
    'DEFAULT_CALL_TIMEOUT',
    'DEFAULT_GRACE_PERIOD',
    'ClientState',
    'VALID_CLIENT_TRANSITIONS',
    'TERMINAL_STATES',
    'LIVE_STATES',
    'SpawnSpec',
    'ParticipantClient',
]

# ============================================================================
# CONFIGURATION DEFAULTS (seconds)
# ============================================================================

DEFAULT_HANDSHAKE_TIMEOUT = 15.0
DEFAULT_CALL_TIMEOUT = 30.0
DEFAULT_GRACE_PERIOD = 5.0

STDERR_CHUNK_SIZE = 4096


# ============================================================================
# LIFECYCLE STATE MACHINE
# ============================================================================

class ClientState(str, Enum):
    """
    Lifecycle states of a participant client.

    States:
        SPAWNING: Process launch requested
        HANDSHAKING: initialize sent, waiting for its response
        READY: Idle, accepting calls
        IN_USE: One or more calls in flight
        CLOSING: Teardown in progress
        CLOSED: Torn down after an explicit close
        FAILED: Torn down after a failure (spawn, handshake, crash)
    """
    SPAWNING = "spawning"
    HANDSHAKING = "handshaking"
    READY = "ready"
    IN_USE = "in_use"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


VALID_CLIENT_TRANSITIONS: Dict[ClientState, List[ClientState]] = {
    ClientState.SPAWNING: [ClientState.HANDSHAKING, ClientState.CLOSING, ClientState.FAILED],
    ClientState.HANDSHAKING: [ClientState.READY, ClientState.CLOSING, ClientState.FAILED],
    ClientState.READY: [ClientState.IN_USE, ClientState.CLOSING, ClientState.FAILED],
    ClientState.IN_USE: [ClientState.READY, ClientState.CLOSING, ClientState.FAILED],
    ClientState.CLOSING: [ClientState.CLOSED, ClientState.FAILED],
    ClientState.CLOSED: [],  # Terminal
    ClientState.FAILED: [],  # Terminal
}

TERMINAL_STATES = frozenset({ClientState.CLOSED, ClientState.FAILED})
LIVE_STATES = frozenset({ClientState.READY, ClientState.IN_USE})


@dataclass
class SpawnSpec:
    """
    How to launch and talk to one participant.

    Attributes:
        command: Executable to run
        args: Command-line arguments
        env: Extra environment variables, layered over os.environ
        cwd: Working directory for the child (None inherits ours)
        handshake_timeout: Seconds allowed for the initialize round trip
        call_timeout: Default per-call timeout in seconds
        grace_period: Seconds between SIGTERM and SIGKILL on teardown
        style: 'native' (analyze/review/synthesize methods) or 'mcp' (tools/call)
        tool: MCP tool name, required when style is 'mcp'
    """
    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT
    call_timeout: float = DEFAULT_CALL_TIMEOUT
    grace_period: float = DEFAULT_GRACE_PERIOD
    style: str = "native"
    tool: Optional[str] = None

    def argv(self) -> List[str]:
        return [self.command, *self.args]

    def build_env(self) -> Dict[str, str]:
        merged = dict(os.environ)
        merged.update(self.env)
        return merged


TerminatedCallback = Callable[['ParticipantClient'], None]


class ParticipantClient:
    """
    Stateful wrapper around one spawned participant process.

    Usage:
        client = ParticipantClient("alpha", spec, on_terminated=registry_hook)
        await client.start()            # SPAWNING -> HANDSHAKING -> READY
        result = await client.call("analyze", {"task": "..."}, timeout=30)
        await client.close()            # -> CLOSING -> CLOSED

    Calls may overlap; they are correlated by id and never serialized here.
    Nothing is retried at this layer.
    """

    def __init__(self, identity: str, spec: SpawnSpec,
                 on_terminated: Optional[TerminatedCallback] = None):
        self.identity = identity
        self.spec = spec
        self._on_terminated = on_terminated

        self._state = ClientState.SPAWNING
        self._process: Optional[asyncio.subprocess.Process] = None
        self._transport: Optional[StreamTransport] = None
        self._endpoint: Optional[ProtocolEndpoint] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._exit_task: Optional[asyncio.Task] = None
        self._teardown_task: Optional[asyncio.Task] = None
        self._terminated = asyncio.Event()
        self._in_flight = 0

        self.failure: Optional[ParticipantError] = None
        self.server_info: Any = None
        self.pid: Optional[int] = None
        self.exit_code: Optional[int] = None
        self.created_at = time.time()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def is_live(self) -> bool:
        return self._state in LIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def _transition(self, target: ClientState) -> None:
        if target not in VALID_CLIENT_TRANSITIONS[self._state]:
            raise InvalidStateTransition(self.identity, self._state.value, target.value)
        previous = self._state
        self._state = target
        if {previous, target} <= LIVE_STATES:
            logger.debug(f"Participant {self.identity}: {previous.value} -> {target.value}")
        else:
            logger.info(f"Participant {self.identity}: {previous.value} -> {target.value}")

    def info(self) -> Dict[str, Any]:
        """JSON-friendly snapshot of this client."""
        return {
            'identity': self.identity,
            'state': self._state.value,
            'pid': self.pid,
            'command': self.spec.argv(),
            'in_flight': self._in_flight,
            'exit_code': self.exit_code,
            'failure': self.failure.to_dict() if self.failure else None,
            'uptime_seconds': round(time.time() - self.created_at, 3),
        }

    # ------------------------------------------------------------------
    # Spawn + handshake
    # ------------------------------------------------------------------

    async def start(self) -> 'ParticipantClient':
        """
        Launch the process and complete the initialize handshake.

        Returns:
            self, in READY state

        Raises:
            SpawnError: Process could not be launched
            HandshakeTimeout: No initialize response within handshake_timeout
            TransportError: Channel failed or process exited during handshake
            RemoteError: Participant rejected initialize
        """
        if self._state is not ClientState.SPAWNING:
            raise InvalidStateTransition(self.identity, self._state.value, ClientState.HANDSHAKING.value)

        argv = self.spec.argv()
        logger.info(f"Spawning participant {self.identity}: {' '.join(argv)[:200]}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.spec.build_env(),
                cwd=self.spec.cwd,
            )
        except (OSError, ValueError) as e:
            error = SpawnError(f"Failed to spawn {argv[0]}: {e}", self.identity)
            logger.error(f"Participant {self.identity}: {error}")
            self._finish(error)
            raise error from e

        self.pid = self._process.pid
        self._transition(ClientState.HANDSHAKING)
        self._transport = StreamTransport.for_process(self._process, name=f"{self.identity}/stdio")
        self._endpoint = ProtocolEndpoint(
            self._transport,
            name=self.identity,
            notification_handler=self._on_notification,
            on_closed=self._on_connection_closed,
        )
        self._endpoint.start()
        self._stderr_task = asyncio.ensure_future(self._drain_stderr())
        self._exit_task = asyncio.ensure_future(self._watch_exit())

        try:
            self.server_info = await self._endpoint.request(
                "initialize",
                {
                    'protocolVersion': PROTOCOL_VERSION,
                    'capabilities': {},
                    'clientInfo': {'name': GATEWAY_NAME, 'version': GATEWAY_VERSION},
                },
                timeout=self.spec.handshake_timeout,
            )
        except CallTimeout:
            error = HandshakeTimeout(
                f"No initialize response within {self.spec.handshake_timeout}s", self.identity
            )
            await self._abort(error)
            raise error from None
        except RemoteError as e:
            e.identity = self.identity
            await self._abort(e)
            raise
        except (TransportError, ClientTerminated) as e:
            error = TransportError(f"Connection lost during handshake: {e}", self.identity)
            await self._abort(error)
            raise error from e
        except asyncio.CancelledError:
            await self._abort(ClientTerminated("Handshake cancelled", self.identity))
            raise

        if self._state is not ClientState.HANDSHAKING:
            raise ClientTerminated(f"Participant {self.identity} terminated during handshake", self.identity)

        self._transition(ClientState.READY)
        try:
            await self._endpoint.notify("notifications/initialized")
        except TransportClosed as e:
            logger.debug(f"Participant {self.identity}: initialized notification not sent: {e}")
        return self

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def call(self, method: str, params: Any = None, timeout: Optional[float] = None) -> Any:
        """
        Issue one request and return its result payload unmodified.

        Args:
            method: Remote method name
            params: JSON-serializable parameters
            timeout: Seconds to wait (defaults to spec.call_timeout)

        Raises:
            ClientNotReady: Handshake has not completed
            ClientTerminated: Client is closing/closed, or was torn down mid-call
            CallTimeout: No response in time (the id stays reserved)
            RemoteError: Participant answered with an error object
            TransportError: Request could not be written
        """
        if self._state in (ClientState.SPAWNING, ClientState.HANDSHAKING):
            raise ClientNotReady(f"Participant {self.identity} is {self._state.value}", self.identity)
        if self._state not in LIVE_STATES:
            raise ClientTerminated(f"Participant {self.identity} is {self._state.value}", self.identity)

        if timeout is None:
            timeout = self.spec.call_timeout

        self._in_flight += 1
        if self._state is ClientState.READY:
            self._transition(ClientState.IN_USE)
        try:
            return await self._endpoint.request(method, params, timeout=timeout)
        except ParticipantError as e:
            if e.identity is None:
                e.identity = self.identity
            raise
        finally:
            self._in_flight -= 1
            if self._in_flight == 0 and self._state is ClientState.IN_USE:
                self._transition(ClientState.READY)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Graceful teardown; returns once the client is terminal."""
        if self.is_terminal:
            return
        await asyncio.shield(self._begin_teardown())

    async def kill(self) -> None:
        """Immediate SIGKILL teardown, also escalating a close already in progress."""
        if self.is_terminal:
            return
        self._signal_process(force=True)
        await asyncio.shield(self._begin_teardown(force=True))

    async def wait_closed(self) -> None:
        await self._terminated.wait()

    def _begin_teardown(self, failure: Optional[ParticipantError] = None,
                        force: bool = False) -> asyncio.Task:
        if self._teardown_task is None:
            self._teardown_task = asyncio.ensure_future(self._teardown(failure, force))
            self._teardown_task.add_done_callback(self._teardown_done)
        return self._teardown_task

    def _teardown_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"Participant {self.identity}: teardown failed: {error!r}",
                exc_info=(type(error), error, error.__traceback__),
            )

    async def _abort(self, failure: ParticipantError) -> None:
        self._signal_process(force=True)
        await asyncio.shield(self._begin_teardown(failure, force=True))

    async def _teardown(self, failure: Optional[ParticipantError], force: bool) -> None:
        if self.is_terminal:
            return
        self._transition(ClientState.CLOSING)

        if self._endpoint is not None:
            self._endpoint.fail_pending(f"Participant {self.identity} is closing")
            await self._endpoint.close()

        await self._stop_process(force)

        for task in (self._stderr_task, self._exit_task):
            if task is not None and not task.done():
                task.cancel()
        self._finish(failure)

    async def _stop_process(self, force: bool) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return

        if not force:
            self._signal_process(force=False)
            try:
                await asyncio.wait_for(process.wait(), self.spec.grace_period)
                return
            except asyncio.TimeoutError:
                logger.warning(
                    f"Participant {self.identity} (pid {self.pid}) ignored SIGTERM for "
                    f"{self.spec.grace_period}s, killing"
                )

        self._signal_process(force=True)
        await process.wait()

    def _signal_process(self, force: bool) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            if force:
                process.kill()
            else:
                process.terminate()
        except ProcessLookupError:
            pass

    def _finish(self, failure: Optional[ParticipantError]) -> None:
        if self._process is not None and self._process.returncode is not None:
            self.exit_code = self._process.returncode
        if failure is None:
            self._transition(ClientState.CLOSED)
        else:
            self.failure = failure
            self._transition(ClientState.FAILED)
        self._terminated.set()
        if self._on_terminated is not None:
            try:
                self._on_terminated(self)
            except Exception as e:
                logger.error(f"Participant {self.identity}: on_terminated hook failed: {e}")

    # ------------------------------------------------------------------
    # Background watchers
    # ------------------------------------------------------------------

    def _on_connection_closed(self, error: Optional[BaseException]) -> None:
        # Handshake failures are handled by start() itself
        if self._state in LIVE_STATES:
            detail = f": {error}" if error else ""
            logger.warning(f"Participant {self.identity}: connection closed unexpectedly{detail}")
            self._begin_teardown(ClientTerminated(f"Connection to {self.identity} lost{detail}", self.identity))

    async def _watch_exit(self) -> None:
        code = await self._process.wait()
        self.exit_code = code
        if self._state in LIVE_STATES:
            logger.warning(f"Participant {self.identity} (pid {self.pid}) exited unexpectedly with code {code}")
            self._begin_teardown(ClientTerminated(f"Process exited with code {code}", self.identity))
        else:
            logger.debug(f"Participant {self.identity} (pid {self.pid}) exited with code {code}")

    async def _drain_stderr(self) -> None:
        stream = self._process.stderr
        partial = b""
        while True:
            chunk = await stream.read(STDERR_CHUNK_SIZE)
            if not chunk:
                break
            *lines, partial = (partial + chunk).split(b"\n")
            for line in lines:
                if line.strip():
                    logger.debug(f"[{self.identity} stderr] {line.decode('utf-8', errors='replace').rstrip()}")
        if partial.strip():
            logger.debug(f"[{self.identity} stderr] {partial.decode('utf-8', errors='replace').rstrip()}")

    def _on_notification(self, method: str, params: Any) -> None:
        logger.debug(f"Participant {self.identity} notification: {method}")
