"""
Protocol Endpoint Module

Binds one Transport to the codec and owns everything that is per-connection:
- line framing of inbound bytes
- correlation id allocation for outgoing requests
- the pending-call table (one future per outstanding request id)
- ids reserved by timed-out calls, so late responses are discarded (the most
  recent MAX_EXPIRED_IDS of them; older reservations are released)
- dispatch of inbound requests / notifications to handlers

The gateway's inbound channel and every participant client's outbound channel
are instances of this same class.

Author: Collaborative Gateway Project
License: MIT
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .errors import (
    CallTimeout,
    ClientTerminated,
    DuplicateRequestId,
    EncodingError,
    ProtocolError,
    RemoteError,
    TransportClosed,
    TransportError,
)
from .protocol import (
    ErrorCode,
    ErrorObject,
    IdAllocator,
    LineBuffer,
    Notification,
    ParseError,
    Request,
    Response,
    decode,
    encode,
)
from .transport import StreamTransport

logger = logging.getLogger(__name__)

__all__ = [
    'MAX_EXPIRED_IDS',
    'ProtocolEndpoint',
]

MAX_EXPIRED_IDS = 1024

RequestHandler = Callable[[str, Any], Awaitable[Any]]
NotificationHandler = Callable[[str, Any], Any]
ClosedCallback = Callable[[Optional[BaseException]], None]


class ProtocolEndpoint:
    """
    One side of a JSON-RPC conversation over a StreamTransport.

    Outgoing calls: request() / notify(). Inbound requests are answered with
    whatever request_handler returns; a ProtocolError raised by the handler
    becomes an error response, any other exception becomes INTERNAL_ERROR.

    Args:
        transport: Started by start(); owned by this endpoint afterwards
        name: Label used in log lines
        request_handler: async (method, params) -> result; None answers
            every inbound request with METHOD_NOT_FOUND
        notification_handler: (method, params) -> None or awaitable
        reply_to_parse_errors: Answer undecodable lines with a PARSE_ERROR
            response (server side) instead of only logging them (client side)
        on_closed: Called once with the read-side error (or None) after the
            connection closes and every pending call has been failed
        max_expired: Timed-out ids kept reserved; the oldest is released first
    """

    def __init__(
        self,
        transport: StreamTransport,
        name: str = "endpoint",
        request_handler: Optional[RequestHandler] = None,
        notification_handler: Optional[NotificationHandler] = None,
        reply_to_parse_errors: bool = False,
        on_closed: Optional[ClosedCallback] = None,
        max_expired: int = MAX_EXPIRED_IDS,
    ):
        self.name = name
        self._transport = transport
        self._request_handler = request_handler
        self._notification_handler = notification_handler
        self._reply_to_parse_errors = reply_to_parse_errors
        self._on_closed = on_closed
        self._max_expired = max_expired

        self._buffer = LineBuffer()
        self._ids = IdAllocator()
        self._pending: Dict[Any, asyncio.Future] = {}
        self._expired: Dict[Any, None] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._read_error: Optional[BaseException] = None
        self._closed = False
        self._closed_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._transport.start(self._on_data, self._on_error, self._on_close)

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def expired_ids(self) -> Set[Any]:
        return set(self._expired)

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    async def drain(self) -> None:
        """Wait for every inbound handler to finish and send its response."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self, cancel_handlers: bool = True) -> None:
        """Close the transport; pending calls resolve with ClientTerminated."""
        await self._transport.close()
        if cancel_handlers:
            for task in list(self._tasks):
                task.cancel()
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)

    def fail_pending(self, reason: str) -> int:
        """
        Resolve every in-flight call with ClientTerminated.

        Returns:
            Number of calls that were resolved
        """
        failed = 0
        for request_id, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(ClientTerminated(f"{reason} (request {request_id})"))
                failed += 1
        if failed:
            logger.info(f"{self.name}: failed {failed} pending call(s): {reason}")
        return failed

    # ------------------------------------------------------------------
    # Outgoing
    # ------------------------------------------------------------------

    async def request(self, method: str, params: Any = None, timeout: Optional[float] = None,
                      request_id: Any = None) -> Any:
        """
        Send a request and wait for its response.

        Args:
            method: Remote method name
            params: JSON-serializable parameters
            timeout: Seconds to wait; None waits until the connection closes
            request_id: Caller-supplied correlation id (allocated when None)

        Returns:
            The response's result payload, unmodified

        Raises:
            DuplicateRequestId: If request_id is pending or reserved
            EncodingError: If params cannot be serialized
            TransportClosed: If the request could not be written
            CallTimeout: If no response arrived within timeout
            RemoteError: If the response carried an error object
            ClientTerminated: If the connection closed first
        """
        if self._closed:
            raise ClientTerminated(f"{self.name}: connection closed")

        if request_id is None:
            request_id = self._ids.next()
            while request_id in self._pending or request_id in self._expired:
                request_id = self._ids.next()
        elif request_id in self._pending or request_id in self._expired:
            raise DuplicateRequestId(request_id)

        data = encode(Request(id=request_id, method=method, params=params))
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            logger.debug(f"{self.name}: -> {method} (id={request_id})")
            await self._transport.write(data)
            try:
                if timeout is None:
                    response = await future
                else:
                    response = await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError:
                self._reserve_expired(request_id)
                logger.warning(f"{self.name}: {method} (id={request_id}) timed out after {timeout}s")
                raise CallTimeout(
                    f"{method} timed out after {timeout}s",
                    request_id=request_id,
                    timeout=timeout,
                ) from None
        finally:
            self._pending.pop(request_id, None)

        if response.error is not None:
            raise RemoteError(response.error.code, response.error.message, response.error.data)
        return response.result

    def _reserve_expired(self, request_id: Any) -> None:
        self._expired[request_id] = None
        while len(self._expired) > self._max_expired:
            released = next(iter(self._expired))
            del self._expired[released]
            logger.debug(f"{self.name}: released reservation for timed-out id={released}")

    async def notify(self, method: str, params: Any = None) -> None:
        """Send a notification (no response expected)."""
        await self._transport.write(encode(Notification(method=method, params=params)))

    # ------------------------------------------------------------------
    # Incoming
    # ------------------------------------------------------------------

    def _on_data(self, chunk: bytes) -> None:
        for line in self._buffer.feed(chunk):
            self._handle_line(line)

    def _on_error(self, exc: BaseException) -> None:
        self._read_error = exc

    def _on_close(self) -> None:
        for line in self._buffer.flush():
            self._handle_line(line)
        self._closed = True
        reason = f"{self.name}: connection closed"
        if self._read_error is not None:
            reason = f"{reason} ({self._read_error})"
        self.fail_pending(reason)
        self._closed_event.set()
        if self._on_closed is not None:
            error = TransportError(str(self._read_error)) if self._read_error is not None else None
            self._on_closed(error)

    def _handle_line(self, line: bytes) -> None:
        message = decode(line)

        if isinstance(message, ParseError):
            logger.warning(f"{self.name}: unparseable line ({message.reason}): {message.line[:200]}")
            if self._reply_to_parse_errors:
                self._spawn(self._send(Response(
                    id=message.request_id,
                    error=ErrorObject(code=ErrorCode.PARSE_ERROR, message=f"Parse error: {message.reason}"),
                )))
            return

        if isinstance(message, Response):
            self._handle_response(message)
        elif isinstance(message, Request):
            logger.debug(f"{self.name}: <- {message.method} (id={message.id})")
            self._spawn(self._dispatch(message))
        elif isinstance(message, Notification):
            self._handle_notification(message)

    def _handle_response(self, response: Response) -> None:
        future = self._pending.get(response.id)
        if future is None:
            if response.id in self._expired:
                self._expired.pop(response.id, None)
                logger.warning(f"{self.name}: discarding late response for timed-out id={response.id}")
            else:
                logger.warning(f"{self.name}: dropping response with unknown id={response.id!r}")
            return
        if not future.done():
            future.set_result(response)

    def _handle_notification(self, notification: Notification) -> None:
        if self._notification_handler is None:
            logger.debug(f"{self.name}: ignoring notification {notification.method}")
            return
        try:
            outcome = self._notification_handler(notification.method, notification.params)
        except Exception as e:
            logger.error(f"{self.name}: notification handler failed for {notification.method}: {e}")
            return
        if inspect.isawaitable(outcome):
            self._spawn(outcome)

    async def _dispatch(self, request: Request) -> None:
        if self._request_handler is None:
            error = ErrorObject(code=ErrorCode.METHOD_NOT_FOUND, message=f"Method not found: {request.method}")
            await self._send(Response(id=request.id, error=error))
            return

        try:
            result = await self._request_handler(request.method, request.params)
            response = Response(id=request.id, result=result)
        except ProtocolError as e:
            response = Response(id=request.id, error=ErrorObject(code=e.code, message=e.message, data=e.data))
        except Exception as e:
            logger.exception(f"{self.name}: handler for {request.method} raised")
            response = Response(
                id=request.id,
                error=ErrorObject(code=ErrorCode.INTERNAL_ERROR, message=f"Internal error: {e}"),
            )
        await self._send(response)

    async def _send(self, response: Response) -> None:
        try:
            data = encode(response)
        except EncodingError as e:
            logger.error(f"{self.name}: could not encode response id={response.id}: {e}")
            data = encode(Response(
                id=response.id,
                error=ErrorObject(code=ErrorCode.INTERNAL_ERROR, message="Result could not be encoded"),
            ))
        try:
            await self._transport.write(data)
        except TransportClosed as e:
            logger.debug(f"{self.name}: response id={response.id} not delivered: {e}")

    def _spawn(self, awaitable: Awaitable) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
