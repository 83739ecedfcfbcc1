"""
Transport Module

Duplex byte channel with independent data / error / close signaling, decoupled
from framing (the endpoint owns line buffering).

Constructors:
- StreamTransport.for_process(): a spawned child's stdout (read) / stdin (write)
- open_stdio_transport(): this process's own stdin / stdout
- memory_pipe(): two connected in-process transports

Author: Collaborative Gateway Project
License: MIT
"""

import asyncio
import logging
import sys
from typing import Any, Callable, Optional, Tuple

from .errors import TransportClosed

logger = logging.getLogger(__name__)

__all__ = [
    'READ_CHUNK_SIZE',
    'StreamTransport',
    'open_stdio_transport',
    'memory_pipe',
]

READ_CHUNK_SIZE = 64 * 1024

DataCallback = Callable[[bytes], None]
ErrorCallback = Callable[[BaseException], None]
CloseCallback = Callable[[], None]


class StreamTransport:
    """
    Duplex channel over an asyncio StreamReader and a StreamWriter-like object.

    Read side:
        on_data(chunk): every chunk read, in order, unframed
        on_error(exc): read failure (the read side ends afterwards)
        on_close(): fired exactly once, on EOF, read failure or close()
        read_closed: True once the read side has ended

    Write side:
        is_closed: True after close() or a failed write
        write() raises TransportClosed once the write side is closed

    EOF on the read side leaves the write side open, so responses to requests
    that arrived before EOF can still be delivered. close() is idempotent.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: Any, name: str = "transport"):
        self.name = name
        self._reader = reader
        self._writer = writer
        self._write_lock = asyncio.Lock()
        self._read_task: Optional[asyncio.Task] = None
        self._closed = False
        self._read_closed = False
        self._shutdown = False
        self._close_notified = False
        self._on_data: Optional[DataCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._on_close: Optional[CloseCallback] = None

    @classmethod
    def for_process(cls, process: asyncio.subprocess.Process, name: str = "process") -> 'StreamTransport':
        """Wrap a child spawned with stdin=PIPE, stdout=PIPE."""
        return cls(process.stdout, process.stdin, name=name)

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def read_closed(self) -> bool:
        return self._read_closed

    def start(self, on_data: DataCallback, on_error: Optional[ErrorCallback] = None,
              on_close: Optional[CloseCallback] = None) -> None:
        """Begin delivering data; may be called once."""
        if self._read_task is not None:
            raise RuntimeError(f"{self.name}: transport already started")
        self._on_data = on_data
        self._on_error = on_error
        self._on_close = on_close
        self._read_task = asyncio.ensure_future(self._read_loop())

    async def _read_loop(self) -> None:
        try:
            while True:
                chunk = await self._reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    logger.debug(f"{self.name}: EOF on read side")
                    break
                self._on_data(chunk)
        except Exception as e:
            logger.warning(f"{self.name}: read failed: {e}")
            if self._on_error is not None:
                self._on_error(e)
        finally:
            self._read_closed = True
            self._notify_close()

    def _notify_close(self) -> None:
        if self._close_notified:
            return
        self._close_notified = True
        if self._on_close is not None:
            self._on_close()

    async def write(self, data: bytes) -> None:
        """
        Write one fully-encoded frame.

        Raises:
            TransportClosed: If the channel is closed or the pipe is broken
        """
        if self._closed or self._writer.is_closing():
            raise TransportClosed(f"{self.name}: write on closed transport")
        async with self._write_lock:
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
                self._closed = True
                raise TransportClosed(f"{self.name}: write failed: {e}") from e

    async def close(self) -> None:
        """Close both directions. Safe to call more than once."""
        if self._shutdown:
            return
        self._shutdown = True
        self._closed = True
        self._read_closed = True
        if not self._writer.is_closing():
            try:
                self._writer.close()
            except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
                logger.debug(f"{self.name}: error while closing writer: {e}")
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
        self._notify_close()


# ============================================================================
# STDIO
# ============================================================================

async def open_stdio_transport(stdin=None, stdout=None, name: str = "stdio") -> StreamTransport:
    """Wrap this process's stdin/stdout as a StreamTransport."""
    loop = asyncio.get_running_loop()
    stdin = stdin if stdin is not None else sys.stdin
    stdout = stdout if stdout is not None else sys.stdout

    reader = asyncio.StreamReader(limit=READ_CHUNK_SIZE * 16)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), stdin)
    write_transport, write_protocol = await loop.connect_write_pipe(
        asyncio.streams.FlowControlMixin, stdout
    )
    writer = asyncio.StreamWriter(write_transport, write_protocol, reader, loop)
    return StreamTransport(reader, writer, name=name)


# ============================================================================
# IN-MEMORY PIPE
# ============================================================================

class _MemoryWriter:
    """StreamWriter stand-in that feeds the peer's StreamReader directly."""

    def __init__(self, peer: asyncio.StreamReader):
        self._peer = peer
        self._closing = False
        self._broken = False
        self.partner: Optional['_MemoryWriter'] = None

    def write(self, data: bytes) -> None:
        if self._closing or self._broken:
            raise BrokenPipeError("memory pipe closed")
        self._peer.feed_data(data)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def is_closing(self) -> bool:
        return self._closing

    def close(self) -> None:
        if not self._closing:
            self._closing = True
            self._peer.feed_eof()
            # The peer has stopped reading
            if self.partner is not None:
                self.partner._broken = True


def memory_pipe(names: Tuple[str, str] = ("left", "right")) -> Tuple[StreamTransport, StreamTransport]:
    """
    Create two transports wired back to back.

    Bytes written on one side are read on the other. Closing one side delivers
    EOF to its peer, and the peer's later writes fail like a broken pipe.
    """
    left_reader = asyncio.StreamReader()
    right_reader = asyncio.StreamReader()
    left_writer = _MemoryWriter(right_reader)
    right_writer = _MemoryWriter(left_reader)
    left_writer.partner, right_writer.partner = right_writer, left_writer
    left = StreamTransport(left_reader, left_writer, name=names[0])
    right = StreamTransport(right_reader, right_writer, name=names[1])
    return left, right
