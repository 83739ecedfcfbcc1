"""
Protocol Codec Module

Line-delimited JSON-RPC 2.0 envelopes: one JSON object per newline-terminated
line. Provides:
- Envelope dataclasses (Request, Response, Notification, ErrorObject)
- encode(): envelope -> bytes (whole line or EncodingError, never partial)
- decode(): line -> envelope or ParseError value (never raises)
- LineBuffer: reassembles lines from arbitrary chunk boundaries
- IdAllocator: monotonically increasing correlation ids

Author: Collaborative Gateway Project
License: MIT
"""

import itertools
import json
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, List, Optional, Union

from .errors import EncodingError

__all__ = [
    'JSONRPC_VERSION',
    'PROTOCOL_VERSION',
    'GATEWAY_NAME',
    'GATEWAY_VERSION',
    'ErrorCode',
    'ErrorObject',
    'Request',
    'Response',
    'Notification',
    'ParseError',
    'Envelope',
    'encode',
    'decode',
    'LineBuffer',
    'IdAllocator',
]

JSONRPC_VERSION = "2.0"

# Version string exchanged during the initialize handshake
PROTOCOL_VERSION = "2025-06-18"

# Identity this gateway reports as clientInfo / serverInfo
GATEWAY_NAME = "collab-gateway"
GATEWAY_VERSION = "1.0.0"

RequestId = Union[int, str]


class ErrorCode(IntEnum):
    """JSON-RPC error codes used on both the inbound and outbound channel."""
    PARSE_ERROR = -32700
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


# ============================================================================
# ENVELOPES
# ============================================================================

@dataclass
class ErrorObject:
    """Error member of a Response."""
    code: int
    message: str
    data: Any = None

    def to_dict(self) -> Dict[str, Any]:
        result = {'code': self.code, 'message': self.message}
        if self.data is not None:
            result['data'] = self.data
        return result


@dataclass
class Request:
    """A call that expects exactly one Response with the same id."""
    id: RequestId
    method: str
    params: Any = None

    def to_dict(self) -> Dict[str, Any]:
        message = {'jsonrpc': JSONRPC_VERSION, 'id': self.id, 'method': self.method}
        if self.params is not None:
            message['params'] = self.params
        return message


@dataclass
class Notification:
    """A one-way message; carries no id and receives no Response."""
    method: str
    params: Any = None

    def to_dict(self) -> Dict[str, Any]:
        message = {'jsonrpc': JSONRPC_VERSION, 'method': self.method}
        if self.params is not None:
            message['params'] = self.params
        return message


@dataclass
class Response:
    """Answer to a Request: exactly one of result / error is meaningful."""
    id: Optional[RequestId]
    result: Any = None
    error: Optional[ErrorObject] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> Dict[str, Any]:
        message = {'jsonrpc': JSONRPC_VERSION, 'id': self.id}
        if self.error is not None:
            message['error'] = self.error.to_dict()
        else:
            message['result'] = self.result
        return message


@dataclass
class ParseError:
    """
    Result of decoding a line that is not a valid envelope.

    This is a value, not an exception: the owner of the stream decides whether
    to answer with a protocol error or just log it.

    Attributes:
        line: The offending line, as received
        reason: Why decoding failed
        request_id: Id recovered from the payload, when one could be read
    """
    line: str
    reason: str
    request_id: Optional[RequestId] = None


Envelope = Union[Request, Response, Notification]


# ============================================================================
# ENCODE / DECODE
# ============================================================================

def encode(envelope: Envelope) -> bytes:
    """
    Serialize an envelope to one newline-terminated line.

    Args:
        envelope: Request, Response or Notification

    Returns:
        UTF-8 bytes including the trailing newline

    Raises:
        EncodingError: If the envelope holds values JSON cannot represent
    """
    try:
        text = json.dumps(envelope.to_dict(), ensure_ascii=False, allow_nan=False,
                          separators=(',', ':'))
    except (TypeError, ValueError, RecursionError) as e:
        raise EncodingError(f"Cannot encode {type(envelope).__name__}: {e}") from e
    return text.encode('utf-8') + b"\n"


def _valid_id(value: Any) -> bool:
    return isinstance(value, (int, str)) and not isinstance(value, bool)


def decode(line: Union[bytes, str]) -> Union[Envelope, ParseError]:
    """
    Parse one line into an envelope.

    Never raises: any malformed input comes back as a ParseError value.
    """
    if isinstance(line, bytes):
        try:
            text = line.decode('utf-8')
        except UnicodeDecodeError as e:
            return ParseError(line=line.decode('utf-8', errors='replace'), reason=f"invalid UTF-8: {e}")
    else:
        text = line
    text = text.strip()

    try:
        message = json.loads(text)
    except (json.JSONDecodeError, RecursionError) as e:
        return ParseError(line=text, reason=f"invalid JSON: {e}")

    if not isinstance(message, dict):
        return ParseError(line=text, reason="envelope must be a JSON object")

    request_id = message.get('id')
    recovered_id = request_id if _valid_id(request_id) else None

    if 'method' in message:
        method = message['method']
        if not isinstance(method, str) or not method:
            return ParseError(line=text, reason="method must be a non-empty string",
                              request_id=recovered_id)
        params = message.get('params')
        if 'id' not in message:
            return Notification(method=method, params=params)
        if not _valid_id(request_id):
            return ParseError(line=text, reason="request id must be a string or integer")
        return Request(id=request_id, method=method, params=params)

    has_result = 'result' in message
    has_error = 'error' in message
    if has_result or has_error:
        if has_result and has_error:
            return ParseError(line=text, reason="response carries both result and error",
                              request_id=recovered_id)
        if request_id is not None and not _valid_id(request_id):
            return ParseError(line=text, reason="response id must be a string, integer or null")
        if has_error:
            error = message['error']
            if (not isinstance(error, dict) or not isinstance(error.get('code'), int)
                    or not isinstance(error.get('message'), str)):
                return ParseError(line=text, reason="error must be an object with code and message",
                                  request_id=recovered_id)
            return Response(
                id=request_id,
                error=ErrorObject(code=error['code'], message=error['message'], data=error.get('data')),
            )
        return Response(id=request_id, result=message['result'])

    return ParseError(line=text, reason="not a request, response or notification",
                      request_id=recovered_id)


# ============================================================================
# FRAMING
# ============================================================================

class LineBuffer:
    """
    Reassemble newline-terminated lines from an unbounded byte stream.

    A partial line at the end of a chunk is carried forward to the next feed()
    and emitted exactly once when its newline arrives.
    """

    def __init__(self):
        self._partial = bytearray()

    @property
    def pending(self) -> int:
        """Number of buffered bytes that do not yet form a complete line."""
        return len(self._partial)

    def feed(self, chunk: bytes) -> List[bytes]:
        self._partial.extend(chunk)
        if b"\n" not in chunk:
            return []
        *complete, rest = bytes(self._partial).split(b"\n")
        self._partial = bytearray(rest)
        return [line for line in complete if line.strip()]

    def flush(self) -> List[bytes]:
        """Return a trailing unterminated line (used at EOF) and reset."""
        rest = bytes(self._partial)
        self._partial.clear()
        return [rest] if rest.strip() else []


class IdAllocator:
    """Monotonically increasing integer correlation ids, starting at 1."""

    def __init__(self, start: int = 1):
        self._counter = itertools.count(start)
        self.last: Optional[int] = None

    def next(self) -> int:
        self.last = next(self._counter)
        return self.last
