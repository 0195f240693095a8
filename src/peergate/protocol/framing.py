"""Tunnel wire framing.

Outbound (gateway to host)::

    [1 byte tag length][tag bytes][METHOD target VERSION\\r\\n][Name: value\\r\\n]...[\\r\\n][body...]

Inbound (host to gateway)::

    [HTTP/x.y status reason\\r\\n][Name: value\\r\\n]...[\\r\\n][body...]

Neither direction carries a body length; the data channel's own ordering
is relied upon and the end of a body is signalled out of band (channel
close, or the EOF marker on a shared channel).
"""

from __future__ import annotations

import re
from collections.abc import AsyncIterator

from peergate.core.exceptions import ProtocolParseError, RoutingError
from peergate.protocol.http import HeaderList, InterceptedRequest, RequestHead, ResponseHead

CRLF = b"\r\n"
HEADER_TERMINATOR = b"\r\n\r\n"
MAX_TAG_LENGTH = 255
MAX_HEADER_SIZE = 64 * 1024

STATUS_LINE_RE = re.compile(r"^HTTP/(?P<version>\d+(?:\.\d+)?) (?P<status>\d{3})(?: (?P<reason>.*))?$")
REQUEST_LINE_RE = re.compile(r"^(?P<method>[!#$%&'*+\-.^_`|~0-9A-Za-z]+) (?P<target>\S+) (?P<version>HTTP/\d+(?:\.\d+)?)$")


def encode_routing_tag(tag: str) -> bytes:
    """Length-prefix a service name.

    Raises:
        RoutingError: If the name is empty or longer than 255 UTF-8 bytes.
    """
    raw = tag.encode("utf-8")
    if not raw:
        raise RoutingError("Routing tag is empty")
    if len(raw) > MAX_TAG_LENGTH:
        raise RoutingError(f"Routing tag is {len(raw)} bytes, limit is {MAX_TAG_LENGTH}")
    return bytes((len(raw),)) + raw


def encode_request_head(method: str, target: str, version: str, headers: HeaderList) -> bytes:
    lines = [f"{method} {target} {version}\r\n"]
    lines.extend(f"{name}: {value}\r\n" for name, value in headers)
    lines.append("\r\n")
    return "".join(lines).encode("utf-8")


def _split_header_lines(block: bytes) -> tuple[str, HeaderList]:
    text = block.decode("utf-8", errors="replace")
    lines = text.split("\r\n")
    headers: HeaderList = []
    for line in lines[1:]:
        if not line:
            continue
        name, sep, value = line.partition(":")
        if not sep or not name.strip():
            continue
        headers.append((name.strip(), value.strip()))
    return lines[0], headers


def parse_response_head(block: bytes) -> ResponseHead:
    """Decode a response header block (without the terminating blank line).

    A status line that does not match ``HTTP/<version> <status> <reason>``
    yields status 200.
    """
    first, headers = _split_header_lines(block)
    match = STATUS_LINE_RE.match(first)
    if match is None:
        return ResponseHead(status=200, reason="OK", headers=headers)
    return ResponseHead(
        status=int(match.group("status")),
        reason=match.group("reason") or "",
        headers=headers,
        version=f"HTTP/{match.group('version')}",
    )


def parse_request_head(block: bytes) -> RequestHead:
    first, headers = _split_header_lines(block)
    match = REQUEST_LINE_RE.match(first)
    if match is None:
        raise ProtocolParseError(f"Malformed request line: {first[:80]!r}")
    return RequestHead(
        method=match.group("method"),
        target=match.group("target"),
        version=match.group("version"),
        headers=headers,
    )


class HeaderBoundaryScanner:
    """Accumulate deliveries until the CRLFCRLF header terminator appears.

    The search resumes three bytes before the previous end of buffer so a
    terminator split across deliveries is still found at its exact offset.
    """

    def __init__(self, max_size: int = MAX_HEADER_SIZE) -> None:
        self._buffer = bytearray()
        self._scanned = 0
        self._max_size = max_size

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> tuple[bytes, bytes] | None:
        """Add a delivery; return ``(header_block, remainder)`` once the boundary is found."""
        self._buffer.extend(data)
        start = max(0, self._scanned - (len(HEADER_TERMINATOR) - 1))
        index = self._buffer.find(HEADER_TERMINATOR, start)
        if index == -1:
            self._scanned = len(self._buffer)
            if len(self._buffer) > self._max_size:
                raise ProtocolParseError(
                    f"Header block exceeds {self._max_size} bytes without a terminator"
                )
            return None
        head = bytes(self._buffer[:index])
        rest = bytes(self._buffer[index + len(HEADER_TERMINATOR) :])
        self._buffer.clear()
        self._scanned = 0
        return head, rest


class RequestEncoder:
    """Serialize intercepted requests into tunnel frames."""

    def __init__(self, http_version: str = "HTTP/1.1") -> None:
        self.http_version = http_version

    def encode_head(self, tag: str, request: InterceptedRequest) -> bytes:
        return encode_routing_tag(tag) + encode_request_head(
            request.method.upper(), request.target, self.http_version, request.headers
        )

    async def iter_frames(self, tag: str, request: InterceptedRequest) -> AsyncIterator[bytes]:
        """Yield the tag and head as one frame, then each non-empty body chunk as it arrives."""
        yield self.encode_head(tag, request)
        if request.body is None:
            return
        async for chunk in request.body:
            if chunk:
                yield bytes(chunk)


class ResponseDecoder:
    """Incremental decoder for the inbound half of an exchange."""

    def __init__(self, max_header_size: int = MAX_HEADER_SIZE) -> None:
        self._scanner = HeaderBoundaryScanner(max_header_size)
        self.head: ResponseHead | None = None

    @property
    def headers_complete(self) -> bool:
        return self.head is not None

    def feed(self, data: bytes) -> tuple[ResponseHead | None, bytes]:
        """Consume one delivery.

        Returns the decoded head on the delivery that completes it (``None``
        otherwise) and whatever body bytes this delivery carried.
        """
        if self.head is not None:
            return None, data
        found = self._scanner.feed(data)
        if found is None:
            return None, b""
        block, rest = found
        self.head = parse_response_head(block)
        return self.head, rest

    def close(self) -> None:
        """Signal end of stream.

        Raises:
            ProtocolParseError: If the stream ended before the header boundary.
        """
        if self.head is None:
            raise ProtocolParseError.closed_before_headers()


class RequestDecoder:
    """Incremental decoder for the outbound frame, used by the service host."""

    def __init__(self, max_header_size: int = MAX_HEADER_SIZE) -> None:
        self._pending = bytearray()
        self._scanner = HeaderBoundaryScanner(max_header_size)
        self.tag: str | None = None
        self.head: RequestHead | None = None

    def feed(self, data: bytes) -> tuple[RequestHead | None, bytes]:
        if self.head is not None:
            return None, data
        if self.tag is None:
            self._pending.extend(data)
            if not self._pending:
                return None, b""
            length = self._pending[0]
            if length == 0:
                raise ProtocolParseError("Routing tag length is zero")
            if len(self._pending) < 1 + length:
                return None, b""
            try:
                self.tag = bytes(self._pending[1 : 1 + length]).decode("utf-8")
            except UnicodeDecodeError as e:
                raise ProtocolParseError(f"Routing tag is not valid UTF-8: {e}") from e
            data = bytes(self._pending[1 + length :])
            self._pending.clear()
        found = self._scanner.feed(data)
        if found is None:
            return None, b""
        block, rest = found
        self.head = parse_request_head(block)
        return self.head, rest
