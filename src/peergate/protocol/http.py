"""Structural HTTP request/response descriptors exchanged with the interception layer."""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

if TYPE_CHECKING:
    from peergate.core.exceptions import PeerGateError

HeaderList = list[tuple[str, str]]


def get_header(headers: HeaderList, name: str, default: str | None = None) -> str | None:
    """Return the first value of a header, matched case-insensitively."""
    lowered = name.lower()
    for key, value in headers:
        if key.lower() == lowered:
            return value
    return default


def replace_header(headers: HeaderList, name: str, value: str) -> HeaderList:
    """Return a copy of ``headers`` with every ``name`` entry replaced by one value."""
    lowered = name.lower()
    result = [(k, v) for k, v in headers if k.lower() != lowered]
    result.append((name, value))
    return result


@dataclass
class InterceptedRequest:
    """An HTTP request handed over by the interception layer."""

    method: str
    url: str
    headers: HeaderList = field(default_factory=list)
    body: AsyncIterable[bytes] | None = None
    mode: str = "cors"

    @property
    def is_navigation(self) -> bool:
        return self.mode == "navigate"

    @property
    def target(self) -> str:
        """Path plus query string, as written in the request line."""
        parts = urlsplit(self.url)
        path = parts.path or "/"
        return f"{path}?{parts.query}" if parts.query else path

    @property
    def hostname(self) -> str | None:
        return urlsplit(self.url).hostname


@dataclass
class RequestHead:
    """Decoded request line and header block."""

    method: str
    target: str
    version: str
    headers: HeaderList = field(default_factory=list)


@dataclass
class ResponseHead:
    """Decoded status line and header block."""

    status: int
    reason: str
    headers: HeaderList = field(default_factory=list)
    version: str = "HTTP/1.1"


class ResponseBody:
    """Async byte stream of a relayed response body.

    Iterating to the end releases the underlying channel; closing early
    aborts the exchange, which tears the channel down.
    """

    def __init__(
        self,
        source: AsyncIterator[bytes],
        on_close: Callable[[bool], Awaitable[None]] | None = None,
    ) -> None:
        self._source = source
        self._on_close = on_close
        self._finished = False
        self._closed = False
        self.bytes_read = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> ResponseBody:
        async def _single() -> AsyncIterator[bytes]:
            if data:
                yield data

        return cls(_single())

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> ResponseBody:
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration
        try:
            chunk = await self._source.__anext__()
        except StopAsyncIteration:
            self._finished = True
            await self.aclose()
            raise
        except BaseException:
            await self.aclose()
            raise
        self.bytes_read += len(chunk)
        return chunk

    async def read(self) -> bytes:
        """Drain the remaining body into memory."""
        return b"".join([chunk async for chunk in self])

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._finished:
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                with contextlib.suppress(Exception):
                    await aclose()
        if self._on_close is not None:
            await self._on_close(self._finished)


@dataclass
class TunnelResponse:
    """Response descriptor returned by the dispatcher.

    ``error`` is set when the response was synthesized from a failure
    instead of being relayed from the remote peer.
    """

    status: int
    reason: str
    headers: HeaderList
    body: ResponseBody
    error: PeerGateError | None = None

    @property
    def synthesized(self) -> bool:
        return self.error is not None
