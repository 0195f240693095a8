"""State of one request/response exchange relayed over a data channel."""

from __future__ import annotations

import asyncio
import itertools
import time
from collections.abc import AsyncIterator
from enum import Enum

import structlog

from peergate.core.exceptions import ExchangeTimeoutError, PeerGateError, ProtocolParseError
from peergate.protocol.framing import ResponseDecoder
from peergate.protocol.http import InterceptedRequest, ResponseHead

logger = structlog.get_logger()

_exchange_ids = itertools.count(1)


class ExchangeState(str, Enum):
    AWAITING_HEADERS = "awaiting_headers"
    STREAMING_BODY = "streaming_body"
    COMPLETE = "complete"


class PendingExchange:
    """Accumulates inbound bytes for one relayed request.

    State only moves forward: ``AWAITING_HEADERS`` until the header
    boundary has been seen, ``STREAMING_BODY`` until end of body, then
    ``COMPLETE``. The response head is published once through a future;
    body bytes are queued for the consumer as they arrive.
    """

    def __init__(self, request: InterceptedRequest, tag: str) -> None:
        self.id = next(_exchange_ids)
        self.request = request
        self.tag = tag
        self.state = ExchangeState.AWAITING_HEADERS
        self.error: PeerGateError | None = None
        self.bytes_received = 0
        self.started_at = time.monotonic()
        self._decoder = ResponseDecoder()
        self._head: asyncio.Future[ResponseHead] = asyncio.get_running_loop().create_future()
        self._body: asyncio.Queue[bytes | PeerGateError | None] = asyncio.Queue()

    def __repr__(self) -> str:
        return (
            f"PendingExchange(id={self.id}, {self.request.method} {self.request.target}, "
            f"tag={self.tag!r}, state={self.state.value})"
        )

    @property
    def is_complete(self) -> bool:
        return self.state is ExchangeState.COMPLETE

    @property
    def head(self) -> ResponseHead | None:
        return self._decoder.head

    def feed(self, data: bytes) -> None:
        """Consume one inbound delivery.

        Raises:
            ProtocolParseError: On bytes arriving after the exchange completed,
                or a header block the decoder rejects.
        """
        if self.state is ExchangeState.COMPLETE:
            raise ProtocolParseError(
                f"Received {len(data)} late bytes after exchange {self.id} completed"
            )
        self.bytes_received += len(data)
        head, body = self._decoder.feed(data)
        if head is not None:
            self.state = ExchangeState.STREAMING_BODY
            self._head.set_result(head)
            logger.debug(
                "Response headers received",
                exchange=self.id,
                status=head.status,
                headers=len(head.headers),
            )
        if body:
            self._body.put_nowait(body)

    def finish(self) -> None:
        """End of body. Ending before the header boundary fails the exchange."""
        if self.state is ExchangeState.COMPLETE:
            return
        try:
            self._decoder.close()
        except ProtocolParseError as e:
            self.fail(e)
            return
        self.state = ExchangeState.COMPLETE
        self._body.put_nowait(None)

    def fail(self, error: PeerGateError) -> None:
        if self.state is ExchangeState.COMPLETE:
            return
        self.state = ExchangeState.COMPLETE
        self.error = error
        if not self._head.done():
            self._head.set_exception(error)
            # Mark retrieved; waiters still receive the exception.
            self._head.exception()
        self._body.put_nowait(error)
        logger.debug("Exchange failed", exchange=self.id, error=error.message)

    async def wait_head(self, timeout: float | None = None) -> ResponseHead:
        """Wait for the response head.

        Raises:
            ExchangeTimeoutError: If no head arrives within ``timeout`` seconds.
            PeerGateError: Whatever failed the exchange before the head arrived.
        """
        try:
            return await asyncio.wait_for(asyncio.shield(self._head), timeout)
        except TimeoutError as e:
            raise ExchangeTimeoutError(timeout or 0.0) from e

    async def iter_body(self) -> AsyncIterator[bytes]:
        while True:
            item = await self._body.get()
            if item is None:
                return
            if isinstance(item, PeerGateError):
                raise item
            yield item
