"""Data channel byte pipes and the strategies that hand them to exchanges."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import secrets
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import structlog

from peergate.core.config import ChannelTopology, GatewayConfig
from peergate.core.exceptions import ChannelError
from peergate.observability.metrics import ACTIVE_CHANNELS, BYTES_TRANSFERRED

if TYPE_CHECKING:
    from peergate.session.session import PeerSession
    from peergate.tunnel.exchange import PendingExchange

logger = structlog.get_logger()

# Text message that ends a response body on a channel that outlives the exchange.
EOF_MARKER = "EOF"

# Queued when the channel closes, to tell close apart from the EOF marker.
_CLOSED = object()

HIGH_WATER_MARK = 1024 * 1024
LOW_WATER_MARK = 256 * 1024


class TunnelChannel:
    """Bidirectional byte conduit over one data channel.

    Wraps an aiortc ``RTCDataChannel`` (or anything emitting the same
    ``open``/``message``/``close``/``bufferedamountlow`` events). Inbound
    binary messages are queued in order; ``receive()`` returns ``None`` at
    the end of a body, signalled by the EOF marker or by the remote side
    closing. A reader still waiting when the channel is closed locally gets
    :class:`ChannelError` instead, so an aborted body never reads as complete.
    """

    def __init__(self, raw: Any, *, high_water_mark: int = HIGH_WATER_MARK) -> None:
        self.raw = raw
        self.exchange: PendingExchange | None = None
        self.bytes_sent = 0
        self.bytes_received = 0
        self._high_water_mark = high_water_mark
        self._inbound: asyncio.Queue[Any] = asyncio.Queue()
        self._opened = asyncio.Event()
        self._closed = asyncio.Event()
        self._drained = asyncio.Event()
        self._drained.set()
        self._aborted = False

        with contextlib.suppress(AttributeError, ValueError):
            raw.bufferedAmountLowThreshold = LOW_WATER_MARK

        raw.on("open", self._on_open)
        raw.on("message", self._on_message)
        raw.on("close", self._on_close)
        raw.on("bufferedamountlow", self._on_buffered_amount_low)

        state = getattr(raw, "readyState", "connecting")
        if state == "open":
            self._opened.set()
        elif state == "closed":
            self._closed.set()

    def __repr__(self) -> str:
        return f"TunnelChannel(label={self.label!r}, open={self.is_open})"

    @property
    def label(self) -> str:
        return self.raw.label

    @property
    def is_open(self) -> bool:
        return self._opened.is_set() and not self._closed.is_set()

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    def _on_open(self) -> None:
        self._opened.set()

    def _on_message(self, message: bytes | str) -> None:
        if isinstance(message, str):
            if message == EOF_MARKER:
                self._inbound.put_nowait(None)
                return
            message = message.encode("utf-8")
        self.bytes_received += len(message)
        BYTES_TRANSFERRED.labels(direction="in").inc(len(message))
        self._inbound.put_nowait(message)

    def _on_close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._drained.set()
        self._inbound.put_nowait(_CLOSED)
        logger.debug("Data channel closed", label=self.label)

    def _on_buffered_amount_low(self) -> None:
        self._drained.set()

    async def wait_open(self, timeout: float | None = None) -> None:
        """Wait until the channel is open.

        Raises:
            ChannelError: If the channel closes first or does not open in time.
        """
        if self.is_open:
            return
        if self.is_closed:
            raise ChannelError(f"Data channel {self.label!r} is closed")
        waiters = [
            asyncio.ensure_future(self._opened.wait()),
            asyncio.ensure_future(self._closed.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        if self.is_closed:
            raise ChannelError(f"Data channel {self.label!r} closed before opening")
        if not self._opened.is_set():
            raise ChannelError(f"Data channel {self.label!r} did not open within {timeout:g}s")

    async def send(self, data: bytes) -> None:
        """Send one binary message, waiting while the send buffer is above the high-water mark."""
        if not self.is_open:
            raise ChannelError(f"Cannot send on data channel {self.label!r}: not open")
        if getattr(self.raw, "bufferedAmount", 0) > self._high_water_mark:
            self._drained.clear()
            await self._drained.wait()
            if self.is_closed:
                raise ChannelError(f"Data channel {self.label!r} closed while sending")
        try:
            self.raw.send(data)
        except Exception as e:
            raise ChannelError(f"Send failed on data channel {self.label!r}: {e}") from e
        self.bytes_sent += len(data)
        BYTES_TRANSFERRED.labels(direction="out").inc(len(data))

    async def receive(self) -> bytes | None:
        """Next inbound message, or ``None`` at the end of the current body.

        Raises:
            ChannelError: If the channel was closed locally.
        """
        if self.is_closed and self._inbound.empty():
            data = _CLOSED
        else:
            data = await self._inbound.get()
        if data is _CLOSED:
            if self._aborted:
                raise ChannelError(f"Data channel {self.label!r} was closed locally")
            return None
        return data

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._aborted = True
        with contextlib.suppress(Exception):
            self.raw.close()
        self._on_close()


class ChannelProvider(ABC):
    """Strategy mapping exchanges onto data channels of one peer session."""

    def __init__(self, session: PeerSession, config: GatewayConfig):
        self.session = session
        self.config = config

    @abstractmethod
    async def acquire(self, exchange: PendingExchange) -> TunnelChannel:
        """Return an open channel bound to ``exchange``."""

    @abstractmethod
    async def release(self, channel: TunnelChannel, reusable: bool) -> None:
        """Unbind ``channel``. ``reusable`` is False when the exchange did not finish cleanly."""


class PerRequestChannelProvider(ChannelProvider):
    """A fresh, uniquely labelled channel for every exchange."""

    def __init__(self, session: PeerSession, config: GatewayConfig):
        super().__init__(session, config)
        self._counter = itertools.count(1)

    def _next_label(self) -> str:
        return f"{self.config.channel_label_prefix}-{next(self._counter)}-{secrets.token_hex(4)}"

    async def acquire(self, exchange: PendingExchange) -> TunnelChannel:
        if self.session.pc is None or not self.session.is_connected:
            raise ChannelError("Peer session is not connected")
        label = self._next_label()
        try:
            raw = self.session.pc.createDataChannel(label, ordered=True)
        except Exception as e:
            raise ChannelError(f"Cannot create data channel: {e}") from e
        channel = TunnelChannel(raw)
        self.session.channels.add(channel)
        try:
            await channel.wait_open(self.config.channel_open_timeout)
        except ChannelError:
            channel.close()
            self.session.channels.discard(channel)
            raise
        channel.exchange = exchange
        ACTIVE_CHANNELS.inc()
        logger.debug("Data channel opened", label=label, exchange=exchange.id)
        return channel

    async def release(self, channel: TunnelChannel, reusable: bool) -> None:
        if channel.exchange is not None:
            channel.exchange = None
            ACTIVE_CHANNELS.dec()
        channel.close()
        self.session.channels.discard(channel)


class SharedChannelProvider(ChannelProvider):
    """Every exchange reuses the bootstrap channel, one at a time.

    Waiters are served in arrival order; exchange N+1 starts only after
    exchange N has been released. A channel released as not reusable is
    closed, which fails the session.
    """

    def __init__(self, session: PeerSession, config: GatewayConfig):
        super().__init__(session, config)
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def acquire(self, exchange: PendingExchange) -> TunnelChannel:
        await self._lock.acquire()
        try:
            channel = self.session.bootstrap
            if channel is None or channel.is_closed:
                raise ChannelError("Shared data channel is closed")
            await channel.wait_open(self.config.channel_open_timeout)
        except BaseException:
            self._lock.release()
            raise
        channel.exchange = exchange
        ACTIVE_CHANNELS.inc()
        return channel

    async def release(self, channel: TunnelChannel, reusable: bool) -> None:
        try:
            if channel.exchange is not None:
                channel.exchange = None
                ACTIVE_CHANNELS.dec()
            if not reusable:
                logger.warning("Shared data channel poisoned, closing", label=channel.label)
                channel.close()
                self.session.mark_failed(ChannelError("Shared data channel closed mid-exchange"))
        finally:
            self._lock.release()


def create_channel_provider(session: PeerSession, config: GatewayConfig) -> ChannelProvider:
    if config.channel_topology is ChannelTopology.SHARED:
        return SharedChannelProvider(session, config)
    return PerRequestChannelProvider(session, config)
