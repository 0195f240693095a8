"""Tests for data channel wrappers and channel providers."""

from __future__ import annotations

import asyncio

import pytest

from peergate.core.config import ChannelTopology, GatewayConfig
from peergate.core.exceptions import ChannelError
from peergate.protocol.http import InterceptedRequest
from peergate.session.session import PeerSession, SessionState
from peergate.tunnel.channel import (
    PerRequestChannelProvider,
    SharedChannelProvider,
    TunnelChannel,
    create_channel_provider,
)
from peergate.tunnel.exchange import PendingExchange
from tests.conftest import FakeDataChannel, FakePeerConnection


def _exchange(path: str = "/") -> PendingExchange:
    return PendingExchange(InterceptedRequest(method="GET", url=f"http://svc.test{path}"), "svc")


def _connected_session(pc: FakePeerConnection | None = None) -> PeerSession:
    pc = pc or FakePeerConnection()
    pc.connect()
    raw = pc.createDataChannel("peergate")
    raw.open()
    return PeerSession(state=SessionState.CONNECTED, pc=pc, bootstrap=TunnelChannel(raw))


class TestTunnelChannel:
    """Tests for the byte pipe over one data channel."""

    @pytest.mark.asyncio
    async def test_messages_in_order(self) -> None:
        """Test inbound binary messages are returned in arrival order."""
        raw = FakeDataChannel("c")
        channel = TunnelChannel(raw)
        raw.open()
        raw.deliver(b"one")
        raw.deliver(b"two")

        assert await channel.receive() == b"one"
        assert await channel.receive() == b"two"
        assert channel.bytes_received == 6

    @pytest.mark.asyncio
    async def test_eof_marker_ends_body_keeps_channel(self) -> None:
        """Test the EOF text message ends a body without closing the channel."""
        raw = FakeDataChannel("peergate")
        channel = TunnelChannel(raw)
        raw.open()
        raw.deliver(b"body")
        raw.deliver("EOF")
        raw.deliver(b"next")

        assert await channel.receive() == b"body"
        assert await channel.receive() is None
        assert channel.is_open
        assert await channel.receive() == b"next"

    @pytest.mark.asyncio
    async def test_close_ends_body(self) -> None:
        """Test channel close yields None, repeatedly."""
        raw = FakeDataChannel("c")
        channel = TunnelChannel(raw)
        raw.open()
        raw.deliver(b"last")
        raw.close()

        assert await channel.receive() == b"last"
        assert await channel.receive() is None
        assert await channel.receive() is None
        assert channel.is_closed

    @pytest.mark.asyncio
    async def test_local_close_is_not_end_of_body(self) -> None:
        """Test a reader waiting when the channel is closed locally gets an error."""
        raw = FakeDataChannel("c")
        channel = TunnelChannel(raw)
        raw.open()
        reader = asyncio.create_task(channel.receive())
        await asyncio.sleep(0)

        channel.close()

        with pytest.raises(ChannelError, match="closed locally"):
            await reader
        with pytest.raises(ChannelError):
            await channel.receive()
        assert raw.readyState == "closed"

    @pytest.mark.asyncio
    async def test_eof_marker_survives_local_close(self) -> None:
        """Test an end-of-body marker queued before a local close still ends the body."""
        raw = FakeDataChannel("peergate")
        channel = TunnelChannel(raw)
        raw.open()
        raw.deliver("EOF")
        channel.close()

        assert await channel.receive() is None
        with pytest.raises(ChannelError):
            await channel.receive()

    @pytest.mark.asyncio
    async def test_send_requires_open(self) -> None:
        """Test sending on a channel that is not open raises ChannelError."""
        channel = TunnelChannel(FakeDataChannel("c"))
        with pytest.raises(ChannelError):
            await channel.send(b"x")

    @pytest.mark.asyncio
    async def test_send_waits_for_drain(self) -> None:
        """Test sends pause above the high-water mark until the buffer drains."""
        raw = FakeDataChannel("c")
        channel = TunnelChannel(raw, high_water_mark=10)
        raw.open()
        raw.bufferedAmount = 100

        task = asyncio.create_task(channel.send(b"x"))
        await asyncio.sleep(0.01)
        assert not task.done()

        raw.bufferedAmount = 0
        raw.emit("bufferedamountlow")
        await asyncio.wait_for(task, 1.0)
        assert raw.sent == [b"x"]

    @pytest.mark.asyncio
    async def test_wait_open_timeout(self) -> None:
        """Test a channel that never opens raises ChannelError."""
        channel = TunnelChannel(FakeDataChannel("c"))
        with pytest.raises(ChannelError, match="did not open"):
            await channel.wait_open(0.01)

    @pytest.mark.asyncio
    async def test_wait_open_closed_first(self) -> None:
        """Test a channel closed while opening raises ChannelError."""
        raw = FakeDataChannel("c")
        channel = TunnelChannel(raw)
        asyncio.get_running_loop().call_soon(raw.close)
        with pytest.raises(ChannelError, match="closed before opening"):
            await channel.wait_open(1.0)


class TestPerRequestChannelProvider:
    """Tests for one channel per exchange."""

    @pytest.mark.asyncio
    async def test_unique_labels(self) -> None:
        """Test concurrent exchanges get distinct channels."""
        session = _connected_session()
        provider = PerRequestChannelProvider(session, GatewayConfig())

        first, second = await asyncio.gather(
            provider.acquire(_exchange("/a")), provider.acquire(_exchange("/b"))
        )

        assert first is not second
        assert first.label != second.label
        assert first.label.startswith("px-")
        assert len(session.channels) == 2

    @pytest.mark.asyncio
    async def test_release_closes_channel(self) -> None:
        """Test released channels are closed and forgotten."""
        session = _connected_session()
        provider = PerRequestChannelProvider(session, GatewayConfig())
        channel = await provider.acquire(_exchange())

        await provider.release(channel, reusable=True)

        assert channel.is_closed
        assert channel.exchange is None
        assert session.channels == set()

    @pytest.mark.asyncio
    async def test_requires_connected_session(self) -> None:
        """Test acquiring on a session that is not connected fails."""
        provider = PerRequestChannelProvider(PeerSession(), GatewayConfig())
        with pytest.raises(ChannelError):
            await provider.acquire(_exchange())


class TestSharedChannelProvider:
    """Tests for the serialized shared channel."""

    @pytest.mark.asyncio
    async def test_second_exchange_waits(self) -> None:
        """Test exchange N+1 starts only after exchange N is released."""
        session = _connected_session()
        provider = SharedChannelProvider(session, GatewayConfig())
        first = _exchange("/1")
        second = _exchange("/2")

        channel = await provider.acquire(first)
        waiter = asyncio.create_task(provider.acquire(second))
        await asyncio.sleep(0.01)
        assert not waiter.done()
        assert channel.exchange is first

        await provider.release(channel, reusable=True)
        again = await asyncio.wait_for(waiter, 1.0)

        assert again is channel
        assert again.exchange is second

    @pytest.mark.asyncio
    async def test_fifo_order(self) -> None:
        """Test waiters are served in arrival order."""
        session = _connected_session()
        provider = SharedChannelProvider(session, GatewayConfig())
        order: list[str] = []

        async def run(name: str) -> None:
            channel = await provider.acquire(_exchange(f"/{name}"))
            order.append(name)
            await asyncio.sleep(0)
            await provider.release(channel, reusable=True)

        holder = await provider.acquire(_exchange("/holder"))
        tasks = [asyncio.create_task(run(name)) for name in ("a", "b", "c")]
        await asyncio.sleep(0.01)
        await provider.release(holder, reusable=True)
        await asyncio.gather(*tasks)

        assert order == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_poisoned_channel_fails_session(self) -> None:
        """Test releasing as not reusable closes the channel and fails the session."""
        session = _connected_session()
        provider = SharedChannelProvider(session, GatewayConfig())
        channel = await provider.acquire(_exchange())

        await provider.release(channel, reusable=False)

        assert channel.is_closed
        assert session.state is SessionState.FAILED
        assert not provider.busy
        with pytest.raises(ChannelError):
            await provider.acquire(_exchange())


class TestCreateChannelProvider:
    """Tests for topology selection."""

    def test_default_is_per_request(self) -> None:
        """Test per-request topology is the default."""
        provider = create_channel_provider(PeerSession(), GatewayConfig())
        assert isinstance(provider, PerRequestChannelProvider)

    def test_shared(self) -> None:
        """Test shared topology selection."""
        config = GatewayConfig(channel_topology=ChannelTopology.SHARED)
        assert isinstance(create_channel_provider(PeerSession(), config), SharedChannelProvider)

    def test_from_string(self) -> None:
        """Test the topology can be configured by its string value."""
        config = GatewayConfig(channel_topology="shared")
        assert isinstance(create_channel_provider(PeerSession(), config), SharedChannelProvider)
