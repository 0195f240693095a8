"""Shared fixtures: in-memory stand-ins for peer connections, data channels and signaling."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any

import pytest
from pyee.asyncio import AsyncIOEventEmitter

from peergate.core.config import ChannelTopology, GatewayConfig
from peergate.gateway.dispatcher import TunnelDispatcher
from peergate.protocol.framing import RequestDecoder
from peergate.protocol.http import InterceptedRequest, RequestHead
from peergate.protocol.signaling import Answer, Offer


class FakeDataChannel(AsyncIOEventEmitter):
    """Data channel emitting the same events as aiortc's RTCDataChannel."""

    def __init__(self, label: str) -> None:
        super().__init__()
        self.label = label
        self.readyState = "connecting"
        self.bufferedAmount = 0
        self.bufferedAmountLowThreshold = 0
        self.sent: list[bytes | str] = []
        self.on_send: Callable[[bytes | str], None] | None = None

    def open(self) -> None:
        if self.readyState == "connecting":
            self.readyState = "open"
            self.emit("open")

    def send(self, data: bytes | str) -> None:
        if self.readyState != "open":
            raise RuntimeError("RTCDataChannel is not open")
        self.sent.append(data)
        if self.on_send is not None:
            self.on_send(data)

    def deliver(self, data: bytes | str) -> None:
        self.emit("message", data)

    def close(self) -> None:
        if self.readyState == "closed":
            return
        self.readyState = "closed"
        self.emit("close")


class FakePeerConnection(AsyncIOEventEmitter):
    """Peer connection whose gathering and connectivity are driven by the test."""

    def __init__(self, *, auto_gather: bool = True) -> None:
        super().__init__()
        self.auto_gather = auto_gather
        self.connectionState = "new"
        self.iceGatheringState = "new"
        self.localDescription: Any = None
        self.remoteDescription: Any = None
        self.channels: list[FakeDataChannel] = []
        self.candidates: list[Any] = []
        self.remote_description_calls = 0
        self.on_channel: Callable[[FakeDataChannel], None] | None = None

    def createDataChannel(self, label: str, ordered: bool = True) -> FakeDataChannel:
        channel = FakeDataChannel(label)
        self.channels.append(channel)
        if self.on_channel is not None:
            self.on_channel(channel)
        if self.connectionState == "connected":
            asyncio.get_running_loop().call_soon(channel.open)
        return channel

    async def createOffer(self) -> SimpleNamespace:
        return SimpleNamespace(sdp="v=0\r\no=- offer\r\n", type="offer")

    async def createAnswer(self) -> SimpleNamespace:
        return SimpleNamespace(sdp="v=0\r\no=- answer\r\n", type="answer")

    async def setLocalDescription(self, description: Any) -> None:
        self.localDescription = description
        self.iceGatheringState = "gathering"
        if self.auto_gather:
            self.complete_gathering()

    def complete_gathering(self) -> None:
        self.iceGatheringState = "complete"
        self.localDescription = SimpleNamespace(
            sdp=self.localDescription.sdp + "a=candidate:1 1 udp 1 10.0.0.1 9 typ host\r\n",
            type=self.localDescription.type,
        )
        self.emit("icegatheringstatechange")

    async def setRemoteDescription(self, description: Any) -> None:
        self.remote_description_calls += 1
        if "invalid" in description.sdp:
            raise ValueError("Invalid SDP")
        self.remoteDescription = description

    async def addIceCandidate(self, candidate: Any) -> None:
        self.candidates.append(candidate)

    def set_connection_state(self, state: str) -> None:
        self.connectionState = state
        self.emit("connectionstatechange")

    def connect(self) -> None:
        self.set_connection_state("connected")
        for channel in self.channels:
            channel.open()

    async def close(self) -> None:
        for channel in self.channels:
            channel.close()
        if self.connectionState != "closed":
            self.set_connection_state("closed")


class FakeSignaling:
    """SignalingClient double recording what was sent."""

    def __init__(self, url: str = "ws://signaling.test/ws", peer_id: str = "gateway-test") -> None:
        self.url = url
        self.peer_id = peer_id
        self.connected = False
        self.connect_error: Exception | None = None
        self.offers: list[Offer] = []
        self.answers: list[dict[str, Any]] = []
        self.on_offer: Callable[[FakeSignaling, Offer], Any] | None = None
        self._message_handlers: list[Callable[[Any], Any]] = []
        self._close_handlers: list[Callable[[Any], None]] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    def on_message(self, handler: Callable[[Any], Any]) -> None:
        self._message_handlers.append(handler)

    def on_close(self, handler: Callable[[Any], None]) -> None:
        self._close_handlers.append(handler)

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def send_offer(self, target: str, sender: str, sdp: str) -> None:
        offer = Offer(target=target, sender=sender, sdp=sdp)
        self.offers.append(offer)
        if self.on_offer is not None:
            result = self.on_offer(self, offer)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def send_answer(self, target: str, sender: str, sdp: str) -> None:
        self.answers.append({"target": target, "sender": sender, "sdp": sdp})

    async def deliver(self, message: Any) -> None:
        for handler in list(self._message_handlers):
            result = handler(message)
            if inspect.isawaitable(result):
                await result

    def drop(self, error: Exception | None = None) -> None:
        for handler in list(self._close_handlers):
            handler(error)

    async def close(self) -> None:
        self.connected = False


def http_response(
    status: int = 200,
    reason: str = "OK",
    headers: list[tuple[str, str]] | None = None,
    body: bytes = b"",
) -> bytes:
    lines = [f"HTTP/1.1 {status} {reason}"]
    lines.extend(f"{name}: {value}" for name, value in headers or [])
    return ("\r\n".join(lines) + "\r\n\r\n").encode() + body


@dataclass
class HostExchange:
    """One request as seen by the scripted host."""

    channel: FakeDataChannel
    tag: str
    head: RequestHead
    body: bytearray = field(default_factory=bytearray)
    shared: bool = False

    def send(self, data: bytes) -> None:
        self.channel.deliver(data)

    def end(self) -> None:
        if self.shared:
            self.channel.deliver("EOF")
        else:
            self.channel.close()

    def respond(
        self,
        status: int = 200,
        reason: str = "OK",
        headers: list[tuple[str, str]] | None = None,
        body: bytes = b"",
    ) -> None:
        self.send(http_response(status, reason, headers, body))
        self.end()


class ScriptedHost:
    """Plays the remote service host on fake data channels.

    ``handler`` is called once per decoded request head; by default it
    answers 200 with the request target as body.
    """

    def __init__(self, shared_label: str = "peergate") -> None:
        self.shared_label = shared_label
        self.exchanges: list[HostExchange] = []
        self.handler: Callable[[HostExchange], None] = self.echo_target
        self._decoders: dict[str, RequestDecoder] = {}
        self._current: dict[str, HostExchange] = {}

    @staticmethod
    def echo_target(exchange: HostExchange) -> None:
        loop = asyncio.get_running_loop()
        body = exchange.head.target.encode()
        loop.call_soon(
            exchange.respond, 200, "OK", [("Content-Length", str(len(body)))], body
        )

    def attach(self, channel: FakeDataChannel) -> None:
        channel.on_send = lambda data: self._on_send(channel, data)

    def _on_send(self, channel: FakeDataChannel, data: bytes | str) -> None:
        if isinstance(data, str):
            return
        shared = channel.label == self.shared_label
        decoder = self._decoders.setdefault(channel.label, RequestDecoder())
        head, body = decoder.feed(data)
        if head is not None:
            exchange = HostExchange(channel, decoder.tag or "", head, bytearray(body), shared)
            self.exchanges.append(exchange)
            self._current[channel.label] = exchange
            if shared:
                # Next message on the shared channel starts a new frame.
                self._decoders[channel.label] = RequestDecoder()
            self.handler(exchange)
        elif body and channel.label in self._current:
            self._current[channel.label].body.extend(body)


class TunnelHarness:
    """A dispatcher wired to fake peer connections and a scripted host."""

    def __init__(self, config: GatewayConfig | None = None) -> None:
        self.config = config or GatewayConfig(negotiation_timeout=2.0, channel_open_timeout=1.0)
        self.host = ScriptedHost(self.config.bootstrap_label)
        self.pcs: list[FakePeerConnection] = []
        self.signalings: list[FakeSignaling] = []
        self.answer_offers = True
        self.connect_error: Exception | None = None
        self.dispatcher = TunnelDispatcher(
            self.config,
            peer_connection_factory=self._make_pc,
            signaling_factory=self._make_signaling,
        )

    def _make_pc(self, ice_servers: list[dict[str, Any]]) -> FakePeerConnection:
        pc = FakePeerConnection()
        pc.on_channel = self.host.attach
        self.pcs.append(pc)
        return pc

    def _make_signaling(self, url: str, peer_id: str) -> FakeSignaling:
        signaling = FakeSignaling(url, peer_id)
        signaling.connect_error = self.connect_error
        signaling.on_offer = self._answer
        self.signalings.append(signaling)
        return signaling

    async def _answer(self, signaling: FakeSignaling, offer: Offer) -> None:
        if not self.answer_offers:
            return
        await signaling.deliver(Answer(sdp="v=0\r\no=- answer\r\n"))
        self.pcs[-1].connect()


def make_request(
    url: str = "http://api.example.test/items",
    method: str = "GET",
    headers: list[tuple[str, str]] | None = None,
    body: list[bytes] | None = None,
    mode: str = "cors",
) -> InterceptedRequest:
    async def _body():
        for chunk in body or []:
            yield chunk

    return InterceptedRequest(
        method=method,
        url=url,
        headers=headers or [],
        body=_body() if body is not None else None,
        mode=mode,
    )


@pytest.fixture
def harness() -> TunnelHarness:
    return TunnelHarness()


@pytest.fixture
def shared_harness() -> TunnelHarness:
    return TunnelHarness(
        GatewayConfig(
            channel_topology=ChannelTopology.SHARED,
            negotiation_timeout=2.0,
            channel_open_timeout=1.0,
        )
    )
