"""Service host: the remote peer that answers offers and serves relayed requests."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any

import structlog
from aiortc import RTCSessionDescription

from peergate.core.config import HostConfig
from peergate.core.exceptions import PeerGateError, SignalingError
from peergate.protocol.framing import RequestDecoder, encode_request_head
from peergate.protocol.http import HeaderList, RequestHead, replace_header
from peergate.protocol.signaling import Answer, Candidate, Offer, Register
from peergate.session.negotiator import (
    FAILED_CONNECTION_STATES,
    PeerConnectionFactory,
    create_peer_connection,
    parse_remote_candidate,
)
from peergate.signaling.client import SignalingClient
from peergate.tunnel.channel import EOF_MARKER, TunnelChannel

logger = structlog.get_logger()


def status_response(status: int, reason: str, message: str) -> bytes:
    body = message.encode("utf-8")
    head = (
        f"HTTP/1.1 {status} {reason}\r\n"
        "Content-Type: text/plain; charset=utf-8\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n"
        "\r\n"
    )
    return head.encode("utf-8") + body


def split_address(address: str) -> tuple[str, int]:
    host, _, port = address.rpartition(":")
    return host, int(port)


class ServiceHost:
    """Answer gateway offers and bridge every data channel to a local backend.

    Each incoming channel carries ``[tag][request head][body...]``. The tag
    picks a backend from ``config.services``; the backend's raw response is
    streamed back and the body is ended by closing the channel, or by the
    EOF marker on the shared channel.
    """

    def __init__(
        self,
        config: HostConfig | None = None,
        *,
        signaling: SignalingClient | None = None,
        peer_connection_factory: PeerConnectionFactory | None = None,
    ):
        self.config = config or HostConfig()
        self.signaling = signaling or SignalingClient(self.config.signaling_url, self.config.peer_id)
        self._pc_factory = peer_connection_factory or create_peer_connection
        self._peers: dict[str, Any] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = asyncio.Event()
        self.exchanges_served = 0

    @property
    def peers(self) -> list[str]:
        return sorted(self._peers)

    async def start(self) -> None:
        self.signaling.on_message(self._on_signaling_message)
        self.signaling.on_close(self._on_signaling_close)
        await self.signaling.connect()
        logger.info(
            "Service host registered",
            peer_id=self.config.peer_id,
            services=sorted(self.config.services),
        )

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def _on_signaling_close(self, error: SignalingError | None) -> None:
        logger.error("Service host lost signaling connection", error=error.message if error else None)
        self._closed.set()

    async def _on_signaling_message(self, message: Register | Offer | Answer | Candidate) -> None:
        if isinstance(message, Offer):
            try:
                await self.handle_offer(message)
            except Exception as e:
                logger.error("Failed to answer offer", sender=message.sender, error=str(e))
                await self._drop_peer(message.sender)
        elif isinstance(message, Candidate):
            pc = self._peers.get(message.sender or "")
            if pc is None or not message.candidate:
                return
            try:
                candidate = parse_remote_candidate(message.candidate)
                if candidate is not None:
                    await pc.addIceCandidate(candidate)
            except Exception as e:
                logger.warning("Failed to add remote candidate", sender=message.sender, error=str(e))

    async def handle_offer(self, offer: Offer) -> None:
        """Create a peer connection for ``offer.sender`` and send back the answer."""
        await self._drop_peer(offer.sender)
        pc = self._pc_factory(self.config.ice_servers)
        self._peers[offer.sender] = pc
        sender = offer.sender

        @pc.on("datachannel")
        def on_datachannel(raw: Any) -> None:
            channel = TunnelChannel(raw)
            self._spawn(self._serve_channel(channel))

        @pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            state = pc.connectionState
            logger.debug("Peer connection state", sender=sender, state=state)
            if state in FAILED_CONNECTION_STATES and self._peers.get(sender) is pc:
                await self._drop_peer(sender)

        await pc.setRemoteDescription(RTCSessionDescription(sdp=offer.sdp, type="offer"))
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        sdp = pc.localDescription.sdp
        await self.signaling.send_answer(target=sender, sender=self.config.peer_id, sdp=sdp)
        logger.info("Answer sent", target=sender, sdp_len=len(sdp))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _drop_peer(self, sender: str) -> None:
        pc = self._peers.pop(sender, None)
        if pc is not None:
            logger.info("Closing peer connection", sender=sender)
            with contextlib.suppress(Exception):
                await pc.close()

    async def _serve_channel(self, channel: TunnelChannel) -> None:
        shared = channel.label == self.config.shared_label
        logger.debug("Data channel accepted", label=channel.label, shared=shared)
        clean = False
        try:
            await channel.wait_open(self.config.backend_connect_timeout)
            while not channel.is_closed:
                served = await self.serve_exchange(channel, shared=shared)
                if not served or not shared:
                    break
            clean = True
        except PeerGateError as e:
            logger.warning("Channel exchange failed", label=channel.label, error=e.message)
        finally:
            # A shared channel left mid-frame would stall every later exchange on it.
            if not shared or not clean:
                channel.close()

    async def serve_exchange(self, channel: TunnelChannel, *, shared: bool = False) -> bool:
        """Serve one request read from ``channel``. Returns False if the channel ended first."""
        decoder = RequestDecoder()
        head: RequestHead | None = None
        body = b""
        while head is None:
            data = await channel.receive()
            if data is None:
                return False
            head, body = decoder.feed(data)

        tag = decoder.tag or ""
        log = logger.bind(label=channel.label, tag=tag, method=head.method, target=head.target)
        address = self.config.services.get(tag)
        if address is None:
            log.warning("Unknown service")
            await channel.send(status_response(502, "Bad Gateway", f"Unknown service: {tag}"))
            await self._end_body(channel, shared)
            return True

        host, port = split_address(address)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), self.config.backend_connect_timeout
            )
        except (OSError, TimeoutError) as e:
            log.warning("Backend unavailable", backend=address, error=str(e))
            await channel.send(status_response(502, "Bad Gateway", f"Backend unavailable: {address}"))
            await self._end_body(channel, shared)
            return True

        uploader = asyncio.create_task(self._upload(channel, writer, body))
        try:
            writer.write(self._backend_head(head, address))
            while True:
                chunk = await reader.read(self.config.read_chunk_size)
                if not chunk:
                    break
                await channel.send(chunk)
        except OSError as e:
            log.warning("Backend connection error", backend=address, error=str(e))
        finally:
            uploader.cancel()
            with contextlib.suppress(asyncio.CancelledError, OSError):
                await uploader
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()

        await self._end_body(channel, shared)
        self.exchanges_served += 1
        log.info("Exchange served", backend=address)
        return True

    def _backend_head(self, head: RequestHead, address: str) -> bytes:
        headers: HeaderList = replace_header(head.headers, "Host", address)
        headers = replace_header(headers, "Connection", "close")
        return encode_request_head(head.method, head.target, self.config.backend_http_version, headers)

    async def _upload(self, channel: TunnelChannel, writer: asyncio.StreamWriter, first: bytes) -> None:
        if first:
            writer.write(first)
            await writer.drain()
        while True:
            data = await channel.receive()
            if data is None:
                return
            writer.write(data)
            await writer.drain()

    async def _end_body(self, channel: TunnelChannel, shared: bool) -> None:
        if not shared:
            channel.close()
            return
        try:
            channel.raw.send(EOF_MARKER)
        except Exception as e:
            logger.warning("Failed to send end-of-body marker", label=channel.label, error=str(e))
            channel.close()

    async def stop(self) -> None:
        logger.info("Stopping service host...")
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        for sender in list(self._peers):
            await self._drop_peer(sender)
        await self.signaling.close()
        self._closed.set()
        logger.info("Service host stopped")
