"""Tunnel dispatcher: the entry point the interception layer calls for every request."""

from __future__ import annotations

import asyncio
import contextlib
import html
import time
from functools import partial
from http import HTTPStatus

import structlog

from peergate.core.config import GatewayConfig
from peergate.core.exceptions import ChannelError, NegotiationError, PeerGateError
from peergate.gateway.routing import resolve_service_tag
from peergate.observability.metrics import RELAY_DURATION, RELAYED_REQUESTS, bucket_status
from peergate.protocol.framing import RequestEncoder
from peergate.protocol.http import InterceptedRequest, ResponseBody, TunnelResponse
from peergate.session.negotiator import PeerConnectionFactory, SessionNegotiator, SignalingFactory
from peergate.session.session import PeerSession
from peergate.signaling.client import SignalingClient
from peergate.tunnel.channel import ChannelProvider, TunnelChannel, create_channel_provider
from peergate.tunnel.exchange import PendingExchange

logger = structlog.get_logger()

ERROR_PAGE = """<!DOCTYPE html>
<html>
<head><title>{status} {title}</title></head>
<body>
<h1>{title}</h1>
<p>{message}</p>
<hr><small>peergate</small>
</body>
</html>
"""


def error_response(error: PeerGateError) -> TunnelResponse:
    """Synthesize an HTML response describing ``error``."""
    status = error.http_status
    try:
        reason = HTTPStatus(status).phrase
    except ValueError:
        reason = error.title
    body = ERROR_PAGE.format(
        status=status,
        title=html.escape(error.title),
        message=html.escape(error.message),
    ).encode("utf-8")
    headers = [
        ("Content-Type", "text/html; charset=utf-8"),
        ("Content-Length", str(len(body))),
        ("Cache-Control", "no-store"),
        ("X-Peergate-Error", error.code),
    ]
    return TunnelResponse(status, reason, headers, ResponseBody.from_bytes(body), error=error)


class TunnelDispatcher:
    """Relay intercepted requests to the remote service host.

    Owns at most one live :class:`PeerSession`, created lazily on the first
    relayed request and replaced after it fails. Every ``relay`` call
    resolves to a :class:`TunnelResponse`; failures become synthesized
    error responses rather than exceptions.
    """

    def __init__(
        self,
        config: GatewayConfig | None = None,
        *,
        peer_connection_factory: PeerConnectionFactory | None = None,
        signaling_factory: SignalingFactory | None = None,
    ):
        self.config = config or GatewayConfig()
        self._pc_factory = peer_connection_factory
        self._signaling_factory = signaling_factory or SignalingClient
        self._encoder = RequestEncoder(self.config.http_version)
        self._negotiator: SessionNegotiator | None = None
        self._provider: ChannelProvider | None = None
        # In-flight exchanges and the session each one was relayed on.
        self._exchanges: dict[PendingExchange, PeerSession] = {}
        self._pumps: set[asyncio.Task[bool]] = set()
        self._closed = False

    @property
    def session(self) -> PeerSession | None:
        return self._negotiator.session if self._negotiator is not None else None

    @property
    def active_exchanges(self) -> int:
        return len(self._exchanges)

    def should_relay(self, request: InterceptedRequest) -> bool:
        """Navigations stay with the local shell; everything else goes through the tunnel."""
        return not request.is_navigation

    async def ensure_session(self) -> PeerSession:
        """Return a CONNECTED session, negotiating a new one if needed."""
        if self._closed:
            raise NegotiationError("Dispatcher is closed")
        negotiator = self._negotiator
        if negotiator is None or negotiator.session.is_failed:
            negotiator = await self._replace_session()
        return await negotiator.ensure_ready()

    async def _replace_session(self) -> SessionNegotiator:
        old = self._negotiator
        session = PeerSession()
        session.on_failed(self._on_session_failed)
        signaling = self._signaling_factory(self.config.signaling_url, session.peer_id)
        negotiator = SessionNegotiator(
            self.config,
            session,
            signaling=signaling,
            peer_connection_factory=self._pc_factory,
        )
        self._negotiator = negotiator
        self._provider = create_channel_provider(session, self.config)
        if old is not None:
            logger.info("Replacing failed peer session", old=old.session.peer_id, new=session.peer_id)
            self._abort_exchanges(old.session, ChannelError("Peer session replaced"))
            await old.close()
        return negotiator

    def _on_session_failed(self, session: PeerSession, error: PeerGateError) -> None:
        self._abort_exchanges(session, error)

    def _abort_exchanges(self, session: PeerSession, error: PeerGateError) -> None:
        """Fail every exchange relayed on ``session`` and close its channels."""
        aborted = [exchange for exchange, owner in self._exchanges.items() if owner is session]
        for exchange in aborted:
            exchange.fail(error)
        for channel in list(session.channels):
            channel.close()
        if session.bootstrap is not None:
            session.bootstrap.close()
        if aborted:
            logger.warning(
                "Aborted in-flight exchanges",
                peer_id=session.peer_id,
                count=len(aborted),
                error=error.message,
            )

    async def _acquire(
        self, exchange: PendingExchange
    ) -> tuple[PeerSession, ChannelProvider, TunnelChannel]:
        session = await self.ensure_session()
        provider = self._provider
        if provider is None or provider.session is not session:
            raise NegotiationError("Peer session was replaced during negotiation")
        channel = await provider.acquire(exchange)
        return session, provider, channel

    async def relay(self, request: InterceptedRequest) -> TunnelResponse:
        """Send ``request`` through the tunnel and return once response headers arrive."""
        started = time.monotonic()
        tag = resolve_service_tag(
            request.hostname,
            default=self.config.default_service,
            max_length=self.config.max_tag_length,
        )
        exchange = PendingExchange(request, tag)
        log = logger.bind(exchange=exchange.id, method=request.method, target=request.target, tag=tag)

        try:
            session, provider, channel = await self._acquire(exchange)
        except PeerGateError as e:
            log.warning("Relay failed before sending", error=e.message, code=e.code)
            return self._failed(exchange, e)

        self._exchanges[exchange] = session
        if session.is_failed:
            exchange.fail(session.failure())
        pump = asyncio.create_task(self._pump(exchange, channel))
        self._pumps.add(pump)
        pump.add_done_callback(self._pumps.discard)

        try:
            head = await exchange.wait_head(self.config.response_timeout)
        except PeerGateError as e:
            exchange.fail(e)
            await self._finish_exchange(exchange, channel, provider, pump, False)
            log.warning("Relay failed before headers", error=e.message, code=e.code)
            return error_response(e)

        RELAY_DURATION.observe(time.monotonic() - started)
        log.debug("Relay headers ready", status=head.status, channel=channel.label)
        body = ResponseBody(
            exchange.iter_body(),
            on_close=partial(self._finish_exchange, exchange, channel, provider, pump),
        )
        return TunnelResponse(head.status, head.reason, list(head.headers), body)

    async def _pump(self, exchange: PendingExchange, channel: TunnelChannel) -> bool:
        """Write the request and read the response concurrently on one channel.

        Returns True if the whole request was written before the response ended.
        """
        writer = asyncio.create_task(self._write_request(exchange, channel))
        try:
            while True:
                data = await channel.receive()
                if data is None:
                    exchange.finish()
                    break
                exchange.feed(data)
        except PeerGateError as e:
            exchange.fail(e)
        finally:
            if not writer.done():
                writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer
        return not writer.cancelled()

    async def _write_request(self, exchange: PendingExchange, channel: TunnelChannel) -> None:
        try:
            async for frame in self._encoder.iter_frames(exchange.tag, exchange.request):
                await channel.send(frame)
        except asyncio.CancelledError:
            raise
        except PeerGateError as e:
            exchange.fail(e)
        except Exception as e:
            exchange.fail(ChannelError(f"Request body stream failed: {e}"))

    async def _finish_exchange(
        self,
        exchange: PendingExchange,
        channel: TunnelChannel,
        provider: ChannelProvider,
        pump: asyncio.Task[bool],
        finished: bool,
    ) -> None:
        if not exchange.is_complete:
            exchange.fail(ChannelError("Response body closed before completion"))
        if not pump.done():
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump
        request_written = not pump.cancelled() and pump.exception() is None and pump.result()
        reusable = finished and request_written and exchange.error is None
        await provider.release(channel, reusable)
        self._exchanges.pop(exchange, None)

        if exchange.head is not None:
            status = exchange.head.status
        else:
            status = exchange.error.http_status if exchange.error is not None else 502
        RELAYED_REQUESTS.labels(method=exchange.request.method, status=bucket_status(status)).inc()
        logger.debug(
            "Exchange finished",
            exchange=exchange.id,
            reusable=reusable,
            bytes_received=exchange.bytes_received,
            duration=round(time.monotonic() - exchange.started_at, 3),
        )

    def _failed(self, exchange: PendingExchange, error: PeerGateError) -> TunnelResponse:
        exchange.fail(error)
        RELAYED_REQUESTS.labels(
            method=exchange.request.method, status=bucket_status(error.http_status)
        ).inc()
        return error_response(error)

    async def close(self) -> None:
        """Abort in-flight exchanges and tear down the peer session."""
        if self._closed:
            return
        self._closed = True
        for exchange in list(self._exchanges):
            exchange.fail(ChannelError("Gateway closed"))
        for pump in list(self._pumps):
            pump.cancel()
        if self._pumps:
            await asyncio.gather(*self._pumps, return_exceptions=True)
        if self._negotiator is not None:
            await self._negotiator.close()
        logger.info("Tunnel dispatcher closed")
