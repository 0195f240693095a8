"""HTTP interception layer in front of the tunnel dispatcher."""

from __future__ import annotations

import contextlib
import html

import structlog
from aiohttp import web

from peergate.core.config import GatewayConfig
from peergate.core.exceptions import PeerGateError
from peergate.gateway.dispatcher import TunnelDispatcher
from peergate.observability.metrics import generate_metrics, get_content_type
from peergate.protocol.http import HeaderList, InterceptedRequest

logger = structlog.get_logger()

LOOP_HEADER = "X-Peer-Proxy"
INTERNAL_PREFIX = "/__peergate"

HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

SHELL_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>peergate</title></head>
<body>
<h1>peergate gateway</h1>
<p>Requests from this page are relayed to <code>{target}</code> over a peer connection.</p>
<p>Session: <code>{state}</code></p>
</body>
</html>
"""


def _filter_headers(headers: HeaderList) -> HeaderList:
    return [(k, v) for k, v in headers if k.lower() not in HOP_BY_HOP]


class GatewayServer:
    """aiohttp server converting incoming requests into tunnel relays.

    Navigations get the local shell page, requests already marked with
    ``X-Peer-Proxy`` are rejected as loops, everything else is relayed and
    streamed back as it arrives.
    """

    def __init__(
        self,
        config: GatewayConfig | None = None,
        host: str = "127.0.0.1",
        port: int = 8080,
        dispatcher: TunnelDispatcher | None = None,
    ):
        self.config = config or GatewayConfig()
        self.host = host
        self.port = port
        self.dispatcher = dispatcher or TunnelDispatcher(self.config)
        self._runner: web.AppRunner | None = None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(f"{INTERNAL_PREFIX}/health", self._handle_health_check)
        app.router.add_get(f"{INTERNAL_PREFIX}/metrics", self._handle_metrics)
        app.router.add_route("*", "/{path:.*}", self._handle_request)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(
            "Gateway started",
            host=self.host,
            port=self.port,
            target=self.config.target_peer_id,
            topology=self.config.channel_topology.value,
        )

    async def stop(self) -> None:
        logger.info("Stopping gateway...")
        await self.dispatcher.close()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Gateway stopped")

    async def _handle_health_check(self, request: web.Request) -> web.Response:
        session = self.dispatcher.session
        return web.json_response(
            {
                "status": "healthy",
                "session": session.state.value if session else "idle",
                "peer_id": session.peer_id if session else None,
                "active_exchanges": self.dispatcher.active_exchanges,
            }
        )

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        return web.Response(body=generate_metrics(), headers={"Content-Type": get_content_type()})

    def to_intercepted(self, request: web.Request) -> InterceptedRequest:
        headers: HeaderList = [
            (k, v) for k, v in request.headers.items() if k.lower() not in HOP_BY_HOP
        ]
        headers.append((LOOP_HEADER, "1"))
        body = request.content.iter_any() if request.body_exists else None
        return InterceptedRequest(
            method=request.method,
            url=str(request.url),
            headers=headers,
            body=body,
            mode=request.headers.get("Sec-Fetch-Mode", "cors").lower(),
        )

    async def _handle_request(self, request: web.Request) -> web.StreamResponse:
        if LOOP_HEADER in request.headers:
            logger.warning("Loop detected", path=request.path_qs)
            return web.Response(text="Loop Detected", status=502, content_type="text/plain")

        intercepted = self.to_intercepted(request)
        if not self.dispatcher.should_relay(intercepted):
            return self._shell_response()

        result = await self.dispatcher.relay(intercepted)
        response = web.StreamResponse(status=result.status, reason=result.reason or None)
        for name, value in _filter_headers(result.headers):
            response.headers.add(name, value)

        try:
            await response.prepare(request)
            async for chunk in result.body:
                await response.write(chunk)
            await response.write_eof()
        except PeerGateError as e:
            # Headers already sent.
            logger.warning("Response body aborted", path=request.path_qs, error=e.message)
            if request.transport is not None:
                request.transport.close()
        except (ConnectionResetError, OSError) as e:
            logger.debug("Client went away mid-response", path=request.path_qs, error=str(e))
        finally:
            with contextlib.suppress(Exception):
                await result.body.aclose()

        logger.info(
            "Relayed",
            method=request.method,
            path=request.path_qs,
            status=result.status,
            synthesized=result.synthesized,
            bytes=result.body.bytes_read,
        )
        return response

    def _shell_response(self) -> web.Response:
        session = self.dispatcher.session
        page = SHELL_PAGE.format(
            target=html.escape(self.config.target_peer_id),
            state=session.state.value if session else "idle",
        )
        return web.Response(text=page, content_type="text/html")
