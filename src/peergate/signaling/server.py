"""Rendezvous server: routes control messages between registered peers."""

from __future__ import annotations

import json

import structlog
from aiohttp import WSMsgType, web

from peergate.core.config import SignalingServerConfig

logger = structlog.get_logger()


class SignalingServer:
    """WebSocket rendezvous that forwards frames to the peer named in ``target``.

    Frames are relayed verbatim; the server only inspects ``type`` on the
    first frame and ``target`` afterwards.
    """

    def __init__(self, config: SignalingServerConfig | None = None):
        self.config = config or SignalingServerConfig()
        self._peers: dict[str, web.WebSocketResponse] = {}
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    @property
    def peers(self) -> list[str]:
        return sorted(self._peers)

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(self.config.path, self._handle_websocket)
        app.router.add_get("/health", self._handle_health_check)
        return app

    async def start(self) -> None:
        self._app = self.create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        logger.info(
            "Signaling server started",
            host=self.config.host,
            port=self.config.port,
            path=self.config.path,
        )

    async def stop(self) -> None:
        logger.info("Stopping signaling server...")
        for ws in list(self._peers.values()):
            await ws.close()
        self._peers.clear()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Signaling server stopped")

    async def _handle_health_check(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy", "peers": len(self._peers)})

    async def _handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        peer_id = await self._await_register(ws)
        if peer_id is None:
            logger.warning("Client did not register correctly, closing", remote=request.remote)
            await ws.close()
            return ws

        previous = self._peers.get(peer_id)
        if previous is not None and previous is not ws:
            logger.info("Peer re-registered, replacing old connection", peer_id=peer_id)
            await previous.close()
        self._peers[peer_id] = ws
        logger.info("Peer registered", peer_id=peer_id, peers=len(self._peers))

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._route(peer_id, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("Peer connection error", peer_id=peer_id, error=str(ws.exception()))
                    break
        finally:
            if self._peers.get(peer_id) is ws:
                del self._peers[peer_id]
            logger.info("Peer disconnected", peer_id=peer_id, peers=len(self._peers))
        return ws

    async def _await_register(self, ws: web.WebSocketResponse) -> str | None:
        msg = await ws.receive()
        if msg.type != WSMsgType.TEXT:
            return None
        try:
            data = json.loads(msg.data)
        except ValueError:
            return None
        if not isinstance(data, dict) or data.get("type") != "register":
            return None
        peer_id = data.get("id")
        if not isinstance(peer_id, str) or not peer_id:
            return None
        return peer_id

    async def _route(self, sender: str, text: str) -> None:
        try:
            data = json.loads(text)
        except ValueError:
            logger.warning("Dropping non-JSON frame", sender=sender)
            return
        if not isinstance(data, dict):
            logger.warning("Dropping non-object frame", sender=sender)
            return
        target = data.get("target")
        if not isinstance(target, str):
            logger.warning("Message without target", sender=sender, type=data.get("type"))
            return
        target_ws = self._peers.get(target)
        if target_ws is None or target_ws.closed:
            logger.warning("Target peer not found", sender=sender, target=target)
            return
        try:
            await target_ws.send_str(text)
        except ConnectionResetError as e:
            logger.warning("Failed to forward message", target=target, error=str(e))
            return
        logger.debug("Message forwarded", sender=sender, target=target, type=data.get("type"))
