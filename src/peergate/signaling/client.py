"""Signaling client: one control WebSocket to the rendezvous server."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp
import structlog

from peergate.core.exceptions import SignalingError
from peergate.protocol.signaling import (
    Answer,
    Candidate,
    Offer,
    Register,
    decode_signaling,
    encode_signaling,
)

logger = structlog.get_logger()

MessageHandler = Callable[[Register | Offer | Answer | Candidate], Awaitable[None] | None]
CloseHandler = Callable[[SignalingError | None], None]


class SignalingClient:
    """Exchange control messages with exactly one rendezvous server.

    Holds no session state: decoded messages are handed to the registered
    handlers in arrival order, one at a time.
    """

    def __init__(
        self,
        url: str,
        peer_id: str,
        *,
        http_session: aiohttp.ClientSession | None = None,
        heartbeat: float | None = 30.0,
        connect_timeout: float = 10.0,
    ) -> None:
        self.url = url
        self.peer_id = peer_id
        self._http_session = http_session
        self._owns_session = http_session is None
        self._heartbeat = heartbeat
        self._connect_timeout = connect_timeout
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._message_handlers: list[MessageHandler] = []
        self._close_handlers: list[CloseHandler] = []
        self._closing = False

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def on_message(self, handler: MessageHandler) -> None:
        self._message_handlers.append(handler)

    def on_close(self, handler: CloseHandler) -> None:
        self._close_handlers.append(handler)

    async def connect(self) -> None:
        """Open the control connection and register immediately.

        Raises:
            SignalingError: If the server cannot be reached or the upgrade is rejected.
        """
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        logger.info("Connecting to signaling server", url=self.url, peer_id=self.peer_id)
        try:
            self._ws = await asyncio.wait_for(
                self._http_session.ws_connect(self.url, heartbeat=self._heartbeat),
                self._connect_timeout,
            )
            await self.send(Register(id=self.peer_id))
        except (aiohttp.ClientError, OSError, TimeoutError) as e:
            await self._release_http_session()
            raise SignalingError(f"Cannot reach signaling server {self.url}: {e}") from e

        logger.debug("Registered with signaling server", peer_id=self.peer_id)
        self._reader_task = asyncio.create_task(self._read_loop(self._ws))

    async def send(self, message: Register | Offer | Answer | Candidate) -> None:
        if self._ws is None or self._ws.closed:
            raise SignalingError("Signaling connection is not open")
        try:
            await self._ws.send_str(encode_signaling(message))
        except (aiohttp.ClientError, ConnectionError) as e:
            raise SignalingError(f"Failed to send {message.type} message: {e}") from e

    async def send_offer(self, target: str, sender: str, sdp: str) -> None:
        await self.send(Offer(target=target, sender=sender, sdp=sdp))

    async def send_answer(self, target: str, sender: str, sdp: str) -> None:
        await self.send(Answer(target=target, sender=sender, sdp=sdp))

    async def send_candidate(
        self, target: str, sender: str, candidate: dict[str, Any] | None
    ) -> None:
        await self.send(Candidate(target=target, sender=sender, candidate=candidate))

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        error: SignalingError | None = None
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    error = SignalingError(f"Signaling connection error: {ws.exception()}")
                    break
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = SignalingError(f"Signaling connection failed: {e}")
        finally:
            if not self._closing:
                if error is None:
                    error = SignalingError("Signaling server closed the connection")
                logger.warning("Signaling connection lost", url=self.url, error=error.message)
                self._notify_close(error)

    async def _dispatch(self, data: str) -> None:
        try:
            message = decode_signaling(data)
        except ValueError as e:
            logger.warning("Dropping malformed signaling message", error=str(e), size=len(data))
            return
        logger.debug("Signaling message received", type=message.type)
        for handler in list(self._message_handlers):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Signaling handler failed", type=message.type, error=str(e))

    def _notify_close(self, error: SignalingError | None) -> None:
        for handler in list(self._close_handlers):
            try:
                handler(error)
            except Exception as e:
                logger.warning("Signaling close hook error", error=str(e))

    async def _release_http_session(self) -> None:
        if self._owns_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def close(self) -> None:
        """Close the control connection. Close handlers are not invoked."""
        self._closing = True
        if self._ws is not None and not self._ws.closed:
            with contextlib.suppress(Exception):
                await self._ws.close()
        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None
        self._ws = None
        await self._release_http_session()
