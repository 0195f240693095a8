"""Peer session negotiation.

The negotiator owns the ``RTCPeerConnection`` of one :class:`PeerSession`.
It creates the offer together with the bootstrap data channel, waits for
candidate gathering to finish, sends the complete offer over signaling and
applies the first answer that comes back. Candidates are never trickled
from this side.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable
from typing import Any

import structlog
from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from peergate.core.config import GatewayConfig
from peergate.core.exceptions import (
    NegotiationError,
    NegotiationTimeoutError,
    PeerGateError,
    SignalingError,
)
from peergate.observability.metrics import ACTIVE_SESSIONS, NEGOTIATIONS
from peergate.protocol.signaling import Answer, Candidate, Offer, Register
from peergate.session.session import PeerSession, SessionState
from peergate.signaling.client import SignalingClient
from peergate.tunnel.channel import TunnelChannel

logger = structlog.get_logger()

PeerConnectionFactory = Callable[[list[dict[str, Any]]], Any]
SignalingFactory = Callable[[str, str], SignalingClient]

FAILED_CONNECTION_STATES = frozenset({"failed", "disconnected", "closed"})


def create_peer_connection(ice_servers: list[dict[str, Any]]) -> RTCPeerConnection:
    config = RTCConfiguration(iceServers=[RTCIceServer(**server) for server in ice_servers])
    return RTCPeerConnection(configuration=config)


def parse_remote_candidate(init: dict[str, Any]) -> Any | None:
    """Convert a browser-style ``RTCIceCandidateInit`` dict into an aiortc candidate.

    Returns None for the empty end-of-candidates marker.
    """
    text = init.get("candidate") or ""
    if text.startswith("candidate:"):
        text = text[len("candidate:") :]
    if not text:
        return None
    candidate = candidate_from_sdp(text)
    sdp_mid = init.get("sdpMid")
    sdp_mline_index = init.get("sdpMLineIndex")
    candidate.sdpMid = str(sdp_mid) if sdp_mid is not None else None
    candidate.sdpMLineIndex = int(sdp_mline_index) if sdp_mline_index is not None else None
    return candidate


class SessionNegotiator:
    """Drives a :class:`PeerSession` from IDLE to CONNECTED or FAILED.

    Concurrent ``ensure_ready()`` callers share one in-flight attempt and
    one deadline. Readiness requires all of: candidate gathering complete,
    offer sent, answer applied, and a connected transport (connection state
    ``connected`` or the bootstrap channel open).
    """

    def __init__(
        self,
        config: GatewayConfig,
        session: PeerSession | None = None,
        *,
        signaling: SignalingClient | None = None,
        peer_connection_factory: PeerConnectionFactory | None = None,
    ):
        self.config = config
        self.session = session or PeerSession()
        self.signaling = signaling or SignalingClient(config.signaling_url, self.session.peer_id)
        self._pc_factory = peer_connection_factory or create_peer_connection
        self._ready: asyncio.Future[PeerSession] = asyncio.get_running_loop().create_future()
        self._task: asyncio.Task[None] | None = None
        self._deadline: asyncio.TimerHandle | None = None
        self._gathering_done = asyncio.Event()
        self._offer_sent = False
        self._answer_received = False
        self._answer_applied = False
        self._pending_candidates: list[dict[str, Any]] = []
        self._closed = False
        self._live = False

        self.signaling.on_message(self._on_signaling_message)
        self.signaling.on_close(self._on_signaling_close)

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def offer_sent(self) -> bool:
        return self._offer_sent

    @property
    def answer_applied(self) -> bool:
        return self._answer_applied

    async def ensure_ready(self) -> PeerSession:
        """Return the session once CONNECTED, starting negotiation on first use.

        Raises:
            SignalingError: The control connection failed.
            NegotiationError: Negotiation failed or timed out.
        """
        if self.session.is_failed:
            raise self.session.failure()
        if self.session.state is SessionState.IDLE:
            self._start()
        return await asyncio.shield(self._ready)

    def _start(self) -> None:
        self.session.state = SessionState.NEGOTIATING
        logger.info(
            "Starting peer negotiation",
            peer_id=self.session.peer_id,
            target=self.config.target_peer_id,
        )
        timeout = self.config.negotiation_timeout
        if timeout:
            loop = asyncio.get_running_loop()
            self._deadline = loop.call_later(timeout, self._on_deadline, timeout)
        self._task = asyncio.create_task(self._negotiate())

    async def _negotiate(self) -> None:
        try:
            pc = self._pc_factory(self.config.ice_servers)
            self.session.pc = pc
            pc.on("connectionstatechange", self._on_connection_state_change)
            pc.on("icegatheringstatechange", self._on_ice_gathering_state_change)

            raw = pc.createDataChannel(self.config.bootstrap_label, ordered=True)
            raw.on("open", self._check_ready)
            self.session.bootstrap = TunnelChannel(raw)

            await self.signaling.connect()

            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
            if self.session.is_failed:
                return
            self.session.state = SessionState.GATHERING_CANDIDATES
            if pc.iceGatheringState == "complete":
                self._gathering_done.set()
            await self._gathering_done.wait()

            sdp = pc.localDescription.sdp
            self._offer_sent = True
            await self.signaling.send_offer(
                target=self.config.target_peer_id,
                sender=self.session.peer_id,
                sdp=sdp,
            )
            logger.info("Offer sent", target=self.config.target_peer_id, sdp_len=len(sdp))
            self._check_ready()
        except asyncio.CancelledError:
            raise
        except PeerGateError as e:
            self.fail(e)
        except Exception as e:
            self.fail(NegotiationError(f"Negotiation failed: {e}"))

    def _on_deadline(self, timeout: float) -> None:
        if not self._ready.done():
            NEGOTIATIONS.labels(outcome="timeout").inc()
            self.fail(NegotiationTimeoutError(timeout), count=False)

    def _on_ice_gathering_state_change(self) -> None:
        pc = self.session.pc
        state = pc.iceGatheringState
        logger.debug("ICE gathering state", peer_id=self.session.peer_id, state=state)
        if state == "complete":
            self._gathering_done.set()

    def _on_connection_state_change(self) -> None:
        if self._closed:
            return
        state = self.session.pc.connectionState
        logger.debug("Peer connection state", peer_id=self.session.peer_id, state=state)
        if state in FAILED_CONNECTION_STATES:
            self.fail(NegotiationError(f"Peer connection {state}"))
        elif state == "connected":
            if not self._gathering_done.is_set():
                logger.debug("Ignoring connected transport before gathering completed")
                return
            self._check_ready()

    async def _on_signaling_message(self, message: Register | Offer | Answer | Candidate) -> None:
        if self.session.is_failed or self._closed:
            return
        if isinstance(message, Answer):
            await self._apply_answer(message)
        elif isinstance(message, Candidate):
            if self._answer_applied:
                await self._add_candidate(message.candidate)
            else:
                if message.candidate:
                    self._pending_candidates.append(message.candidate)
        else:
            logger.debug("Ignoring signaling message", type=message.type)

    def _on_signaling_close(self, error: SignalingError | None) -> None:
        if self._closed:
            return
        self.fail(error or SignalingError("Signaling connection closed"))

    async def _apply_answer(self, answer: Answer) -> None:
        if self._answer_received:
            logger.debug("Ignoring additional answer", peer_id=self.session.peer_id)
            return
        if not self._offer_sent:
            logger.warning("Ignoring answer received before the offer was sent")
            return
        self._answer_received = True
        try:
            await self.session.pc.setRemoteDescription(
                RTCSessionDescription(sdp=answer.sdp, type="answer")
            )
        except Exception as e:
            self.fail(NegotiationError(f"Invalid remote description: {e}"))
            return
        self._answer_applied = True
        logger.info("Answer applied", peer_id=self.session.peer_id, sdp_len=len(answer.sdp))

        pending, self._pending_candidates = self._pending_candidates, []
        for init in pending:
            await self._add_candidate(init)
        self._check_ready()

    async def _add_candidate(self, init: dict[str, Any] | None) -> None:
        if not init:
            return
        try:
            candidate = parse_remote_candidate(init)
            if candidate is None:
                return
            await self.session.pc.addIceCandidate(candidate)
        except Exception as e:
            logger.warning("Failed to add remote candidate", error=str(e))

    def _transport_connected(self) -> bool:
        pc = self.session.pc
        if pc is not None and pc.connectionState == "connected":
            return True
        bootstrap = self.session.bootstrap
        return bootstrap is not None and bootstrap.raw.readyState == "open"

    def _check_ready(self) -> None:
        if self.session.state in (SessionState.CONNECTED, SessionState.FAILED):
            return
        if not (
            self._gathering_done.is_set()
            and self._offer_sent
            and self._answer_applied
            and self._transport_connected()
        ):
            return
        self._cancel_deadline()
        self.session.state = SessionState.CONNECTED
        self.session.connected_at = time.monotonic()
        NEGOTIATIONS.labels(outcome="connected").inc()
        ACTIVE_SESSIONS.inc()
        self._live = True
        logger.info(
            "Peer session connected",
            peer_id=self.session.peer_id,
            target=self.config.target_peer_id,
            elapsed=round(self.session.connected_at - self.session.created_at, 3),
        )
        if not self._ready.done():
            self._ready.set_result(self.session)

    def fail(self, error: PeerGateError, *, count: bool = True) -> None:
        was_connected = self._release_live()
        if not self.session.mark_failed(error):
            return
        self._cancel_deadline()
        if not was_connected and count:
            NEGOTIATIONS.labels(outcome="failed").inc()
        if not self._ready.done():
            self._ready.set_exception(error)
            self._ready.exception()
        if self._task is not None and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()

    def _release_live(self) -> bool:
        # The session itself may already be FAILED via a poisoned shared channel.
        if not self._live:
            return False
        self._live = False
        ACTIVE_SESSIONS.dec()
        return True

    def _cancel_deadline(self) -> None:
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None

    async def close(self) -> None:
        """Tear down signaling and the peer connection. The session ends FAILED."""
        if self._closed:
            return
        self.fail(NegotiationError("Peer session closed"), count=False)
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self.signaling.close()
        await self.session.close()
