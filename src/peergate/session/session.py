"""Peer session state shared by every exchange relayed through one connection."""

from __future__ import annotations

import contextlib
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from peergate.core.exceptions import NegotiationError, PeerGateError

if TYPE_CHECKING:
    from peergate.tunnel.channel import TunnelChannel

logger = structlog.get_logger()


class SessionState(str, Enum):
    """Negotiation progress of a peer session."""

    IDLE = "idle"
    NEGOTIATING = "negotiating"
    GATHERING_CANDIDATES = "gathering_candidates"
    CONNECTED = "connected"
    FAILED = "failed"


def new_peer_id() -> str:
    return f"gateway-{secrets.token_hex(5)}"


@dataclass
class PeerSession:
    """One negotiated peer connection and the channels opened on it.

    Failed sessions are never revived; the owner replaces them.
    """

    peer_id: str = field(default_factory=new_peer_id)
    state: SessionState = SessionState.IDLE
    pc: Any = None
    bootstrap: TunnelChannel | None = None
    channels: set[TunnelChannel] = field(default_factory=set)
    error: PeerGateError | None = None
    created_at: float = field(default_factory=time.monotonic)
    connected_at: float | None = None
    _failure_hooks: list[Callable[[PeerSession, PeerGateError], None]] = field(
        default_factory=list, init=False, repr=False
    )

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.CONNECTED

    @property
    def is_failed(self) -> bool:
        return self.state is SessionState.FAILED

    def failure(self) -> PeerGateError:
        return self.error or NegotiationError("Peer session failed")

    def on_failed(self, hook: Callable[[PeerSession, PeerGateError], None]) -> None:
        """Call ``hook(session, error)`` once, when the session moves to FAILED."""
        self._failure_hooks.append(hook)

    def mark_failed(self, error: PeerGateError) -> bool:
        """Move to FAILED and run the failure hooks. Returns False if the session had already failed."""
        if self.state is SessionState.FAILED:
            return False
        logger.warning(
            "Peer session failed",
            peer_id=self.peer_id,
            previous_state=self.state.value,
            error=error.message,
        )
        self.state = SessionState.FAILED
        self.error = error
        hooks, self._failure_hooks = self._failure_hooks, []
        for hook in hooks:
            hook(self, error)
        return True

    async def close(self) -> None:
        for channel in list(self.channels):
            channel.close()
        self.channels.clear()
        if self.bootstrap is not None:
            self.bootstrap.close()
        if self.pc is not None:
            with contextlib.suppress(Exception):
                await self.pc.close()
        logger.debug("Peer session closed", peer_id=self.peer_id)
