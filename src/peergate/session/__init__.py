"""Peer sessions and their negotiation."""

from .negotiator import SessionNegotiator, create_peer_connection, parse_remote_candidate
from .session import PeerSession, SessionState, new_peer_id

__all__ = [
    "PeerSession",
    "SessionNegotiator",
    "SessionState",
    "create_peer_connection",
    "new_peer_id",
    "parse_remote_candidate",
]
