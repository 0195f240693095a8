"""Signaling rendezvous client and server."""

from .client import SignalingClient
from .server import SignalingServer

__all__ = ["SignalingClient", "SignalingServer"]
